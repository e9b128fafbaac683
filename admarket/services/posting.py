"""Publish an approved creative into the deal's channel."""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from admarket.core.config import settings
from admarket.models.channel import Channel
from admarket.models.creative import Creative
from admarket.models.deal import Deal
from admarket.services import telegram
from admarket.services.deal import TransitionResult, system_transition
from admarket.services.deal_state_machine import DealStatus
from admarket.services.events import AppEvent, EventBus

logger = logging.getLogger(__name__)


async def _get_creative(db: AsyncSession, creative_id: int) -> Creative | None:
    result = await db.execute(select(Creative).where(Creative.id == creative_id))
    return result.scalar_one_or_none()


async def send_creative(chat_id: int | str, creative: Creative) -> dict:
    """Send the creative (text, single media or album) and return the first message."""
    items = creative.media_items or []
    entities = creative.entities or None

    if len(items) >= 2:
        messages = await telegram.send_media_group(
            chat_id, items, caption=creative.text, caption_entities=entities
        )
        # The first message of the album is the one tracked by the monitor
        return messages[0] if messages else {}
    if len(items) == 1:
        item = items[0]
        return await telegram.send_media(
            chat_id,
            item["type"],
            item["file_id"],
            caption=creative.text,
            caption_entities=entities,
        )
    return await telegram.send_message(chat_id, creative.text, entities=entities)


async def _claim_stuck_posting(db: AsyncSession, deal_id: int, now: datetime) -> bool:
    """Take over a POSTING deal whose send claim lapsed. At most one caller wins."""
    stale_before = now - timedelta(seconds=settings.posting_claim_lease_seconds)
    result = await db.execute(
        update(Deal)
        .where(
            Deal.id == deal_id,
            Deal.status == DealStatus.POSTING.value,
            Deal.posted_message_id.is_(None),
            or_(Deal.posting_claimed_at.is_(None), Deal.posting_claimed_at < stale_before),
        )
        .values(posting_claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _release_posting_claim(db: AsyncSession, deal_id: int, claimed_at: datetime) -> None:
    """Drop our claim after a failed send so the job retry can take the deal again."""
    await db.execute(
        update(Deal)
        .where(Deal.id == deal_id, Deal.posting_claimed_at == claimed_at)
        .values(posting_claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def publish_deal_post(
    db: AsyncSession, bus: EventBus, deal_id: int, creative_id: int | None = None,
) -> TransitionResult | None:
    """Claim the deal for posting, send the creative and mark it POSTED.

    Only the caller that moves the deal into POSTING sends. A deal left in
    POSTING by a crashed attempt is sent again once its claim has lapsed;
    a claim still held by a concurrent or redelivered copy means skip.
    Returns None when the deal is not ours to publish.
    """
    claimed_at = datetime.now(timezone.utc)
    claim = await system_transition(
        db, bus, deal_id, DealStatus.POSTING,
        {"reason": "Auto posting started"},
        updates={"posting_claimed_at": claimed_at},
    )
    deal = claim.deal
    if not claim.transitioned:
        if deal.status != DealStatus.POSTING:
            if deal.posted_message_id:
                logger.info(
                    "Deal %d already posted (message %s), skipping", deal_id, deal.posted_message_id
                )
            else:
                logger.info("Deal %d is in status %s, skipping publish", deal_id, deal.status)
            return None
        if not await _claim_stuck_posting(db, deal_id, claimed_at):
            logger.info("Deal %d is being posted by another worker, skipping", deal_id)
            return None
        logger.warning("Resuming publish of deal %d left in POSTING", deal_id)

    try:
        channel, message = await _send_deal_post(db, deal, creative_id)
    except Exception:
        await _release_posting_claim(db, deal_id, claimed_at)
        raise

    message_id = message.get("message_id")
    posted_at = datetime.now(timezone.utc)
    posted = await system_transition(
        db, bus, deal_id, DealStatus.POSTED,
        {"message_id": message_id, "channel_id": channel.id},
        updates={"posted_message_id": message_id, "posted_at": posted_at},
    )
    if posted.transitioned:
        await bus.publish(AppEvent.POST_PUBLISHED, {
            "deal_id": deal_id,
            "message_id": message_id,
            "channel_id": channel.id,
        })
        logger.info("Posted creative for deal %d, message %s", deal_id, message_id)
    return posted


async def _send_deal_post(
    db: AsyncSession, deal: Deal, creative_id: int | None,
) -> tuple[Channel, dict]:
    creative_id = creative_id or deal.creative_id
    creative = await _get_creative(db, creative_id) if creative_id else None
    if creative is None:
        raise ValueError(f"No approved creative for deal {deal.id}")

    result = await db.execute(select(Channel).where(Channel.id == deal.channel_id))
    channel = result.scalar_one_or_none()
    if channel is None:
        raise ValueError(f"Channel {deal.channel_id} not found")

    if not await telegram.bot_is_admin(channel.telegram_channel_id):
        raise ValueError(f"Bot is not admin in channel {channel.telegram_channel_id}")

    try:
        message = await send_creative(channel.telegram_channel_id, creative)
    except Exception:
        logger.exception("Failed to send post for deal %d", deal.id)
        raise
    return channel, message
