"""Deal chat lifecycle: close the bridge and finalize the parties' forum topics."""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from admarket.core.config import settings
from admarket.models.deal_chat import DealChat
from admarket.services import telegram
from admarket.services.deal import get_deal

logger = logging.getLogger(__name__)


async def _get_chat(db: AsyncSession, deal_id: int) -> DealChat | None:
    result = await db.execute(select(DealChat).where(DealChat.deal_id == deal_id))
    return result.scalar_one_or_none()


async def close_deal_chat(db: AsyncSession, deal_id: int) -> bool:
    """Mark the deal's bridge CLOSED. Returns True only for the call that closed it."""
    chat = await _get_chat(db, deal_id)
    if chat is None or chat.status == "CLOSED":
        return False

    result = await db.execute(
        update(DealChat)
        .where(DealChat.deal_id == deal_id, DealChat.status == "OPEN")
        .values(status="CLOSED", closed_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    closed = result.rowcount == 1
    if closed:
        logger.info("Deal chat closed", extra={"deal_id": deal_id})
    return closed


async def _finalize_topic(chat_id: int, thread_id: int, closed_name: str) -> str:
    if settings.deal_chat_delete_topics_on_close:
        try:
            await telegram.delete_forum_topic(chat_id, thread_id)
            return "deleted"
        except telegram.TelegramAPIError as exc:
            logger.warning("deleteForumTopic failed for %s/%s, renaming: %s", chat_id, thread_id, exc)
    await telegram.edit_forum_topic(chat_id, thread_id, closed_name)
    return "renamed"


async def finalize_deal_topics(db: AsyncSession, deal_id: int) -> dict[str, str]:
    """Delete (or rename, when deletion is off or fails) each party's deal topic.

    Best-effort per party; returns {"advertiser"/"publisher": "deleted" | "renamed" | "failed"}.
    """
    chat = await _get_chat(db, deal_id)
    if chat is None:
        return {}
    deal = await get_deal(db, deal_id)
    closed_name = f"Deal #{deal.deal_number or deal.id} · closed"

    outcome: dict[str, str] = {}
    sides = (
        ("advertiser", deal.advertiser, chat.advertiser_thread_id),
        ("publisher", deal.publisher, chat.publisher_thread_id),
    )
    for side, user, thread_id in sides:
        if not thread_id or user is None:
            continue
        try:
            outcome[side] = await _finalize_topic(user.telegram_id, thread_id, closed_name)
        except Exception:
            logger.exception("Failed to finalize %s topic for deal %d", side, deal_id)
            outcome[side] = "failed"
    return outcome
