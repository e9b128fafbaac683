"""Channel admin checks and stats refresh."""

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from admarket.models.channel import Channel
from admarket.services import telegram
from admarket.services.events import AppEvent, EventBus

logger = logging.getLogger(__name__)


async def get_channel(db: AsyncSession, channel_id: int) -> Channel:
    result = await db.execute(select(Channel).where(Channel.id == channel_id))
    channel = result.scalar_one_or_none()
    if channel is None:
        raise ValueError(f"Channel {channel_id} not found")
    return channel


async def verify_channel_admin(db: AsyncSession, bus: EventBus, channel_id: int) -> bool:
    """Re-read the bot's admin status and publish the change, if any."""
    channel = await get_channel(db, channel_id)
    was_admin = channel.bot_is_admin

    try:
        is_admin = await telegram.bot_is_admin(channel.telegram_channel_id)
    except telegram.TelegramAPIError as exc:
        # Kicked bots get 400/403 from getChatMember
        logger.warning("Admin check failed for channel %d: %s", channel_id, exc)
        is_admin = False

    channel.bot_is_admin = is_admin
    if is_admin and channel.status != "SUSPENDED":
        channel.status = "ACTIVE"
    await db.commit()

    payload = {"channel_id": channel.id, "owner_id": channel.owner_id}
    if was_admin and not is_admin:
        await bus.publish(AppEvent.CHANNEL_ADMIN_STATUS_LOST, payload)
    elif is_admin and not was_admin:
        await bus.publish(AppEvent.CHANNEL_VERIFIED, payload)
    return is_admin


async def recheck_admin_status(db: AsyncSession, bus: EventBus) -> int:
    """Verify every active channel. Returns how many still have the bot as admin."""
    result = await db.execute(
        select(Channel.id).where(Channel.is_active.is_(True), Channel.status != "SUSPENDED")
    )
    count = 0
    for channel_id in result.scalars().all():
        try:
            if await verify_channel_admin(db, bus, channel_id):
                count += 1
        except Exception:
            logger.exception("Failed to recheck admin status for channel %d", channel_id)
            await db.rollback()
    logger.info("Rechecked admin status, %d channels verified", count)
    return count


async def suspend_channel(db: AsyncSession, channel_id: int) -> bool:
    result = await db.execute(
        update(Channel)
        .where(Channel.id == channel_id, Channel.status != "SUSPENDED")
        .values(status="SUSPENDED", bot_is_admin=False)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    suspended = result.rowcount == 1
    if suspended:
        logger.warning("Channel suspended", extra={"channel_id": channel_id})
    return suspended


async def refresh_channel_stats(db: AsyncSession, bus: EventBus, channel_id: int) -> int:
    """Update the subscriber count from getChatMemberCount."""
    channel = await get_channel(db, channel_id)
    subscribers = await telegram.get_chat_member_count(channel.telegram_channel_id)
    channel.subscribers = subscribers
    channel.stats_updated_at = datetime.now(timezone.utc)
    await db.commit()

    await bus.publish(AppEvent.STATS_UPDATED, {
        "channel_id": channel.id,
        "subscribers": subscribers,
    })
    return subscribers


async def refresh_all_stats(db: AsyncSession, bus: EventBus) -> int:
    result = await db.execute(
        select(Channel.id).where(Channel.is_active.is_(True), Channel.bot_is_admin.is_(True))
    )
    count = 0
    for channel_id in result.scalars().all():
        try:
            await refresh_channel_stats(db, bus, channel_id)
            count += 1
        except Exception:
            logger.exception("Failed to refresh stats for channel %d", channel_id)
            await db.rollback()
    logger.info("Refreshed stats for %d channels", count)
    return count
