"""Post-Publication Monitor.

While a deal is POSTED its message is read back through MTProto. A deleted
or edited post refunds the advertiser; a post that stays intact for the
guarantee window completes the deal, which releases escrow to the
publisher.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from admarket.core.errors import PrerequisiteError
from admarket.models.deal import Deal
from admarket.services import mtproto
from admarket.services.deal import get_deal, record_deal_event, system_transition
from admarket.services.deal_state_machine import DealStatus
from admarket.services.events import AppEvent, EventBus

logger = logging.getLogger(__name__)

NO_GUARANTEE_TERM = "Deal has no agreed posting guarantee term"

# Monitor outcomes
SKIPPED = "skipped"
PENDING = "pending"
VIOLATION = "violation"
COMPLETED = "completed"


@dataclass(frozen=True)
class MonitorResult:
    outcome: str
    window_ends_at: datetime | None = None
    violation_type: str | None = None


def resolve_verification_window_hours(
    posting_guarantee_term_hours: int | None, duration_hours: int | None,
) -> int:
    if posting_guarantee_term_hours and posting_guarantee_term_hours > 0:
        return posting_guarantee_term_hours
    # Deals created before posting plans carried a guarantee term
    if duration_hours and duration_hours > 0:
        return duration_hours
    raise PrerequisiteError(NO_GUARANTEE_TERM)


def _post_chat_id(deal: Deal) -> int | str:
    channel = deal.channel
    if channel is None:
        raise ValueError(f"Deal {deal.id} has no channel")
    return f"@{channel.username}" if channel.username else channel.telegram_channel_id


async def detect_violation(deal: Deal) -> str | None:
    """Read the posted message; return "deleted" / "edited" or None when intact."""
    snapshot = await mtproto.fetch_post_snapshot(_post_chat_id(deal), deal.posted_message_id)
    if not snapshot.exists:
        return "deleted"
    if snapshot.edited_at is not None:
        return "edited"
    return None


async def handle_post_violation(
    db: AsyncSession, bus: EventBus, deal_id: int, violation_type: str,
) -> bool:
    """Publish the violation and move the deal to REFUNDED."""
    deal = await get_deal(db, deal_id, fresh=True)
    if deal.status not in (DealStatus.POSTED, DealStatus.VERIFIED):
        return False

    logger.warning(
        "Post violation detected",
        extra={"deal_id": deal_id, "violation_type": violation_type},
    )
    detected_at = datetime.now(timezone.utc)
    reason = f"Post {violation_type} during verification period"

    await bus.publish(AppEvent.POST_VIOLATION_DETECTED, {
        "deal_id": deal_id,
        "violation_type": violation_type,
        "detected_at": detected_at.isoformat(),
    })
    await record_deal_event(db, deal_id, "POST_VIOLATION", {"violation_type": violation_type})

    updates = {"notes": reason}
    if violation_type == "deleted":
        updates["deleted_at"] = detected_at
    result = await system_transition(
        db, bus, deal_id, DealStatus.REFUNDED,
        {"reason": reason, "violation_type": violation_type},
        updates=updates,
    )
    return result.transitioned


async def complete_deal_verification(
    db: AsyncSession, bus: EventBus, deal_id: int, now: datetime | None = None,
) -> bool:
    """POSTED → VERIFIED → COMPLETED. Resumes from VERIFIED after a crash."""
    now = now or datetime.now(timezone.utc)
    deal = await get_deal(db, deal_id, fresh=True)
    if deal.posted_at is None or deal.status not in (DealStatus.POSTED, DealStatus.VERIFIED):
        return False

    verification_hours = round((now - deal.posted_at).total_seconds() / 3600, 2)
    data = {"verification_hours": verification_hours}

    verified = await system_transition(db, bus, deal_id, DealStatus.VERIFIED, data)
    if not verified.transitioned and verified.deal.status != DealStatus.VERIFIED:
        return False
    if verified.transitioned:
        await bus.publish(AppEvent.POST_VERIFIED, {"deal_id": deal_id, **data})

    completed = await system_transition(db, bus, deal_id, DealStatus.COMPLETED, data)
    if completed.transitioned:
        logger.info("Verification complete for deal %d", deal_id)
    return completed.transitioned


async def monitor_deal_post(
    db: AsyncSession, bus: EventBus, deal_id: int, now: datetime | None = None,
) -> MonitorResult:
    """One monitoring pass over a POSTED deal.

    Missing prerequisites (MTProto not configured, no guarantee term) skip
    the pass; any other error propagates to the task runner.
    """
    now = now or datetime.now(timezone.utc)
    deal = await get_deal(db, deal_id, fresh=True)
    if deal.status != DealStatus.POSTED:
        return MonitorResult(SKIPPED)
    if not deal.posted_message_id:
        raise ValueError(f"Deal {deal_id} has no posted message")
    if deal.posted_at is None:
        raise ValueError(f"Post time not recorded for deal {deal_id}")

    try:
        violation = await detect_violation(deal)
        if violation is not None:
            await handle_post_violation(db, bus, deal_id, violation)
            return MonitorResult(VIOLATION, violation_type=violation)

        window = resolve_verification_window_hours(
            deal.posting_guarantee_term_hours, deal.duration_hours
        )
    except PrerequisiteError as exc:
        logger.warning("Skipping post verification for deal %d: %s", deal_id, exc)
        return MonitorResult(SKIPPED)

    window_ends_at = deal.posted_at + timedelta(hours=window)
    if now >= window_ends_at:
        await complete_deal_verification(db, bus, deal_id, now)
        return MonitorResult(COMPLETED, window_ends_at=window_ends_at)
    return MonitorResult(PENDING, window_ends_at=window_ends_at)


async def verify_post(db: AsyncSession, bus: EventBus, deal_id: int) -> MonitorResult:
    """Check right after publishing that the message landed and is untouched."""
    deal = await get_deal(db, deal_id, fresh=True)
    if deal.status != DealStatus.POSTED or not deal.posted_message_id:
        return MonitorResult(SKIPPED)
    try:
        violation = await detect_violation(deal)
    except PrerequisiteError as exc:
        logger.warning("Skipping post verification for deal %d: %s", deal_id, exc)
        return MonitorResult(SKIPPED)
    if violation is not None:
        await handle_post_violation(db, bus, deal_id, violation)
        return MonitorResult(VIOLATION, violation_type=violation)
    return MonitorResult(PENDING)


async def get_posted_deal_ids(db: AsyncSession) -> list[int]:
    result = await db.execute(
        select(Deal.id).where(
            Deal.status == DealStatus.POSTED,
            Deal.posted_message_id.isnot(None),
            Deal.posted_at.isnot(None),
        )
    )
    return list(result.scalars().all())


async def verify_posted_deals(
    db: AsyncSession, bus: EventBus, now: datetime | None = None,
) -> dict[str, int]:
    """Sweep every POSTED deal; one deal's failure does not stop the others."""
    counts: dict[str, int] = {}
    for deal_id in await get_posted_deal_ids(db):
        try:
            result = await monitor_deal_post(db, bus, deal_id, now)
        except Exception:
            logger.exception("Failed to verify deal %d", deal_id)
            await db.rollback()
            counts["failed"] = counts.get("failed", 0) + 1
            continue
        counts[result.outcome] = counts.get(result.outcome, 0) + 1
    logger.info("Verified posted deals", extra={"counts": counts})
    return counts
