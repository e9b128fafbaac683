"""Timeout Sweep: warn before, then expire, deals idle in a timed stage."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from admarket.core.config import settings
from admarket.models.deal import Deal
from admarket.services.deal import get_deal, get_deals_for_timeout, system_transition
from admarket.services.deal_state_machine import (
    ACTIVE_STATUSES,
    STAGE_TIMEOUT_HOURS,
    TRANSITION_RULES,
    DealStatus,
)
from admarket.services.events import AppEvent, EventBus
from admarket.workers.scheduler import JobType, TaskScheduler

logger = logging.getLogger(__name__)

EXPIRE_REASON = "Deal timed out due to inactivity"
WARNING_MARKER = "timeoutWarningSent"

# Stages the sweep may expire; a timed stage outside the EXPIRED rule is only
# reported through the deadline endpoint
EXPIRABLE_STATUSES = frozenset(
    s for s in STAGE_TIMEOUT_HOURS
    if s in ACTIVE_STATUSES and s in TRANSITION_RULES[DealStatus.EXPIRED].sources
)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def check_deal_timeouts(
    db: AsyncSession, scheduler: TaskScheduler, now: datetime | None = None,
) -> dict[str, int]:
    """Enqueue expire / warning jobs for deals idle past (or close to) their stage timeout."""
    now = now or datetime.now(timezone.utc)
    expired = warned = 0

    for deal in await get_deals_for_timeout(db, EXPIRABLE_STATUSES):
        timeout = timedelta(hours=STAGE_TIMEOUT_HOURS[deal.status])
        elapsed = now - _as_utc(deal.updated_at)

        if elapsed >= timeout:
            await scheduler.enqueue(
                JobType.EXPIRE_DEAL,
                {"deal_id": deal.id},
                dedupe_key=f"expire:{deal.id}:{deal.status}",
            )
            expired += 1
            continue

        warn_from = timeout - timedelta(hours=settings.timeout_warning_hours)
        already_warned = (deal.deal_metadata or {}).get(WARNING_MARKER) == deal.status
        if elapsed >= warn_from and not already_warned:
            await scheduler.enqueue(
                JobType.SEND_TIMEOUT_WARNING,
                {"deal_id": deal.id},
                dedupe_key=f"timeout-warning:{deal.id}:{deal.status}",
            )
            warned += 1

    logger.info("Found %d deals to expire, %d to warn", expired, warned)
    return {"expire": expired, "warn": warned}


async def send_timeout_warning(
    db: AsyncSession, bus: EventBus, deal_id: int, now: datetime | None = None,
) -> bool:
    """Emit deal.timeout.warning once per stage."""
    now = now or datetime.now(timezone.utc)
    deal = await get_deal(db, deal_id, fresh=True)
    timeout_hours = STAGE_TIMEOUT_HOURS.get(deal.status)
    if deal.status not in EXPIRABLE_STATUSES or not timeout_hours:
        return False

    metadata: dict[str, Any] = dict(deal.deal_metadata or {})
    if metadata.get(WARNING_MARKER) == deal.status:
        return False

    deadline = _as_utc(deal.updated_at) + timedelta(hours=timeout_hours)
    hours_remaining = max(0, int((deadline - now).total_seconds() // 3600))

    metadata[WARNING_MARKER] = deal.status
    # Guarded on status; leaves updated_at alone so the stage clock keeps running
    result = await db.execute(
        update(Deal)
        .where(Deal.id == deal_id, Deal.status == deal.status)
        .values(deal_metadata=metadata, updated_at=deal.updated_at)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 0:
        return False

    await bus.publish(AppEvent.DEAL_TIMEOUT_WARNING, {
        "deal_id": deal_id,
        "status": deal.status,
        "hours_remaining": hours_remaining,
    })
    return True


async def expire_deal(db: AsyncSession, bus: EventBus, deal_id: int) -> bool:
    """Expire a stale deal. A deal that moved on since the sweep is left alone."""
    deal = await get_deal(db, deal_id, fresh=True)
    previous_status = deal.status
    rule = TRANSITION_RULES[DealStatus.EXPIRED]
    if previous_status not in ACTIVE_STATUSES or previous_status not in rule.sources:
        logger.info("Deal %d no longer expirable (status %s)", deal_id, previous_status)
        return False

    result = await system_transition(
        db, bus, deal_id, DealStatus.EXPIRED,
        {"reason": EXPIRE_REASON},
        updates={"notes": EXPIRE_REASON},
    )
    if not result.transitioned:
        return False

    logger.info("Deal timed out", extra={"deal_id": deal_id, "from_status": previous_status})
    await bus.publish(AppEvent.DEAL_TIMED_OUT, {
        "deal_id": deal_id,
        "previous_status": previous_status,
    })
    return True
