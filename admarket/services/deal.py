"""Status Transition Authority.

`request_transition` is the single mutation path for deal status. It
validates the move against the rule table, applies it with a conditional
UPDATE (compare current status, then write), writes the DealEvent, commits,
and only then publishes bus events. A concurrent writer that already moved
the deal makes the UPDATE hit zero rows; that call reports "not
transitioned" and produces no side effects.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from admarket.core.errors import DealNotFoundError, ValidationError
from admarket.models.deal import Deal
from admarket.models.deal_event import DealEvent
from admarket.services.deal_state_machine import (
    SYSTEM,
    Actor,
    DealStatus,
    UserActor,
    assert_transition_allowed,
    history_entry,
    parse_status_history,
    resolve_actor_role,
)
from admarket.services.events import AppEvent, EventBus

logger = logging.getLogger(__name__)

# Columns a caller may set atomically together with the status change
_TRANSITION_FIELDS = frozenset({
    "notes",
    "deleted_at",
    "posted_message_id",
    "posted_at",
    "creative_id",
    "scheduled_time",
    "expires_at",
    "deal_metadata",
    "posting_claimed_at",
})


@dataclass
class TransitionResult:
    deal: Deal
    transitioned: bool


async def get_deal(db: AsyncSession, deal_id: int, *, fresh: bool = False) -> Deal:
    stmt = select(Deal).where(Deal.id == deal_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    result = await db.execute(stmt)
    deal = result.scalar_one_or_none()
    if deal is None:
        raise DealNotFoundError(deal_id)
    return deal


async def get_deals_for_timeout(
    db: AsyncSession, statuses: list[str] | frozenset[str],
) -> list[Deal]:
    """Deals currently in any of `statuses`, oldest activity first."""
    result = await db.execute(
        select(Deal)
        .where(Deal.status.in_(list(statuses)))
        .order_by(Deal.updated_at.asc())
    )
    return list(result.scalars().all())


async def _compare_and_set_status(
    db: AsyncSession, deal_id: int, current: str, values: dict[Any, Any],
) -> bool:
    """Write `values` only if the deal is still in `current`. Not committed."""
    result = await db.execute(
        update(Deal)
        .where(Deal.id == deal_id, Deal.status == current)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _actor_columns(actor: Actor) -> tuple[str, int | None]:
    if isinstance(actor, UserActor):
        return "USER", actor.user_id
    return "SYSTEM", None


async def request_transition(
    db: AsyncSession,
    bus: EventBus,
    deal_id: int,
    target: DealStatus | str,
    actor: Actor,
    data: dict[str, Any] | None = None,
    *,
    updates: dict[str, Any] | None = None,
) -> TransitionResult:
    """Move deal `deal_id` to `target` on behalf of `actor`.

    `data` is stored on the DealEvent and forwarded in bus payloads;
    `updates` are extra Deal columns written in the same UPDATE.
    Raises ValidationError / ForbiddenError before touching the store.
    """
    deal = await get_deal(db, deal_id)
    current = deal.status

    try:
        target_status = DealStatus(target)
    except ValueError:
        raise ValidationError(
            f"No transition rule is defined for status {target}", code="unknown_target"
        )

    # Same status: a retried or duplicate request
    if target_status == current:
        return TransitionResult(deal=deal, transitioned=False)

    role = resolve_actor_role(actor, deal)
    assert_transition_allowed(current, target_status, role)

    extra = dict(updates or {})
    unknown = set(extra) - _TRANSITION_FIELDS
    if unknown:
        raise ValueError(f"Fields cannot be set on transition: {sorted(unknown)}")

    now = datetime.now(timezone.utc)
    history = parse_status_history(deal.status_history)
    history.append(history_entry(target_status, actor, now))

    values: dict[Any, Any] = {
        Deal.status: target_status.value,
        Deal.status_history: history,
        Deal.updated_at: now,
    }
    if target_status == DealStatus.VERIFIED:
        values[Deal.verified_at] = now
    elif target_status == DealStatus.COMPLETED:
        values[Deal.completed_at] = now
    for field, value in extra.items():
        values[getattr(Deal, field)] = value

    if not await _compare_and_set_status(db, deal_id, current, values):
        await db.rollback()
        logger.info(
            "Transition race lost",
            extra={"deal_id": deal_id, "from_status": current, "to_status": str(target_status)},
        )
        deal = await get_deal(db, deal_id, fresh=True)
        return TransitionResult(deal=deal, transitioned=False)

    actor_type, actor_id = _actor_columns(actor)
    db.add(DealEvent(
        deal_id=deal_id,
        type=f"STATUS_{target_status}",
        actor_id=actor_id,
        actor_type=actor_type,
        from_status=current,
        to_status=target_status.value,
        data=data or None,
    ))
    await db.commit()

    deal = await get_deal(db, deal_id, fresh=True)
    logger.info(
        "Deal transitioned",
        extra={
            "deal_id": deal_id,
            "from_status": current,
            "to_status": str(target_status),
            "actor": actor.history_id,
        },
    )

    await _publish_transition(bus, deal, current, target_status, actor, data or {})
    return TransitionResult(deal=deal, transitioned=True)


async def system_transition(
    db: AsyncSession,
    bus: EventBus,
    deal_id: int,
    target: DealStatus | str,
    data: dict[str, Any] | None = None,
    *,
    updates: dict[str, Any] | None = None,
) -> TransitionResult:
    """Shorthand for transitions requested by the platform itself."""
    return await request_transition(db, bus, deal_id, target, SYSTEM, data, updates=updates)


async def record_deal_event(
    db: AsyncSession, deal_id: int, event_type: str, data: dict[str, Any] | None = None,
) -> DealEvent:
    """Append a non-transition DealEvent (e.g. a detected violation)."""
    event = DealEvent(
        deal_id=deal_id,
        type=event_type,
        actor_type="SYSTEM",
        data=data,
    )
    db.add(event)
    await db.commit()
    return event


async def _publish_transition(
    bus: EventBus,
    deal: Deal,
    old_status: str,
    new_status: DealStatus,
    actor: Actor,
    data: dict[str, Any],
) -> None:
    await bus.publish(AppEvent.DEAL_STATUS_CHANGED, {
        "deal_id": deal.id,
        "old_status": old_status,
        "new_status": str(new_status),
        "actor_id": actor.history_id,
        "data": data,
    })

    if new_status == DealStatus.TERMS_AGREED:
        await bus.publish(AppEvent.DEAL_ACCEPTED, {
            "deal_id": deal.id,
            "advertiser_id": deal.advertiser_id,
            "publisher_id": deal.publisher_id,
        })
    elif new_status == DealStatus.CANCELLED:
        await bus.publish(AppEvent.DEAL_CANCELLED, {
            "deal_id": deal.id,
            "reason": data.get("reason") or "Cancelled",
            "cancelled_by": actor.history_id,
        })
    elif new_status == DealStatus.COMPLETED:
        await bus.publish(AppEvent.DEAL_COMPLETED, {
            "deal_id": deal.id,
            "advertiser_id": deal.advertiser_id,
            "publisher_id": deal.publisher_id,
        })
