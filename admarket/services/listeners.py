"""Automation listeners: escrow, chat lifecycle, notifications, auto-post, channels.

Each handler opens its own session; the transition that produced the event
is already committed, so a failure here is logged by the bus and never
undoes it. Escrow settlement is enqueued as a job so it is retried.
"""

import logging
from datetime import datetime, timezone
from functools import partial
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from admarket.models.deal import Deal
from admarket.services import channel as channel_service
from admarket.services import notification
from admarket.services.deal_chat import close_deal_chat, finalize_deal_topics
from admarket.services.deal_state_machine import TERMINAL_STATUSES, DealStatus
from admarket.services.events import AppEvent
from admarket.workers.scheduler import JobType

if TYPE_CHECKING:
    from admarket.runtime import Runtime

logger = logging.getLogger(__name__)

ESCROW_GROUP = "escrow"
CHAT_GROUP = "deal_chat"
NOTIFICATION_GROUP = "notifications"
AUTO_POST_GROUP = "auto_post"
CHANNEL_GROUP = "channel"


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------


async def _enqueue_release(runtime: "Runtime", deal_id: int) -> str | None:
    return await runtime.scheduler.enqueue(
        JobType.RELEASE_ESCROW, {"deal_id": deal_id}, dedupe_key=f"release:{deal_id}"
    )


async def _enqueue_refund(runtime: "Runtime", deal_id: int, reason: str | None) -> str | None:
    return await runtime.scheduler.enqueue(
        JobType.REFUND_ESCROW,
        {"deal_id": deal_id, "reason": reason},
        dedupe_key=f"refund:{deal_id}",
    )


async def release_on_completed(runtime: "Runtime", payload: dict[str, Any]) -> None:
    await _enqueue_release(runtime, payload["deal_id"])


async def refund_on_violation(runtime: "Runtime", payload: dict[str, Any]) -> None:
    reason = f"Post {payload.get('violation_type', 'violation')} during verification period"
    await _enqueue_refund(runtime, payload["deal_id"], reason)


async def refund_on_cancelled(runtime: "Runtime", payload: dict[str, Any]) -> None:
    await _enqueue_refund(runtime, payload["deal_id"], payload.get("reason"))


async def refund_on_timed_out(runtime: "Runtime", payload: dict[str, Any]) -> None:
    await _enqueue_refund(runtime, payload["deal_id"], "Deal timed out")


# ---------------------------------------------------------------------------
# Chat lifecycle
# ---------------------------------------------------------------------------


async def close_chat_on_terminal(runtime: "Runtime", payload: dict[str, Any]) -> None:
    if payload.get("new_status") not in TERMINAL_STATUSES:
        return
    deal_id = payload["deal_id"]
    async with runtime.session_factory() as db:
        await close_deal_chat(db, deal_id)
        await finalize_deal_topics(db, deal_id)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


async def notify(runtime: "Runtime", event: AppEvent, payload: dict[str, Any]) -> None:
    async with runtime.session_factory() as db:
        await notification.send_notifications(db, event, payload)


# ---------------------------------------------------------------------------
# Auto-post
# ---------------------------------------------------------------------------


async def schedule_publish(runtime: "Runtime", payload: dict[str, Any]) -> str | None:
    """Enqueue the publish job for a SCHEDULED deal, once per deal + creative."""
    deal_id = payload["deal_id"]
    async with runtime.session_factory() as db:
        result = await db.execute(select(Deal).where(Deal.id == deal_id))
        deal = result.scalar_one_or_none()
    if deal is None:
        return None
    if deal.status != DealStatus.SCHEDULED:
        logger.info("Skipping auto-post schedule for deal %d: status is %s", deal_id, deal.status)
        return None

    creative_id = payload.get("creative_id") or deal.creative_id
    if creative_id is None:
        logger.warning("Deal %d is SCHEDULED without an approved creative", deal_id)
        return None

    post_time = payload.get("scheduled_time") or deal.scheduled_time
    if isinstance(post_time, str):
        post_time = datetime.fromisoformat(post_time)
    delay = 0.0
    if post_time is not None:
        delay = max(0.0, (post_time - datetime.now(timezone.utc)).total_seconds())

    return await runtime.scheduler.enqueue(
        JobType.PUBLISH_POST,
        {"deal_id": deal_id, "creative_id": creative_id},
        delay=delay,
        dedupe_key=f"publish:{deal_id}:{creative_id}",
    )


async def schedule_publish_on_status(runtime: "Runtime", payload: dict[str, Any]) -> None:
    if payload.get("new_status") == DealStatus.SCHEDULED:
        await schedule_publish(runtime, payload)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


async def verify_admin_on_created(runtime: "Runtime", payload: dict[str, Any]) -> None:
    await runtime.scheduler.enqueue(
        JobType.VERIFY_CHANNEL_ADMIN,
        {"channel_id": payload["channel_id"]},
        dedupe_key=f"verify-admin:{payload['channel_id']}",
    )


async def refresh_stats_on_verified(runtime: "Runtime", payload: dict[str, Any]) -> None:
    await runtime.scheduler.enqueue(
        JobType.REFRESH_CHANNEL_STATS, {"channel_id": payload["channel_id"]}
    )


async def suspend_on_admin_lost(runtime: "Runtime", payload: dict[str, Any]) -> None:
    async with runtime.session_factory() as db:
        await channel_service.suspend_channel(db, payload["channel_id"])


def register_listeners(runtime: "Runtime") -> bool:
    """Subscribe every listener group to the runtime's bus. Safe to call twice."""
    bus = runtime.bus
    if bus.has_group(ESCROW_GROUP):
        return False

    def on(event: AppEvent, handler, group: str) -> None:
        bound = partial(handler, runtime)
        bound.__name__ = handler.__name__
        bus.subscribe(event, bound, group=group)

    on(AppEvent.DEAL_COMPLETED, release_on_completed, ESCROW_GROUP)
    on(AppEvent.POST_VIOLATION_DETECTED, refund_on_violation, ESCROW_GROUP)
    on(AppEvent.DEAL_CANCELLED, refund_on_cancelled, ESCROW_GROUP)
    on(AppEvent.DEAL_TIMED_OUT, refund_on_timed_out, ESCROW_GROUP)

    on(AppEvent.DEAL_STATUS_CHANGED, close_chat_on_terminal, CHAT_GROUP)

    for event in AppEvent:
        if not notification.supports(event):
            continue
        bound = partial(notify, runtime, event)
        bound.__name__ = f"notify[{event}]"
        bus.subscribe(event, bound, group=NOTIFICATION_GROUP)

    on(AppEvent.CREATIVE_APPROVED, schedule_publish, AUTO_POST_GROUP)
    on(AppEvent.DEAL_STATUS_CHANGED, schedule_publish_on_status, AUTO_POST_GROUP)

    on(AppEvent.CHANNEL_CREATED, verify_admin_on_created, CHANNEL_GROUP)
    on(AppEvent.CHANNEL_VERIFIED, refresh_stats_on_verified, CHANNEL_GROUP)
    on(AppEvent.CHANNEL_ADMIN_STATUS_LOST, suspend_on_admin_lost, CHANNEL_GROUP)

    logger.info("Event listeners registered")
    return True
