"""Celery task: publish a scheduled deal's creative, then hand off to the monitor."""

import logging
from datetime import datetime, timedelta, timezone

from admarket.core.config import settings
from admarket.core.errors import PrerequisiteError
from admarket.db.session import async_session_factory
from admarket.workers import celery_app, worker_runtime
from admarket.workers.runner import on_final_failure, run_job
from admarket.workers.scheduler import JobType

logger = logging.getLogger(__name__)


async def schedule_post_checks(scheduler, deal) -> None:
    """Enqueue the immediate check and the end-of-window monitor pass for a POSTED deal."""
    from admarket.services.monitor import resolve_verification_window_hours

    await scheduler.enqueue(
        JobType.VERIFY_POST,
        {"deal_id": deal.id},
        delay=settings.verify_post_delay_seconds,
        dedupe_key=f"verify:{deal.id}:{deal.posted_message_id}",
    )

    try:
        window = resolve_verification_window_hours(
            deal.posting_guarantee_term_hours, deal.duration_hours
        )
    except PrerequisiteError as exc:
        # verify_posted_deals picks it up once the term is known
        logger.warning("Not scheduling monitor for deal %d: %s", deal.id, exc)
        return

    window_ends_at = deal.posted_at + timedelta(hours=window)
    delay = (window_ends_at - datetime.now(timezone.utc)).total_seconds()
    await scheduler.enqueue(
        JobType.MONITOR_POST,
        {"deal_id": deal.id},
        delay=max(0, delay),
        dedupe_key=f"monitor:{deal.id}:{int(window_ends_at.timestamp())}",
    )


@celery_app.task(name=JobType.PUBLISH_POST.value, bind=True)
def publish_post(self, payload: dict | None = None, options: dict | None = None):
    """Publish the approved creative of a SCHEDULED deal."""
    from admarket.services.posting import publish_deal_post

    payload = payload or {}
    deal_id = payload["deal_id"]

    async def _run() -> int | None:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                result = await publish_deal_post(
                    db, runtime.bus, deal_id, payload.get("creative_id")
                )
                if result is None or not result.transitioned:
                    return None
                await schedule_post_checks(runtime.scheduler, result.deal)
                return result.deal.posted_message_id
            finally:
                await db.close()

    return run_job(self, JobType.PUBLISH_POST, payload, options, _run)


@on_final_failure(JobType.PUBLISH_POST)
async def cancel_unpublished_deal(payload: dict, exc: Exception, attempts: int) -> None:
    """Out of attempts: cancel the deal so the advertiser is refunded."""
    from admarket.services.deal import system_transition
    from admarket.services.deal_state_machine import DealStatus

    deal_id = payload["deal_id"]
    reason = f"Auto-posting failed after {attempts} attempt(s): {exc}"
    runtime = worker_runtime()
    async with async_session_factory() as db:
        try:
            result = await system_transition(
                db, runtime.bus, deal_id, DealStatus.CANCELLED,
                {"reason": reason},
                updates={"notes": reason},
            )
            logger.warning(
                "Deal cancelled after publish failure",
                extra={"deal_id": deal_id, "transitioned": result.transitioned, "reason": reason},
            )
        finally:
            await db.close()
