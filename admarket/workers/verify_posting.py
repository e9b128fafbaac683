"""Celery tasks: post verification and guarantee-window monitoring."""

import logging
from datetime import datetime, timezone

from admarket.db.session import async_session_factory
from admarket.workers import celery_app, worker_runtime
from admarket.workers.runner import run_job
from admarket.workers.scheduler import JobType

logger = logging.getLogger(__name__)


@celery_app.task(name=JobType.VERIFY_POST.value, bind=True)
def verify_post(self, payload: dict | None = None, options: dict | None = None) -> str:
    """Check a freshly published post still exists and is unedited."""
    from admarket.services.monitor import verify_post as check_post

    payload = payload or {}

    async def _run() -> str:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                result = await check_post(db, runtime.bus, payload["deal_id"])
                return result.outcome
            finally:
                await db.close()

    return run_job(self, JobType.VERIFY_POST, payload, options, _run)


@celery_app.task(name=JobType.MONITOR_POST.value, bind=True)
def monitor_post(self, payload: dict | None = None, options: dict | None = None) -> str:
    """One monitoring pass; re-enqueues itself for the window end while the deal is POSTED."""
    from admarket.services.monitor import PENDING, monitor_deal_post

    payload = payload or {}
    deal_id = payload["deal_id"]
    task_id = self.request.id

    async def _run() -> str:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                result = await monitor_deal_post(db, runtime.bus, deal_id)
            finally:
                await db.close()

        if result.outcome == PENDING and result.window_ends_at is not None:
            await runtime.scheduler.enqueue(
                JobType.MONITOR_POST,
                {"deal_id": deal_id},
                delay=(result.window_ends_at - datetime.now(timezone.utc)).total_seconds(),
                # One successor per run
                dedupe_key=f"{task_id}:next",
            )
        return result.outcome

    return run_job(self, JobType.MONITOR_POST, payload, options, _run)


@celery_app.task(name=JobType.VERIFY_POSTED_DEALS.value, bind=True)
def verify_posted_deals(self, payload: dict | None = None, options: dict | None = None) -> dict:
    """Periodic sweep over every POSTED deal."""
    from admarket.services.monitor import verify_posted_deals as sweep

    async def _run() -> dict:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                return await sweep(db, runtime.bus)
            finally:
                await db.close()

    return run_job(self, JobType.VERIFY_POSTED_DEALS, payload or {}, options, _run)