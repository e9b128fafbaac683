"""Celery tasks for the Timeout Sweep.

- check_deal_timeouts: hourly scan, enqueues the two below
- send_timeout_warning: notifies both parties once per stage
- expire_deal: moves a stale deal to EXPIRED
"""

import logging

from admarket.db.session import async_session_factory
from admarket.workers import celery_app, worker_runtime
from admarket.workers.runner import run_job
from admarket.workers.scheduler import JobType

logger = logging.getLogger(__name__)


@celery_app.task(name=JobType.CHECK_DEAL_TIMEOUTS.value, bind=True)
def check_deal_timeouts(self, payload: dict | None = None, options: dict | None = None) -> dict:
    from admarket.services.timeouts import check_deal_timeouts as sweep

    async def _run() -> dict:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                return await sweep(db, runtime.scheduler)
            finally:
                await db.close()

    return run_job(self, JobType.CHECK_DEAL_TIMEOUTS, payload or {}, options, _run)


@celery_app.task(name=JobType.SEND_TIMEOUT_WARNING.value, bind=True)
def send_timeout_warning(self, payload: dict | None = None, options: dict | None = None) -> bool:
    from admarket.services.timeouts import send_timeout_warning as warn

    payload = payload or {}

    async def _run() -> bool:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                return await warn(db, runtime.bus, payload["deal_id"])
            finally:
                await db.close()

    return run_job(self, JobType.SEND_TIMEOUT_WARNING, payload, options, _run)


@celery_app.task(name=JobType.EXPIRE_DEAL.value, bind=True)
def expire_deal(self, payload: dict | None = None, options: dict | None = None) -> bool:
    from admarket.services.timeouts import expire_deal as expire

    payload = payload or {}

    async def _run() -> bool:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                return await expire(db, runtime.bus, payload["deal_id"])
            finally:
                await db.close()

    return run_job(self, JobType.EXPIRE_DEAL, payload, options, _run)
