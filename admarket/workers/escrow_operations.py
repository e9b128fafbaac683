"""Celery tasks: escrow release / refund, retried with backoff until the escrow service answers."""

import logging

from admarket.db.session import async_session_factory
from admarket.workers import celery_app, worker_runtime
from admarket.workers.runner import on_final_failure, run_job
from admarket.workers.scheduler import JobType

logger = logging.getLogger(__name__)


@celery_app.task(name=JobType.RELEASE_ESCROW.value, bind=True)
def release_escrow(self, payload: dict | None = None, options: dict | None = None) -> bool:
    """Pay out a completed deal to the publisher."""
    from admarket.services.escrow import release_funds

    payload = payload or {}

    async def _run() -> bool:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                return await release_funds(db, runtime.bus, runtime.escrow, payload["deal_id"])
            finally:
                await db.close()

    return run_job(self, JobType.RELEASE_ESCROW, payload, options, _run)


@celery_app.task(name=JobType.REFUND_ESCROW.value, bind=True)
def refund_escrow(self, payload: dict | None = None, options: dict | None = None) -> bool:
    """Return the escrowed amount to the advertiser."""
    from admarket.services.escrow import refund_funds

    payload = payload or {}

    async def _run() -> bool:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                return await refund_funds(
                    db, runtime.bus, runtime.escrow, payload["deal_id"], payload.get("reason")
                )
            finally:
                await db.close()

    return run_job(self, JobType.REFUND_ESCROW, payload, options, _run)


async def _report_unsettled(payload: dict, exc: Exception, attempts: int) -> None:
    logger.error(
        "Escrow left HELD after %d attempt(s), settle deal %s manually", attempts, payload.get("deal_id"),
        extra={"deal_id": payload.get("deal_id"), "error": str(exc)},
    )


on_final_failure(JobType.RELEASE_ESCROW)(_report_unsettled)
on_final_failure(JobType.REFUND_ESCROW)(_report_unsettled)
