import logging

from admarket.db.session import async_session_factory
from admarket.workers import celery_app, worker_runtime
from admarket.workers.runner import run_job
from admarket.workers.scheduler import JobType

logger = logging.getLogger(__name__)


@celery_app.task(name=JobType.REFRESH_CHANNEL_STATS.value, bind=True)
def refresh_channel_stats(self, payload: dict | None = None, options: dict | None = None) -> int:
    """On-demand task: refresh the subscriber count of a single channel."""
    from admarket.services.channel import refresh_channel_stats as refresh

    payload = payload or {}

    async def _run() -> int:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                return await refresh(db, runtime.bus, payload["channel_id"])
            finally:
                await db.close()

    return run_job(self, JobType.REFRESH_CHANNEL_STATS, payload, options, _run)


@celery_app.task(name=JobType.REFRESH_ALL_STATS.value, bind=True)
def refresh_all_stats(self, payload: dict | None = None, options: dict | None = None) -> int:
    """Periodic task: refresh stats for every channel with bot admin access."""
    from admarket.services.channel import refresh_all_stats as refresh_all

    async def _run() -> int:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                return await refresh_all(db, runtime.bus)
            finally:
                await db.close()

    return run_job(self, JobType.REFRESH_ALL_STATS, payload or {}, options, _run)


@celery_app.task(name=JobType.VERIFY_CHANNEL_ADMIN.value, bind=True)
def verify_channel_admin(self, payload: dict | None = None, options: dict | None = None) -> bool:
    from admarket.services.channel import verify_channel_admin as verify

    payload = payload or {}

    async def _run() -> bool:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                return await verify(db, runtime.bus, payload["channel_id"])
            finally:
                await db.close()

    return run_job(self, JobType.VERIFY_CHANNEL_ADMIN, payload, options, _run)


@celery_app.task(name=JobType.RECHECK_ADMIN_STATUS.value, bind=True)
def recheck_admin_status(self, payload: dict | None = None, options: dict | None = None) -> int:
    """Periodic task: re-verify the bot is still admin in every active channel."""
    from admarket.services.channel import recheck_admin_status as recheck

    async def _run() -> int:
        runtime = worker_runtime()
        async with async_session_factory() as db:
            try:
                return await recheck(db, runtime.bus)
            finally:
                await db.close()

    return run_job(self, JobType.RECHECK_ADMIN_STATUS, payload or {}, options, _run)
