import asyncio
import logging

from celery import Celery
from celery.schedules import ParseException, crontab
from celery.signals import setup_logging as celery_setup_logging

from admarket.core.config import settings
from admarket.core.logging_config import setup_logging

logger = logging.getLogger(__name__)

_loop = None
_runtime = None


def worker_loop() -> asyncio.AbstractEventLoop:
    """Return a shared event loop for all Celery worker tasks.

    All async tasks must use the same loop to avoid 'Future attached to
    a different loop' errors caused by the shared asyncpg connection pool.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop


def worker_runtime():
    """The worker process's Runtime (event bus + listeners + scheduler), built on first use."""
    global _runtime
    if _runtime is None:
        from admarket.runtime import build_runtime

        _runtime = build_runtime()
    return _runtime


POSTING_QUEUE = "posting"
DEFAULT_QUEUE = "default"

# Worker concurrency per queue; posting talks to Telegram and is kept low
QUEUE_CONCURRENCY = {
    POSTING_QUEUE: settings.posting_concurrency,
    DEFAULT_QUEUE: settings.default_concurrency,
}

DEFAULT_ANALYTICS_CRON = "0 3 * * *"


def parse_cron(expr: str, fallback: str = DEFAULT_ANALYTICS_CRON) -> crontab:
    """Build a crontab from a 5-field expression, falling back when it is invalid."""
    try:
        minute, hour, day_of_month, month_of_year, day_of_week = expr.split()
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except (ValueError, ParseException, AttributeError) as exc:
        logger.warning("Invalid cron expression %r (%s), using %r", expr, exc, fallback)
        if expr == fallback:
            raise
        return parse_cron(fallback, fallback)


def build_beat_schedule() -> dict:
    """Recurring jobs. Entry names are stable, so redeclaring on restart replaces, never duplicates."""
    schedule = {
        "check-deal-timeouts": {
            "task": "check_deal_timeouts",
            "schedule": crontab(minute=0, hour="*"),
        },
        "recheck-admin-status": {
            "task": "recheck_admin_status",
            "schedule": crontab(minute=0, hour=4),
        },
        "verify-posted-deals": {
            "task": "verify_posted_deals",
            "schedule": crontab(minute="*/15"),
        },
    }
    if settings.analytics_refresh_enabled:
        schedule["refresh-all-stats"] = {
            "task": "refresh_all_stats",
            "schedule": parse_cron(settings.analytics_refresh_cron),
        }
    return schedule


celery_app = Celery(
    "admarket_worker",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.analytics_refresh_timezone,
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # Delayed jobs stay unacked in Redis until they run; keep them from
    # being redelivered while they wait.
    broker_transport_options={"visibility_timeout": 24 * 3600},
    result_expires=24 * 3600,
    task_default_queue=DEFAULT_QUEUE,
    task_routes={
        "publish_post": {"queue": POSTING_QUEUE},
        "verify_post": {"queue": POSTING_QUEUE},
        "monitor_post": {"queue": POSTING_QUEUE},
    },
    beat_schedule=build_beat_schedule(),
)


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    setup_logging()


# Import tasks so they are registered with the celery app
import admarket.workers.runner  # noqa: F401, E402
import admarket.workers.tasks  # noqa: F401, E402
import admarket.workers.deal_timeouts  # noqa: F401, E402
import admarket.workers.escrow_operations  # noqa: F401, E402
import admarket.workers.posting  # noqa: F401, E402
import admarket.workers.verify_posting  # noqa: F401, E402
