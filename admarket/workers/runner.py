"""Retry policy and lifecycle logging shared by all job tasks."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from celery.signals import task_failure, task_retry, task_success

from admarket.workers import celery_app, worker_loop
from admarket.workers.scheduler import JobOptions, JobType

logger = logging.getLogger(__name__)

FinalFailureHook = Callable[[dict[str, Any], Exception, int], Awaitable[None]]

_final_failure_hooks: dict[JobType, FinalFailureHook] = {}


def on_final_failure(job_type: JobType):
    """Register a coroutine run once a job of `job_type` has exhausted its attempts."""

    def decorator(func: FinalFailureHook) -> FinalFailureHook:
        _final_failure_hooks[job_type] = func
        return func

    return decorator


def run_job(
    task,
    job_type: JobType,
    payload: dict[str, Any],
    options: dict[str, Any] | None,
    handler: Callable[[], Awaitable[Any]],
) -> Any:
    """Run `handler` on the worker loop and apply the job's retry policy.

    While attempts remain the task is retried with its backoff; after the
    last attempt the final-failure hook (if any) runs and the error is
    re-raised so Celery marks the task failed.
    """
    opts = JobOptions.from_dict(options, job_type)
    try:
        return worker_loop().run_until_complete(handler())
    except Exception as exc:
        retries = task.request.retries
        attempt = retries + 1
        if attempt < opts.attempts:
            countdown = opts.delay_for(retries)
            logger.warning(
                "%s attempt %d/%d failed, retrying in %ds: %s",
                job_type, attempt, opts.attempts, countdown, exc,
            )
            raise task.retry(exc=exc, countdown=countdown, max_retries=opts.attempts - 1)

        logger.exception(
            "%s failed after %d attempt(s)", job_type, attempt,
            extra={"job_type": str(job_type), "payload": payload},
        )
        hook = _final_failure_hooks.get(job_type)
        if hook is not None:
            try:
                worker_loop().run_until_complete(hook(payload, exc, attempt))
            except Exception:
                logger.exception("Final-failure handler for %s failed", job_type)
        raise


# ---------------------------------------------------------------------------
# Lifecycle logging
# ---------------------------------------------------------------------------


@task_success.connect
def _log_success(sender=None, result=None, **kwargs) -> None:
    task_id = sender.request.id if sender is not None else None
    logger.info(
        "Job completed",
        extra={"job_type": getattr(sender, "name", None), "task_id": task_id},
    )


@task_retry.connect
def _log_retry(sender=None, request=None, reason=None, **kwargs) -> None:
    logger.info(
        "Job retry scheduled",
        extra={"job_type": getattr(sender, "name", None), "reason": str(reason)},
    )


@task_failure.connect
def _log_failure(sender=None, task_id=None, exception=None, **kwargs) -> None:
    logger.error(
        "Job failed",
        extra={"job_type": getattr(sender, "name", None), "task_id": task_id, "error": str(exception)},
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


def queue_health(timeout: float = 1.0) -> dict[str, Any]:
    """Broker reachability and per-worker active / reserved / scheduled job counts."""
    health: dict[str, Any] = {"broker": "ok", "workers": {}}
    try:
        with celery_app.connection_for_write() as conn:
            conn.ensure_connection(max_retries=1)
    except Exception as exc:
        logger.warning("Broker unreachable: %s", exc)
        health["broker"] = "unreachable"
        return health

    inspector = celery_app.control.inspect(timeout=timeout)
    active = inspector.active() or {}
    reserved = inspector.reserved() or {}
    scheduled = inspector.scheduled() or {}
    for worker in set(active) | set(reserved) | set(scheduled):
        health["workers"][worker] = {
            "active": len(active.get(worker, [])),
            "reserved": len(reserved.get(worker, [])),
            "scheduled": len(scheduled.get(worker, [])),
        }
    return health
