"""Durable task scheduler on top of Celery + Redis.

Jobs are Celery messages: they survive process restarts (acks_late) and
carry their retry options with them, so the runner applies the policy the
job was enqueued with. A dedupe key is claimed in Redis with SET NX and
reused as the Celery task id; enqueuing the same key again is a no-op.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from enum import StrEnum
from typing import Any

from celery import Celery

from admarket.core.config import settings
from admarket.core.idempotency import claim_key, release_key

logger = logging.getLogger(__name__)


class JobType(StrEnum):
    PUBLISH_POST = "publish_post"
    VERIFY_POST = "verify_post"
    MONITOR_POST = "monitor_post"
    CHECK_DEAL_TIMEOUTS = "check_deal_timeouts"
    SEND_TIMEOUT_WARNING = "send_timeout_warning"
    EXPIRE_DEAL = "expire_deal"
    REFRESH_CHANNEL_STATS = "refresh_channel_stats"
    REFRESH_ALL_STATS = "refresh_all_stats"
    VERIFY_CHANNEL_ADMIN = "verify_channel_admin"
    RECHECK_ADMIN_STATUS = "recheck_admin_status"
    VERIFY_POSTED_DEALS = "verify_posted_deals"
    RELEASE_ESCROW = "release_escrow"
    REFUND_ESCROW = "refund_escrow"


POSTING_JOB_TYPES: frozenset[JobType] = frozenset({
    JobType.PUBLISH_POST,
    JobType.VERIFY_POST,
    JobType.MONITOR_POST,
})

ESCROW_JOB_TYPES: frozenset[JobType] = frozenset({
    JobType.RELEASE_ESCROW,
    JobType.REFUND_ESCROW,
})


@dataclass(frozen=True)
class JobOptions:
    attempts: int
    backoff_seconds: int
    backoff_type: str = "exponential"

    def delay_for(self, retries: int) -> int:
        """Countdown before the retry following `retries` failed attempts."""
        if self.backoff_type == "fixed":
            return self.backoff_seconds
        return self.backoff_seconds * 2 ** retries

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, job_type: JobType | str) -> "JobOptions":
        defaults = default_options(job_type)
        if not data:
            return defaults
        return cls(
            attempts=int(data.get("attempts", defaults.attempts)),
            backoff_seconds=int(data.get("backoff_seconds", defaults.backoff_seconds)),
            backoff_type=data.get("backoff_type", defaults.backoff_type),
        )


def default_options(job_type: JobType | str) -> JobOptions:
    if job_type == JobType.PUBLISH_POST:
        return JobOptions(
            attempts=settings.publish_job_attempts,
            backoff_seconds=settings.publish_job_backoff_seconds,
        )
    if job_type in ESCROW_JOB_TYPES:
        return JobOptions(
            attempts=settings.escrow_job_attempts,
            backoff_seconds=settings.escrow_job_backoff_seconds,
        )
    return JobOptions(
        attempts=settings.default_job_attempts,
        backoff_seconds=settings.default_job_backoff_seconds,
    )


def queue_for(job_type: JobType | str) -> str:
    from admarket.workers import DEFAULT_QUEUE, POSTING_QUEUE

    return POSTING_QUEUE if job_type in POSTING_JOB_TYPES else DEFAULT_QUEUE


class TaskScheduler:
    """Enqueue jobs by type. One instance per process, shared through the Runtime."""

    def __init__(self, app: Celery, dedupe_ttl: int | None = None) -> None:
        self.app = app
        self.dedupe_ttl = dedupe_ttl or settings.job_dedupe_ttl_seconds

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        delay: float = 0,
        dedupe_key: str | None = None,
        attempts: int | None = None,
        backoff_seconds: int | None = None,
    ) -> str | None:
        """Enqueue a job. Returns its task id, or None when `dedupe_key` was already used."""
        job_type = JobType(job_type)
        defaults = default_options(job_type)
        options = JobOptions(
            attempts=attempts or defaults.attempts,
            backoff_seconds=backoff_seconds if backoff_seconds is not None else defaults.backoff_seconds,
            backoff_type=defaults.backoff_type,
        )

        if dedupe_key and not await claim_key(dedupe_key, self.dedupe_ttl):
            logger.info(
                "Job already enqueued, skipping",
                extra={"job_type": str(job_type), "dedupe_key": dedupe_key},
            )
            return None

        task_id = dedupe_key or uuid.uuid4().hex
        try:
            self.app.send_task(
                job_type.value,
                args=[payload, options.to_dict()],
                countdown=max(0, int(delay)),
                task_id=task_id,
                queue=queue_for(job_type),
            )
        except Exception:
            if dedupe_key:
                await release_key(dedupe_key)
            raise

        logger.info(
            "Job enqueued",
            extra={
                "job_type": str(job_type),
                "task_id": task_id,
                "delay_seconds": max(0, int(delay)),
                "attempts": options.attempts,
            },
        )
        return task_id
