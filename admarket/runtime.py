"""Per-process wiring: one event bus with its listeners, the task scheduler
and the escrow client. Built once by the API lifespan and once per worker
process (see admarket.workers.worker_runtime)."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from admarket.services.deal_state_machine import validate_rule_table
from admarket.services.escrow import EscrowClient
from admarket.services.events import EventBus
from admarket.workers.scheduler import TaskScheduler

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    bus: EventBus
    scheduler: TaskScheduler
    escrow: EscrowClient
    session_factory: Callable[[], AsyncSession]


def build_runtime(
    *,
    session_factory: Callable[[], AsyncSession] | None = None,
    scheduler: TaskScheduler | None = None,
    escrow: EscrowClient | None = None,
) -> Runtime:
    from admarket.services.listeners import register_listeners

    validate_rule_table()

    if session_factory is None:
        from admarket.db.session import async_session_factory as session_factory
    if scheduler is None:
        from admarket.workers import celery_app

        scheduler = TaskScheduler(celery_app)

    runtime = Runtime(
        bus=EventBus(),
        scheduler=scheduler,
        escrow=escrow or EscrowClient(),
        session_factory=session_factory,
    )
    register_listeners(runtime)
    logger.info("Runtime built")
    return runtime
