"""In-process application event bus.

One EventBus is constructed per process (see admarket.runtime) and passed
to the code that publishes or subscribes. Handlers run in registration
order; a failing handler is logged and never stops its siblings, and never
rolls back the transition that produced the event.
"""

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class AppEvent(StrEnum):
    # Deal lifecycle
    DEAL_CREATED = "deal.created"
    DEAL_STATUS_CHANGED = "deal.status.changed"
    DEAL_ACCEPTED = "deal.accepted"
    DEAL_CANCELLED = "deal.cancelled"
    DEAL_COMPLETED = "deal.completed"

    # Payment
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_RELEASED = "payment.released"
    PAYMENT_REFUNDED = "payment.refunded"

    # Creative
    CREATIVE_SUBMITTED = "creative.submitted"
    CREATIVE_APPROVED = "creative.approved"
    CREATIVE_REVISION_REQUESTED = "creative.revision.requested"

    # Posting
    POST_SCHEDULED = "post.scheduled"
    POST_PUBLISHED = "post.published"
    POST_VERIFIED = "post.verified"
    POST_VIOLATION_DETECTED = "post.violation.detected"

    # Channel
    CHANNEL_CREATED = "channel.created"
    CHANNEL_VERIFIED = "channel.verified"
    CHANNEL_ADMIN_STATUS_LOST = "channel.admin.status.lost"

    # Stats
    STATS_UPDATED = "stats.updated"

    # Timeouts
    DEAL_TIMEOUT_WARNING = "deal.timeout.warning"
    DEAL_TIMED_OUT = "deal.timed.out"


Handler = Callable[[dict[str, Any]], Awaitable[None] | None]


@dataclass(frozen=True)
class Subscription:
    event: AppEvent
    handler: Handler
    group: str

    @property
    def name(self) -> str:
        return f"{self.group}:{getattr(self.handler, '__name__', repr(self.handler))}"


class EventBus:
    """Publish/subscribe dispatcher with per-handler failure isolation."""

    def __init__(self) -> None:
        self._subscriptions: dict[AppEvent, list[Subscription]] = defaultdict(list)
        self._groups: set[str] = set()

    def subscribe(self, event: AppEvent, handler: Handler, *, group: str = "default") -> None:
        self._subscriptions[AppEvent(event)].append(Subscription(AppEvent(event), handler, group))
        self._groups.add(group)

    def has_group(self, group: str) -> bool:
        return group in self._groups

    def handlers(self, event: AppEvent) -> list[Subscription]:
        return list(self._subscriptions.get(AppEvent(event), []))

    async def publish(self, event: AppEvent, payload: dict[str, Any]) -> int:
        """Deliver `payload` to every handler of `event`.

        Returns the number of handlers that raised.
        """
        subscriptions = self.handlers(event)
        logger.info(
            "event published",
            extra={"event": str(event), "handlers": len(subscriptions), "deal_id": payload.get("deal_id")},
        )

        failures = 0
        for sub in subscriptions:
            try:
                result = sub.handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                failures += 1
                logger.exception(
                    "Event handler %s failed for %s", sub.name, event,
                    extra={"deal_id": payload.get("deal_id")},
                )
        return failures
