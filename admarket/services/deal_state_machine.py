"""Deal state machine: pure logic, no DB dependency.

Defines the deal lifecycle statuses, the transition rule table (keyed by
target status), per-stage timeouts, the actor model, and read-only
projections used by the API (deadline info, available actions, fees).
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Any

from admarket.core.errors import ForbiddenError, RuleTableError, ValidationError


class DealStatus(StrEnum):
    CREATED = "CREATED"
    NEGOTIATING = "NEGOTIATING"
    TERMS_AGREED = "TERMS_AGREED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    FUNDED = "FUNDED"
    AWAITING_CREATIVE = "AWAITING_CREATIVE"
    CREATIVE_SUBMITTED = "CREATIVE_SUBMITTED"
    CREATIVE_REVISION = "CREATIVE_REVISION"
    CREATIVE_APPROVED = "CREATIVE_APPROVED"
    AWAITING_POSTING_PLAN = "AWAITING_POSTING_PLAN"
    POSTING_PLAN_AGREED = "POSTING_PLAN_AGREED"
    SCHEDULED = "SCHEDULED"
    AWAITING_MANUAL_POST = "AWAITING_MANUAL_POST"
    POSTING = "POSTING"
    POSTED = "POSTED"
    VERIFIED = "VERIFIED"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    EXPIRED = "EXPIRED"


class EscrowStatus(StrEnum):
    NONE = "NONE"
    PENDING = "PENDING"
    HELD = "HELD"
    RELEASING = "RELEASING"
    RELEASED = "RELEASED"
    REFUNDING = "REFUNDING"
    REFUNDED = "REFUNDED"
    PARTIAL_REFUND = "PARTIAL_REFUND"


class ActorRole(StrEnum):
    ADVERTISER = "ADVERTISER"
    PUBLISHER = "PUBLISHER"
    SYSTEM = "SYSTEM"
    UNKNOWN = "UNKNOWN"


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

SYSTEM_ACTOR_ID = "SYSTEM"


@dataclass(frozen=True)
class SystemActor:
    """The platform itself (scheduled tasks, listeners)."""

    @property
    def history_id(self) -> str:
        return SYSTEM_ACTOR_ID


@dataclass(frozen=True)
class UserActor:
    user_id: int

    @property
    def history_id(self) -> str:
        return str(self.user_id)


Actor = SystemActor | UserActor

SYSTEM = SystemActor()


def resolve_actor_role(actor: Actor | None, deal: Any) -> ActorRole:
    """Map an actor onto its role in `deal` (anything with advertiser_id / publisher_id)."""
    if isinstance(actor, SystemActor):
        return ActorRole.SYSTEM
    if isinstance(actor, UserActor):
        if actor.user_id == deal.advertiser_id:
            return ActorRole.ADVERTISER
        if actor.user_id == deal.publisher_id:
            return ActorRole.PUBLISHER
    return ActorRole.UNKNOWN


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransitionRule:
    sources: frozenset[DealStatus]
    actors: frozenset[ActorRole]


_ALL_ACTORS = frozenset({ActorRole.ADVERTISER, ActorRole.PUBLISHER, ActorRole.SYSTEM})
_SYSTEM_ONLY = frozenset({ActorRole.SYSTEM})

TERMINAL_STATUSES: frozenset[DealStatus] = frozenset({
    DealStatus.COMPLETED,
    DealStatus.CANCELLED,
    DealStatus.EXPIRED,
    DealStatus.REFUNDED,
    DealStatus.RESOLVED,
})

ACTIVE_STATUSES: frozenset[DealStatus] = frozenset(
    s for s in DealStatus if s not in TERMINAL_STATUSES
)

# Everything up to (and including) the moment the post goes out
CANCELABLE_STATUSES: frozenset[DealStatus] = frozenset({
    DealStatus.CREATED,
    DealStatus.NEGOTIATING,
    DealStatus.TERMS_AGREED,
    DealStatus.AWAITING_PAYMENT,
    DealStatus.FUNDED,
    DealStatus.AWAITING_CREATIVE,
    DealStatus.CREATIVE_SUBMITTED,
    DealStatus.CREATIVE_REVISION,
    DealStatus.CREATIVE_APPROVED,
    DealStatus.AWAITING_POSTING_PLAN,
    DealStatus.POSTING_PLAN_AGREED,
    DealStatus.SCHEDULED,
    DealStatus.AWAITING_MANUAL_POST,
    DealStatus.POSTING,
})

INITIAL_STATUS = DealStatus.CREATED

# target status → (allowed sources, allowed actor roles)
TRANSITION_RULES: dict[DealStatus, TransitionRule] = {
    # Negotiation
    DealStatus.NEGOTIATING: TransitionRule(
        frozenset({DealStatus.CREATED, DealStatus.NEGOTIATING}), _ALL_ACTORS,
    ),
    DealStatus.TERMS_AGREED: TransitionRule(
        frozenset({DealStatus.CREATED, DealStatus.NEGOTIATING}), _ALL_ACTORS,
    ),
    # Payment
    DealStatus.AWAITING_PAYMENT: TransitionRule(
        frozenset({DealStatus.TERMS_AGREED}), _ALL_ACTORS,
    ),
    DealStatus.FUNDED: TransitionRule(
        frozenset({DealStatus.AWAITING_PAYMENT}), _ALL_ACTORS,
    ),
    # Creative
    DealStatus.AWAITING_CREATIVE: TransitionRule(
        frozenset({DealStatus.FUNDED}), _ALL_ACTORS,
    ),
    DealStatus.CREATIVE_SUBMITTED: TransitionRule(
        frozenset({
            DealStatus.FUNDED,
            DealStatus.AWAITING_CREATIVE,
            DealStatus.CREATIVE_REVISION,
        }),
        frozenset({ActorRole.PUBLISHER, ActorRole.SYSTEM}),
    ),
    DealStatus.CREATIVE_REVISION: TransitionRule(
        frozenset({DealStatus.CREATIVE_SUBMITTED}),
        frozenset({ActorRole.ADVERTISER, ActorRole.SYSTEM}),
    ),
    DealStatus.CREATIVE_APPROVED: TransitionRule(
        frozenset({DealStatus.CREATIVE_SUBMITTED}),
        frozenset({ActorRole.ADVERTISER, ActorRole.SYSTEM}),
    ),
    # Posting plan
    DealStatus.AWAITING_POSTING_PLAN: TransitionRule(
        frozenset({DealStatus.CREATIVE_APPROVED}), _ALL_ACTORS,
    ),
    DealStatus.POSTING_PLAN_AGREED: TransitionRule(
        frozenset({DealStatus.AWAITING_POSTING_PLAN}), _ALL_ACTORS,
    ),
    DealStatus.SCHEDULED: TransitionRule(
        frozenset({DealStatus.POSTING_PLAN_AGREED}), _ALL_ACTORS,
    ),
    DealStatus.AWAITING_MANUAL_POST: TransitionRule(
        frozenset({DealStatus.POSTING_PLAN_AGREED}), _ALL_ACTORS,
    ),
    # Publication and verification
    DealStatus.POSTING: TransitionRule(
        frozenset({DealStatus.SCHEDULED, DealStatus.AWAITING_MANUAL_POST}), _SYSTEM_ONLY,
    ),
    DealStatus.POSTED: TransitionRule(frozenset({DealStatus.POSTING}), _SYSTEM_ONLY),
    DealStatus.VERIFIED: TransitionRule(frozenset({DealStatus.POSTED}), _SYSTEM_ONLY),
    DealStatus.COMPLETED: TransitionRule(frozenset({DealStatus.VERIFIED}), _SYSTEM_ONLY),
    # Exits
    DealStatus.CANCELLED: TransitionRule(CANCELABLE_STATUSES, _ALL_ACTORS),
    DealStatus.EXPIRED: TransitionRule(
        frozenset({
            DealStatus.CREATED,
            DealStatus.NEGOTIATING,
            DealStatus.TERMS_AGREED,
            DealStatus.AWAITING_PAYMENT,
            DealStatus.AWAITING_CREATIVE,
            DealStatus.CREATIVE_REVISION,
            DealStatus.AWAITING_POSTING_PLAN,
            DealStatus.POSTING_PLAN_AGREED,
            DealStatus.SCHEDULED,
            DealStatus.AWAITING_MANUAL_POST,
        }),
        _SYSTEM_ONLY,
    ),
    DealStatus.REFUNDED: TransitionRule(
        frozenset({
            DealStatus.CANCELLED,
            DealStatus.EXPIRED,
            DealStatus.POSTED,
            DealStatus.VERIFIED,
            DealStatus.DISPUTED,
        }),
        _ALL_ACTORS,
    ),
    DealStatus.DISPUTED: TransitionRule(
        frozenset({
            DealStatus.FUNDED,
            DealStatus.AWAITING_CREATIVE,
            DealStatus.CREATIVE_SUBMITTED,
            DealStatus.CREATIVE_REVISION,
            DealStatus.CREATIVE_APPROVED,
            DealStatus.AWAITING_POSTING_PLAN,
            DealStatus.POSTING_PLAN_AGREED,
            DealStatus.SCHEDULED,
            DealStatus.POSTING,
            DealStatus.POSTED,
            DealStatus.VERIFIED,
        }),
        _ALL_ACTORS,
    ),
    DealStatus.RESOLVED: TransitionRule(frozenset({DealStatus.DISPUTED}), _SYSTEM_ONLY),
}

# Soft per-stage timeouts; statuses not listed have no deadline
STAGE_TIMEOUT_HOURS: dict[DealStatus, int] = {
    DealStatus.CREATED: 72,
    DealStatus.NEGOTIATING: 72,
    DealStatus.TERMS_AGREED: 48,
    DealStatus.AWAITING_PAYMENT: 48,
    DealStatus.AWAITING_CREATIVE: 48,
    DealStatus.CREATIVE_SUBMITTED: 72,
    DealStatus.CREATIVE_REVISION: 48,
    DealStatus.AWAITING_POSTING_PLAN: 48,
    DealStatus.AWAITING_MANUAL_POST: 24,
    DealStatus.POSTED: 72,
}


def validate_rule_table(
    rules: dict[DealStatus, TransitionRule] | None = None,
) -> None:
    """Check the rule table covers the whole lifecycle.

    Raises RuleTableError when a non-initial status has no rule, a rule is
    empty, an active status is a dead end, or a status is unreachable.
    """
    rules = TRANSITION_RULES if rules is None else rules

    missing = [s for s in DealStatus if s != INITIAL_STATUS and s not in rules]
    if missing:
        raise RuleTableError(f"No transition rule for: {', '.join(missing)}")

    outgoing: dict[DealStatus, set[DealStatus]] = {s: set() for s in DealStatus}
    for target, rule in rules.items():
        if not rule.sources or not rule.actors:
            raise RuleTableError(f"Rule for {target} has no sources or no actors")
        for source in rule.sources:
            outgoing[source].add(target)

    dead_ends = [
        s for s in DealStatus if s not in TERMINAL_STATUSES and not outgoing[s] - {s}
    ]
    if dead_ends:
        raise RuleTableError(f"Active statuses without exits: {', '.join(dead_ends)}")

    seen = {INITIAL_STATUS}
    queue = deque([INITIAL_STATUS])
    while queue:
        for nxt in outgoing[queue.popleft()]:
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    unreachable = [s for s in DealStatus if s not in seen]
    if unreachable:
        raise RuleTableError(f"Unreachable statuses: {', '.join(unreachable)}")


def assert_transition_allowed(
    current: DealStatus | str, target: DealStatus | str, role: ActorRole,
) -> None:
    """Raise ValidationError or ForbiddenError if `role` may not move current → target."""
    try:
        target_status = DealStatus(target)
    except ValueError:
        raise ValidationError(
            f"No transition rule is defined for status {target}", code="unknown_target"
        )

    rule = TRANSITION_RULES.get(target_status)
    if rule is None:
        raise ValidationError(
            f"No transition rule is defined for status {target_status}",
            code="unknown_target",
        )
    if current not in rule.sources:
        raise ValidationError(f"Invalid transition: {current} -> {target_status}")
    if role not in rule.actors:
        raise ForbiddenError(f"Actor {role} is not allowed to set status {target_status}")


def can_transition(current: DealStatus | str, target: DealStatus | str, role: ActorRole) -> bool:
    try:
        assert_transition_allowed(current, target, role)
    except (ValidationError, ForbiddenError):
        return False
    return True


# ---------------------------------------------------------------------------
# Status history
# ---------------------------------------------------------------------------


def parse_status_history(raw: Any) -> list[dict[str, str]]:
    """Leniently parse the stored status history.

    Entries without a string status or timestamp are dropped; a missing
    actor becomes "SYSTEM".
    """
    # TODO: count dropped entries once the history column is backfilled, so
    # malformed rows show up in logs instead of disappearing.
    if not isinstance(raw, list):
        return []

    history: list[dict[str, str]] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        status = entry.get("status")
        timestamp = entry.get("timestamp")
        if not isinstance(status, str) or not isinstance(timestamp, str):
            continue
        actor = entry.get("actor")
        history.append({
            "status": status,
            "timestamp": timestamp,
            "actor": actor if isinstance(actor, str) else SYSTEM_ACTOR_ID,
        })
    return history


def history_entry(status: DealStatus, actor: Actor, at: datetime) -> dict[str, str]:
    return {"status": str(status), "timestamp": at.isoformat(), "actor": actor.history_id}


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Projections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeadlineInfo:
    current_stage_deadline_at: datetime | None
    current_stage_timeout_hours: int | None
    stage_started_at: datetime | None


def get_deal_deadline_info(
    status: DealStatus | str, history: Any, last_updated: datetime | None,
) -> DeadlineInfo:
    """Deadline of the current stage, or nulls when the stage has no timeout."""
    timeout_hours = STAGE_TIMEOUT_HOURS.get(status)
    if not timeout_hours:
        return DeadlineInfo(None, None, None)

    started_raw: str | None = None
    for entry in reversed(parse_status_history(history)):
        if entry["status"] == status:
            started_raw = entry["timestamp"]
            break

    if started_raw is not None:
        started_at = _parse_timestamp(started_raw)
    elif last_updated is not None:
        started_at = last_updated if last_updated.tzinfo else last_updated.replace(tzinfo=timezone.utc)
    else:
        started_at = None

    if started_at is None:
        return DeadlineInfo(None, timeout_hours, None)

    return DeadlineInfo(
        current_stage_deadline_at=started_at + timedelta(hours=timeout_hours),
        current_stage_timeout_hours=timeout_hours,
        stage_started_at=started_at,
    )


@dataclass(frozen=True)
class DealAvailableActions:
    accept_terms: bool = False
    fund_deal: bool = False
    verify_payment: bool = False
    submit_creative: bool = False
    approve_creative: bool = False
    request_creative_revision: bool = False
    cancel_deal: bool = False
    propose_posting_plan: bool = False
    respond_posting_plan: bool = False
    open_dispute: bool = False


def get_deal_available_actions(deal: Any, viewer: Actor | None) -> DealAvailableActions:
    """UI affordances for `viewer` on `deal`. Pure, no side effects."""
    role = resolve_actor_role(viewer, deal)
    status = deal.status
    is_advertiser = role == ActorRole.ADVERTISER
    is_publisher = role == ActorRole.PUBLISHER
    is_party = is_advertiser or is_publisher

    return DealAvailableActions(
        accept_terms=is_publisher
        and status in (DealStatus.CREATED, DealStatus.NEGOTIATING),
        fund_deal=is_advertiser
        and status in (DealStatus.TERMS_AGREED, DealStatus.AWAITING_PAYMENT),
        verify_payment=is_advertiser
        and status in (DealStatus.AWAITING_PAYMENT, DealStatus.FUNDED),
        submit_creative=is_publisher
        and status in (
            DealStatus.FUNDED,
            DealStatus.AWAITING_CREATIVE,
            DealStatus.CREATIVE_REVISION,
        ),
        approve_creative=is_advertiser and status == DealStatus.CREATIVE_SUBMITTED,
        request_creative_revision=is_advertiser and status == DealStatus.CREATIVE_SUBMITTED,
        cancel_deal=is_party and status in CANCELABLE_STATUSES,
        propose_posting_plan=is_party and status == DealStatus.AWAITING_POSTING_PLAN,
        respond_posting_plan=is_party and status == DealStatus.AWAITING_POSTING_PLAN,
        open_dispute=False,
    )


def calculate_fees(agreed_price: str, fee_bps: int) -> tuple[str, str]:
    """Split an integer price string into (platform_fee, publisher_amount)."""
    amount = int(agreed_price)
    platform_fee = amount * fee_bps // 10_000
    return str(platform_fee), str(amount - platform_fee)


validate_rule_table()
