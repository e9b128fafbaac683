"""Tests for the deal state machine: rule table, roles and projections."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from admarket.core.errors import ForbiddenError, RuleTableError, ValidationError
from admarket.services.deal_state_machine import (
    ACTIVE_STATUSES,
    CANCELABLE_STATUSES,
    STAGE_TIMEOUT_HOURS,
    SYSTEM,
    TERMINAL_STATUSES,
    TRANSITION_RULES,
    ActorRole,
    DealStatus,
    TransitionRule,
    UserActor,
    assert_transition_allowed,
    calculate_fees,
    can_transition,
    get_deal_available_actions,
    get_deal_deadline_info,
    history_entry,
    parse_status_history,
    resolve_actor_role,
    validate_rule_table,
)

ADVERTISER_ID = 1
PUBLISHER_ID = 2


def _deal(status: DealStatus) -> SimpleNamespace:
    return SimpleNamespace(status=status, advertiser_id=ADVERTISER_ID, publisher_id=PUBLISHER_ID)


class TestHappyPathLifecycle:
    """Full lifecycle: CREATED → ... → COMPLETED."""

    def test_full_happy_path(self):
        path = [
            (DealStatus.CREATED, DealStatus.NEGOTIATING, ActorRole.ADVERTISER),
            (DealStatus.NEGOTIATING, DealStatus.TERMS_AGREED, ActorRole.PUBLISHER),
            (DealStatus.TERMS_AGREED, DealStatus.AWAITING_PAYMENT, ActorRole.SYSTEM),
            (DealStatus.AWAITING_PAYMENT, DealStatus.FUNDED, ActorRole.SYSTEM),
            (DealStatus.FUNDED, DealStatus.AWAITING_CREATIVE, ActorRole.SYSTEM),
            (DealStatus.AWAITING_CREATIVE, DealStatus.CREATIVE_SUBMITTED, ActorRole.PUBLISHER),
            (DealStatus.CREATIVE_SUBMITTED, DealStatus.CREATIVE_APPROVED, ActorRole.ADVERTISER),
            (DealStatus.CREATIVE_APPROVED, DealStatus.AWAITING_POSTING_PLAN, ActorRole.SYSTEM),
            (DealStatus.AWAITING_POSTING_PLAN, DealStatus.POSTING_PLAN_AGREED, ActorRole.PUBLISHER),
            (DealStatus.POSTING_PLAN_AGREED, DealStatus.SCHEDULED, ActorRole.SYSTEM),
            (DealStatus.SCHEDULED, DealStatus.POSTING, ActorRole.SYSTEM),
            (DealStatus.POSTING, DealStatus.POSTED, ActorRole.SYSTEM),
            (DealStatus.POSTED, DealStatus.VERIFIED, ActorRole.SYSTEM),
            (DealStatus.VERIFIED, DealStatus.COMPLETED, ActorRole.SYSTEM),
        ]
        for current, target, role in path:
            assert_transition_allowed(current, target, role)

    def test_creative_revision_cycle(self):
        assert can_transition(DealStatus.CREATIVE_SUBMITTED, DealStatus.CREATIVE_REVISION, ActorRole.ADVERTISER)
        assert can_transition(DealStatus.CREATIVE_REVISION, DealStatus.CREATIVE_SUBMITTED, ActorRole.PUBLISHER)

    def test_negotiating_may_repeat(self):
        assert can_transition(DealStatus.NEGOTIATING, DealStatus.NEGOTIATING, ActorRole.ADVERTISER)


class TestRuleTable:
    def test_shipped_table_is_valid(self):
        validate_rule_table()

    def test_every_status_but_created_has_a_rule(self):
        assert set(TRANSITION_RULES) == set(DealStatus) - {DealStatus.CREATED}

    @pytest.mark.parametrize("current", list(DealStatus))
    @pytest.mark.parametrize("target", list(DealStatus))
    @pytest.mark.parametrize("role", [ActorRole.ADVERTISER, ActorRole.PUBLISHER, ActorRole.SYSTEM])
    def test_decision_matches_table(self, current, target, role):
        rule = TRANSITION_RULES.get(target)
        expected = rule is not None and current in rule.sources and role in rule.actors
        assert can_transition(current, target, role) is expected

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES - {DealStatus.CANCELLED, DealStatus.EXPIRED}))
    def test_closed_terminals_have_no_exits(self, terminal):
        for target in DealStatus:
            assert not can_transition(terminal, target, ActorRole.SYSTEM)

    def test_cancelled_and_expired_only_lead_to_refund(self):
        for source in (DealStatus.CANCELLED, DealStatus.EXPIRED):
            allowed = {t for t in DealStatus if can_transition(source, t, ActorRole.SYSTEM)}
            assert allowed == {DealStatus.REFUNDED}

    def test_missing_rule_is_rejected(self):
        rules = dict(TRANSITION_RULES)
        del rules[DealStatus.RESOLVED]
        with pytest.raises(RuleTableError):
            validate_rule_table(rules)

    def test_empty_actor_set_is_rejected(self):
        rules = dict(TRANSITION_RULES)
        rules[DealStatus.FUNDED] = replace(rules[DealStatus.FUNDED], actors=frozenset())
        with pytest.raises(RuleTableError):
            validate_rule_table(rules)

    def test_dead_end_is_rejected(self):
        rules = dict(TRANSITION_RULES)
        refunded = rules[DealStatus.REFUNDED]
        rules[DealStatus.REFUNDED] = replace(refunded, sources=refunded.sources - {DealStatus.DISPUTED})
        rules[DealStatus.RESOLVED] = TransitionRule(
            frozenset({DealStatus.VERIFIED}), frozenset({ActorRole.SYSTEM})
        )
        with pytest.raises(RuleTableError, match="DISPUTED"):
            validate_rule_table(rules)

    def test_unreachable_status_is_rejected(self):
        rules = dict(TRANSITION_RULES)
        rules[DealStatus.RESOLVED] = TransitionRule(
            frozenset({DealStatus.RESOLVED}), frozenset({ActorRole.SYSTEM})
        )
        with pytest.raises(RuleTableError, match="RESOLVED"):
            validate_rule_table(rules)


class TestInvalidTransitions:
    def test_unknown_target(self):
        with pytest.raises(ValidationError) as exc_info:
            assert_transition_allowed(DealStatus.CREATED, "SHIPPED", ActorRole.SYSTEM)
        assert exc_info.value.code == "unknown_target"

    def test_created_is_not_a_target(self):
        with pytest.raises(ValidationError):
            assert_transition_allowed(DealStatus.NEGOTIATING, DealStatus.CREATED, ActorRole.SYSTEM)

    def test_illegal_source(self):
        with pytest.raises(ValidationError) as exc_info:
            assert_transition_allowed(DealStatus.CREATED, DealStatus.FUNDED, ActorRole.SYSTEM)
        assert exc_info.value.code == "invalid_transition"

    def test_publisher_cannot_approve_creative(self):
        with pytest.raises(ForbiddenError):
            assert_transition_allowed(
                DealStatus.CREATIVE_SUBMITTED, DealStatus.CREATIVE_APPROVED, ActorRole.PUBLISHER
            )

    def test_users_cannot_mark_posted(self):
        for role in (ActorRole.ADVERTISER, ActorRole.PUBLISHER):
            with pytest.raises(ForbiddenError):
                assert_transition_allowed(DealStatus.POSTING, DealStatus.POSTED, role)

    def test_unknown_role_is_forbidden(self):
        with pytest.raises(ForbiddenError):
            assert_transition_allowed(DealStatus.FUNDED, DealStatus.CANCELLED, ActorRole.UNKNOWN)

    def test_posted_cannot_be_cancelled(self):
        assert DealStatus.POSTED not in CANCELABLE_STATUSES
        assert not can_transition(DealStatus.POSTED, DealStatus.CANCELLED, ActorRole.ADVERTISER)


class TestActors:
    def test_roles(self):
        deal = _deal(DealStatus.CREATED)
        assert resolve_actor_role(SYSTEM, deal) == ActorRole.SYSTEM
        assert resolve_actor_role(UserActor(ADVERTISER_ID), deal) == ActorRole.ADVERTISER
        assert resolve_actor_role(UserActor(PUBLISHER_ID), deal) == ActorRole.PUBLISHER
        assert resolve_actor_role(UserActor(99), deal) == ActorRole.UNKNOWN
        assert resolve_actor_role(None, deal) == ActorRole.UNKNOWN

    def test_history_ids(self):
        assert SYSTEM.history_id == "SYSTEM"
        assert UserActor(42).history_id == "42"


class TestStatusHistory:
    def test_non_list_is_empty(self):
        assert parse_status_history(None) == []
        assert parse_status_history({"status": "CREATED"}) == []

    def test_malformed_entries_dropped(self):
        raw = [
            {"status": "CREATED", "timestamp": "2026-01-01T00:00:00+00:00", "actor": "1"},
            {"status": "NEGOTIATING"},
            "garbage",
            {"status": 5, "timestamp": "2026-01-02T00:00:00+00:00"},
            {"status": "NEGOTIATING", "timestamp": "2026-01-03T00:00:00+00:00", "actor": 7},
        ]
        history = parse_status_history(raw)
        assert [e["status"] for e in history] == ["CREATED", "NEGOTIATING"]
        assert history[1]["actor"] == "SYSTEM"

    def test_history_entry(self):
        at = datetime(2026, 3, 1, tzinfo=timezone.utc)
        entry = history_entry(DealStatus.FUNDED, UserActor(3), at)
        assert entry == {"status": "FUNDED", "timestamp": at.isoformat(), "actor": "3"}


class TestDeadlineInfo:
    def test_no_timeout_configured(self):
        info = get_deal_deadline_info(DealStatus.FUNDED, [], datetime.now(timezone.utc))
        assert info.current_stage_deadline_at is None
        assert info.current_stage_timeout_hours is None
        assert info.stage_started_at is None

    def test_uses_latest_history_entry_for_status(self):
        first = datetime(2026, 1, 1, tzinfo=timezone.utc)
        second = datetime(2026, 1, 5, tzinfo=timezone.utc)
        history = [
            history_entry(DealStatus.NEGOTIATING, SYSTEM, first),
            history_entry(DealStatus.NEGOTIATING, SYSTEM, second),
        ]
        info = get_deal_deadline_info(DealStatus.NEGOTIATING, history, None)
        assert info.stage_started_at == second
        assert info.current_stage_deadline_at == second + timedelta(hours=72)

    def test_falls_back_to_last_updated(self):
        updated = datetime(2026, 2, 1, 12, 0)
        info = get_deal_deadline_info(DealStatus.AWAITING_PAYMENT, [], updated)
        assert info.stage_started_at == updated.replace(tzinfo=timezone.utc)
        assert info.current_stage_timeout_hours == 48

    def test_unparseable_timestamp_gives_unknown_deadline(self):
        history = [{"status": "AWAITING_PAYMENT", "timestamp": "yesterday", "actor": "SYSTEM"}]
        info = get_deal_deadline_info(DealStatus.AWAITING_PAYMENT, history, datetime.now(timezone.utc))
        assert info.current_stage_deadline_at is None
        assert info.current_stage_timeout_hours == 48
        assert info.stage_started_at is None

    def test_deadline_moves_forward_with_stage_start(self):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        deadlines = [
            get_deal_deadline_info(
                DealStatus.CREATED, [history_entry(DealStatus.CREATED, SYSTEM, start + timedelta(hours=h))], None
            ).current_stage_deadline_at
            for h in (0, 1, 5, 30)
        ]
        assert deadlines == sorted(deadlines)

    def test_every_timed_status_is_active(self):
        assert set(STAGE_TIMEOUT_HOURS) <= ACTIVE_STATUSES


class TestAvailableActions:
    def test_publisher_in_created(self):
        actions = get_deal_available_actions(_deal(DealStatus.CREATED), UserActor(PUBLISHER_ID))
        assert actions.accept_terms
        assert actions.cancel_deal
        assert not actions.fund_deal
        assert not actions.open_dispute

    def test_advertiser_reviews_creative(self):
        actions = get_deal_available_actions(_deal(DealStatus.CREATIVE_SUBMITTED), UserActor(ADVERTISER_ID))
        assert actions.approve_creative
        assert actions.request_creative_revision
        assert not actions.submit_creative

    def test_stranger_gets_nothing(self):
        actions = get_deal_available_actions(_deal(DealStatus.AWAITING_POSTING_PLAN), UserActor(99))
        assert not any(vars(actions).values())

    def test_posting_plan_for_both_parties(self):
        for user_id in (ADVERTISER_ID, PUBLISHER_ID):
            actions = get_deal_available_actions(_deal(DealStatus.AWAITING_POSTING_PLAN), UserActor(user_id))
            assert actions.propose_posting_plan
            assert actions.respond_posting_plan

    def test_no_cancel_after_posting(self):
        actions = get_deal_available_actions(_deal(DealStatus.POSTED), UserActor(ADVERTISER_ID))
        assert not actions.cancel_deal


class TestFees:
    def test_default_fee_split(self):
        assert calculate_fees("1000000000", 500) == ("50000000", "950000000")

    def test_rounds_fee_down(self):
        fee, publisher = calculate_fees("999", 500)
        assert fee == "49"
        assert int(fee) + int(publisher) == 999
