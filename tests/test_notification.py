"""Tests for deal notifications: recipients, rendering and delivery bookkeeping."""

from unittest.mock import AsyncMock, patch

import pytest

from admarket.models.deal import Deal
from admarket.models.notification import Notification
from admarket.models.user import User
from admarket.services import notification
from admarket.services.events import AppEvent


class FakeScalarResult:
    """Mock result for queries returning a single object via scalar_one_or_none()."""
    def __init__(self, item):
        self._item = item

    def scalar_one_or_none(self):
        return self._item


class FakeListResult:
    """Mock result for queries returning lists via scalars().all()."""
    def __init__(self, items):
        self._items = items

    def scalars(self):
        return self

    def all(self):
        return self._items


def _make_deal(status: str = "FUNDED") -> Deal:
    deal = Deal(
        status=status,
        advertiser_id=1,
        publisher_id=2,
        channel_id=3,
        agreed_price="1000",
        currency="TON",
        deal_number=1042,
    )
    deal.id = 8
    return deal


def _user(user_id: int, telegram_id: int) -> User:
    user = User(telegram_id=telegram_id, locale="en")
    user.id = user_id
    return user


def _added(mock_db) -> list[Notification]:
    return [c.args[0] for c in mock_db.add.call_args_list if isinstance(c.args[0], Notification)]


class TestRecipients:
    def test_status_change_skips_actor(self):
        payload = {"new_status": "FUNDED", "actor_id": "1"}
        assert notification._recipients(AppEvent.DEAL_STATUS_CHANGED, _make_deal(), payload) == [2]

    def test_specialized_status_change_is_silent(self):
        payload = {"new_status": "COMPLETED", "actor_id": "SYSTEM"}
        assert notification._recipients(AppEvent.DEAL_STATUS_CHANGED, _make_deal(), payload) == []

    def test_cancel_skips_canceller(self):
        payload = {"cancelled_by": "2"}
        assert notification._recipients(AppEvent.DEAL_CANCELLED, _make_deal(), payload) == [1]

    def test_payment_recipients(self):
        deal = _make_deal()
        assert notification._recipients(AppEvent.PAYMENT_RELEASED, deal, {}) == [2]
        assert notification._recipients(AppEvent.PAYMENT_REFUNDED, deal, {}) == [1]

    def test_timeout_goes_to_both(self):
        assert notification._recipients(AppEvent.DEAL_TIMED_OUT, _make_deal(), {}) == [1, 2]


class TestRender:
    def test_status_names_are_humanized(self):
        title, body = notification.render(
            AppEvent.DEAL_STATUS_CHANGED, _make_deal(),
            {"old_status": "AWAITING_PAYMENT", "new_status": "FUNDED"},
        )
        assert title == "Deal updated"
        assert body == "Deal #1042: Awaiting Payment → Funded."

    def test_defaults_fill_missing_fields(self):
        _, body = notification.render(AppEvent.DEAL_CANCELLED, _make_deal(), {"reason": None})
        assert body.endswith("Reason: not specified")

    def test_timed_out_names_previous_stage(self):
        _, body = notification.render(
            AppEvent.DEAL_TIMED_OUT, _make_deal("EXPIRED"), {"previous_status": "AWAITING_CREATIVE"}
        )
        assert "Awaiting Creative" in body

    def test_unknown_locale_falls_back(self):
        title, _ = notification.render(AppEvent.DEAL_COMPLETED, _make_deal(), {}, locale="xx")
        assert title == "Deal completed"

    def test_supports(self):
        assert notification.supports(AppEvent.DEAL_TIMEOUT_WARNING)
        assert not notification.supports(AppEvent.STATS_UPDATED)


class TestSendNotifications:
    @pytest.mark.asyncio
    async def test_persists_then_delivers(self, mock_db):
        mock_db.execute.side_effect = [
            FakeScalarResult(_make_deal()),
            FakeListResult([_user(1, 1001), _user(2, 2002)]),
        ]
        send = AsyncMock(return_value={"message_id": 1})

        with patch("admarket.services.notification.telegram.send_message", send):
            delivered = await notification.send_notifications(
                mock_db, AppEvent.DEAL_TIMED_OUT, {"deal_id": 8, "previous_status": "AWAITING_PAYMENT"}
            )

        assert delivered == 2
        rows = _added(mock_db)
        assert [r.user_id for r in rows] == [1, 2]
        assert all(r.delivered for r in rows)
        assert rows[0].type == "deal.timed.out"
        assert {c.args[0] for c in send.call_args_list} == {1001, 2002}
        assert mock_db.commit.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_delivery_is_recorded(self, mock_db):
        mock_db.execute.side_effect = [
            FakeScalarResult(_make_deal()),
            FakeListResult([_user(1, 1001), _user(2, 2002)]),
        ]
        send = AsyncMock(side_effect=[RuntimeError("bot was blocked by the user"), {"message_id": 2}])

        with patch("admarket.services.notification.telegram.send_message", send):
            delivered = await notification.send_notifications(
                mock_db, AppEvent.DEAL_COMPLETED, {"deal_id": 8}
            )

        assert delivered == 1
        first, second = _added(mock_db)
        assert first.delivered is not True
        assert first.error == "bot was blocked by the user"
        assert second.delivered is True

    @pytest.mark.asyncio
    async def test_opted_out_user_gets_row_but_no_message(self, mock_db):
        muted = _user(1, 1001)
        muted.notifications_enabled = False
        mock_db.execute.side_effect = [
            FakeScalarResult(_make_deal()),
            FakeListResult([muted, _user(2, 2002)]),
        ]
        send = AsyncMock(return_value={"message_id": 3})

        with patch("admarket.services.notification.telegram.send_message", send):
            delivered = await notification.send_notifications(
                mock_db, AppEvent.DEAL_COMPLETED, {"deal_id": 8}
            )

        assert delivered == 1
        rows = _added(mock_db)
        assert [r.user_id for r in rows] == [1, 2]
        assert rows[0].delivered is not True
        assert rows[1].delivered is True
        send.assert_awaited_once()
        assert send.call_args.args[0] == 2002

    @pytest.mark.asyncio
    async def test_missing_deal(self, mock_db):
        mock_db.execute.return_value = FakeScalarResult(None)
        assert await notification.send_notifications(mock_db, AppEvent.DEAL_COMPLETED, {"deal_id": 8}) == 0
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_deal_id(self, mock_db):
        assert await notification.send_notifications(mock_db, AppEvent.DEAL_COMPLETED, {}) == 0
        mock_db.execute.assert_not_awaited()
