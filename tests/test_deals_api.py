"""Tests for the deal workflow HTTP endpoints."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient

from admarket.core.errors import InfrastructureError
from admarket.models.deal import Deal
from admarket.services.deal import TransitionResult

ADVERTISER_ID = 10
PUBLISHER_ID = 20


class FakeScalarResult:
    """Mock result for queries returning a single object via scalar_one_or_none()."""
    def __init__(self, item):
        self._item = item

    def scalar_one_or_none(self):
        return self._item


def _make_deal(status: str, **kwargs) -> Deal:
    deal = Deal(
        status=status,
        advertiser_id=ADVERTISER_ID,
        publisher_id=PUBLISHER_ID,
        channel_id=5,
        agreed_price="1000",
        currency="TON",
        escrow_status="NONE",
        status_history=[],
        **kwargs,
    )
    deal.id = 1
    return deal


def _update_result(rowcount: int) -> MagicMock:
    result = MagicMock()
    result.rowcount = rowcount
    return result


class TestTransitionEndpoint:
    @pytest.mark.asyncio
    async def test_requires_user(self, client: AsyncClient) -> None:
        response = await client.post("/api/deals/1/transition", json={"target": "NEGOTIATING"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_transition(self, client: AsyncClient, mock_db) -> None:
        mock_db.execute.side_effect = [
            FakeScalarResult(_make_deal("CREATED")),
            _update_result(1),
            FakeScalarResult(_make_deal("NEGOTIATING")),
        ]

        response = await client.post(
            "/api/deals/1/transition",
            json={"target": "NEGOTIATING", "data": {"note": "counter offer"}},
            headers={"X-User-Id": str(ADVERTISER_ID)},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["transitioned"] is True
        assert body["deal"]["status"] == "NEGOTIATING"
        mock_db.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_repeat_is_not_an_error(self, client: AsyncClient, mock_db) -> None:
        mock_db.execute.return_value = FakeScalarResult(_make_deal("NEGOTIATING"))

        response = await client.post(
            "/api/deals/1/transition",
            json={"target": "NEGOTIATING"},
            headers={"X-User-Id": str(ADVERTISER_ID)},
        )

        assert response.status_code == 200
        assert response.json()["transitioned"] is False

    @pytest.mark.asyncio
    async def test_illegal_transition_is_409(self, client: AsyncClient, mock_db) -> None:
        mock_db.execute.return_value = FakeScalarResult(_make_deal("CREATED"))

        response = await client.post(
            "/api/deals/1/transition",
            json={"target": "COMPLETED"},
            headers={"X-User-Id": str(ADVERTISER_ID)},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_wrong_actor_is_403(self, client: AsyncClient, mock_db) -> None:
        mock_db.execute.return_value = FakeScalarResult(_make_deal("CREATIVE_SUBMITTED"))

        response = await client.post(
            "/api/deals/1/transition",
            json={"target": "CREATIVE_APPROVED"},
            headers={"X-User-Id": str(PUBLISHER_ID)},
        )

        assert response.status_code == 403
        assert response.json()["code"] == "forbidden_actor"

    @pytest.mark.asyncio
    async def test_missing_deal_is_404(self, client: AsyncClient, mock_db) -> None:
        mock_db.execute.return_value = FakeScalarResult(None)

        response = await client.post(
            "/api/deals/99/transition",
            json={"target": "CANCELLED"},
            headers={"X-User-Id": str(ADVERTISER_ID)},
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_store_unavailable_is_503(self, client: AsyncClient) -> None:
        with patch(
            "admarket.services.deal.request_transition",
            AsyncMock(side_effect=InfrastructureError("database unreachable")),
        ):
            response = await client.post(
                "/api/deals/1/transition",
                json={"target": "CANCELLED"},
                headers={"X-User-Id": str(ADVERTISER_ID)},
            )

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_uses_runtime_bus(self, client: AsyncClient, runtime, mock_db) -> None:
        transition = AsyncMock(return_value=TransitionResult(_make_deal("CANCELLED"), True))
        with patch("admarket.services.deal.request_transition", transition):
            await client.post(
                "/api/deals/1/transition",
                json={"target": "CANCELLED", "data": {"reason": "changed plans"}},
                headers={"X-User-Id": str(ADVERTISER_ID)},
            )

        args = transition.call_args.args
        assert args[0] is mock_db
        assert args[1] is runtime.bus
        assert args[2:4] == (1, "CANCELLED")
        assert args[4].user_id == ADVERTISER_ID
        assert args[5] == {"reason": "changed plans"}


class TestReadEndpoints:
    @pytest.mark.asyncio
    async def test_available_actions(self, client: AsyncClient, mock_db) -> None:
        mock_db.execute.return_value = FakeScalarResult(_make_deal("CREATIVE_SUBMITTED"))

        response = await client.get(
            "/api/deals/1/actions", headers={"X-User-Id": str(ADVERTISER_ID)}
        )

        assert response.status_code == 200
        actions = response.json()
        assert actions["approve_creative"] is True
        assert actions["submit_creative"] is False

    @pytest.mark.asyncio
    async def test_anonymous_sees_no_actions(self, client: AsyncClient, mock_db) -> None:
        mock_db.execute.return_value = FakeScalarResult(_make_deal("CREATED"))

        response = await client.get("/api/deals/1/actions")

        assert response.status_code == 200
        assert not any(response.json().values())

    @pytest.mark.asyncio
    async def test_deadline(self, client: AsyncClient, mock_db) -> None:
        entered = datetime(2026, 4, 1, 8, 0, tzinfo=timezone.utc)
        deal = _make_deal("AWAITING_PAYMENT")
        deal.updated_at = entered
        mock_db.execute.return_value = FakeScalarResult(deal)

        response = await client.get("/api/deals/1/deadline")

        assert response.status_code == 200
        body = response.json()
        assert body["current_stage_timeout_hours"] == 48
        assert body["current_stage_deadline_at"].startswith("2026-04-03T08:00:00")

    @pytest.mark.asyncio
    async def test_no_deadline_for_funded(self, client: AsyncClient, mock_db) -> None:
        mock_db.execute.return_value = FakeScalarResult(_make_deal("FUNDED"))

        response = await client.get("/api/deals/1/deadline")

        assert response.json() == {
            "current_stage_deadline_at": None,
            "current_stage_timeout_hours": None,
            "stage_started_at": None,
        }
