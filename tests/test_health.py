from unittest.mock import patch

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_returns_200(client: AsyncClient) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_queue_health(client: AsyncClient) -> None:
    report = {"broker": "ok", "workers": {"celery@posting": {"active": 1, "reserved": 0, "scheduled": 2}}}
    with patch("admarket.api.health.queue_health", return_value=report):
        response = await client.get("/api/health/queue")
    assert response.status_code == 200
    assert response.json() == report
