from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

import admarket.models  # noqa: F401  (configure all mappers)
from admarket.main import app
from admarket.runtime import Runtime
from admarket.services.events import EventBus


@pytest.fixture
def mock_db() -> MagicMock:
    """A session double: execute/commit/rollback are awaitable, add is sync."""
    db = MagicMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.close = AsyncMock()
    return db


@pytest.fixture
def runtime(mock_db: MagicMock) -> Runtime:
    """A Runtime with a real bus and mocked collaborators; listeners not registered."""
    session_factory = MagicMock()
    session_factory.return_value.__aenter__ = AsyncMock(return_value=mock_db)
    session_factory.return_value.__aexit__ = AsyncMock(return_value=False)

    scheduler = MagicMock()
    scheduler.enqueue = AsyncMock(return_value="task-id")
    return Runtime(
        bus=EventBus(),
        scheduler=scheduler,
        escrow=MagicMock(),
        session_factory=session_factory,
    )


@pytest.fixture
async def client(runtime: Runtime) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client wired to the FastAPI app (no real server)."""
    app.state.runtime = runtime
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    app.state.runtime = None
