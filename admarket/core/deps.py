from collections.abc import AsyncGenerator

from fastapi import Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from admarket.runtime import Runtime
from admarket.services.deal_state_machine import UserActor


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session from the runtime's session factory; closed when the request finishes."""
    async with request.app.state.runtime.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_actor(x_user_id: int | None = Header(default=None)) -> UserActor | None:
    """The acting user from X-User-Id. Authentication happens upstream."""
    if x_user_id is None:
        return None
    return UserActor(x_user_id)
