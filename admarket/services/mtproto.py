"""MTProto client (Pyrogram) used to verify published channel posts.

The Bot API cannot read channel history, so the monitor reads the post
through a user session. When the session is not configured every call
raises PrerequisiteError and the monitor skips the cycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from admarket.core.config import settings
from admarket.core.errors import InfrastructureError, PrerequisiteError

logger = logging.getLogger(__name__)

MTPROTO_NOT_CONFIGURED = "MTProto is not configured"


@dataclass(frozen=True)
class PostSnapshot:
    exists: bool
    edited_at: datetime | None = None


# ---------------------------------------------------------------------------
# Singleton client
# ---------------------------------------------------------------------------

_client = None
_client_lock = asyncio.Lock()


async def get_client():
    """Return a connected Pyrogram Client; PrerequisiteError if not configured."""
    global _client

    if not settings.mtproto_configured:
        raise PrerequisiteError(MTPROTO_NOT_CONFIGURED)

    async with _client_lock:
        if _client is not None:
            if _client.is_connected:
                return _client
            # Connection lost, reconnect
            _client = None

        from pyrogram import Client

        client = Client(
            name="admarket_monitor",
            api_id=settings.mtproto_api_id,
            api_hash=settings.mtproto_api_hash,
            session_string=settings.mtproto_session_string,
            in_memory=True,
            no_updates=True,
        )
        await client.start()
        logger.info("MTProto client connected")
        _client = client
        return _client


async def stop_client() -> None:
    """Gracefully disconnect the MTProto client."""
    global _client
    if _client is not None:
        try:
            await _client.stop()
            logger.info("MTProto client disconnected")
        except Exception:
            logger.exception("Error stopping MTProto client")
        finally:
            _client = None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def fetch_post_snapshot(chat_id: int | str, message_id: int) -> PostSnapshot:
    """Read a channel post and report whether it still exists and when it was edited.

    FloodWait is honoured once; access errors and other RPC failures raise
    InfrastructureError so the task runner retries.
    """
    client = await get_client()

    from pyrogram.errors import ChannelPrivate, ChatAdminRequired, FloodWait, RPCError

    async def _read():
        msg = await client.get_messages(chat_id, message_id)
        if msg is None or msg.empty:
            return PostSnapshot(exists=False)
        return PostSnapshot(exists=True, edited_at=_as_utc(msg.edit_date))

    try:
        try:
            return await _read()
        except FloodWait as e:
            logger.warning("MTProto FloodWait: sleeping %d seconds", e.value)
            await asyncio.sleep(e.value)
            return await _read()
    except (ChannelPrivate, ChatAdminRequired) as e:
        raise InfrastructureError(f"MTProto access denied for chat {chat_id}: {e}")
    except RPCError as e:
        raise InfrastructureError(f"MTProto read failed for {chat_id}/{message_id}: {e}")
