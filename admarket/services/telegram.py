"""Telegram Bot API client used for publishing, notifications and chat topics."""

import logging
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from admarket.core.config import settings

logger = logging.getLogger(__name__)

_API_ROOT = "https://api.telegram.org"

# Cache bot info to avoid repeated API calls
_bot_info: dict | None = None


class TelegramAPIError(Exception):
    """Telegram answered with ok=false."""

    def __init__(self, method: str, description: str, error_code: int | None = None):
        self.method = method
        self.description = description
        self.error_code = error_code
        super().__init__(f"{method}: {description}")


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
async def _call(method: str, **params: Any) -> Any:
    """Call a Bot API method and return its `result`, retrying transport errors."""
    if not settings.bot_token:
        raise TelegramAPIError(method, "BOT_TOKEN is not configured")

    async with httpx.AsyncClient(timeout=10) as client:
        resp = await client.post(f"{_API_ROOT}/bot{settings.bot_token}/{method}", json=params)
        data = resp.json()
    if not data.get("ok"):
        desc = data.get("description", "Unknown error")
        logger.error("Telegram API error: %s → %s", method, desc)
        raise TelegramAPIError(method, desc, data.get("error_code"))
    return data["result"]


async def get_me() -> dict:
    """Get bot's own info (id, username, etc.). Cached after first call."""
    global _bot_info
    if _bot_info is None:
        _bot_info = await _call("getMe")
    return _bot_info


async def get_chat_member_count(chat_id: int | str) -> int:
    """Return subscriber count for a channel."""
    return await _call("getChatMemberCount", chat_id=chat_id)


async def get_chat_member(chat_id: int | str, user_id: int) -> dict:
    return await _call("getChatMember", chat_id=chat_id, user_id=user_id)


async def bot_is_admin(chat_id: int | str) -> bool:
    """True when the bot is an administrator (or creator) of `chat_id`."""
    me = await get_me()
    member = await get_chat_member(chat_id, me["id"])
    return member.get("status") in ("administrator", "creator")


async def send_message(
    chat_id: int | str,
    text: str,
    entities: list | None = None,
    parse_mode: str | None = None,
    reply_markup: dict | None = None,
    message_thread_id: int | None = None,
) -> dict:
    params: dict[str, Any] = {"chat_id": chat_id, "text": text}
    if entities:
        params["entities"] = entities
    if parse_mode:
        params["parse_mode"] = parse_mode
    if reply_markup:
        params["reply_markup"] = reply_markup
    if message_thread_id:
        params["message_thread_id"] = message_thread_id
    return await _call("sendMessage", **params)


_MEDIA_METHODS = {
    "photo": "sendPhoto",
    "video": "sendVideo",
    "document": "sendDocument",
    "animation": "sendAnimation",
}


async def send_media(
    chat_id: int | str,
    media_type: str,
    file_id: str,
    caption: str | None = None,
    caption_entities: list | None = None,
) -> dict:
    """Send a single photo / video / document / animation by file_id."""
    method = _MEDIA_METHODS.get(media_type)
    if method is None:
        raise ValueError(f"Unsupported media type: {media_type}")
    params: dict[str, Any] = {"chat_id": chat_id, media_type: file_id}
    if caption:
        params["caption"] = caption
    if caption_entities:
        params["caption_entities"] = caption_entities
    return await _call(method, **params)


async def send_media_group(
    chat_id: int | str,
    items: list[dict],
    caption: str | None = None,
    caption_entities: list | None = None,
) -> list[dict]:
    """Send an album; the caption goes on the first item."""
    media = []
    for i, item in enumerate(items):
        entry: dict[str, Any] = {"type": item["type"], "media": item["file_id"]}
        if i == 0 and caption:
            entry["caption"] = caption
            if caption_entities:
                entry["caption_entities"] = caption_entities
        media.append(entry)
    return await _call("sendMediaGroup", chat_id=chat_id, media=media)


async def delete_forum_topic(chat_id: int | str, message_thread_id: int) -> bool:
    return await _call("deleteForumTopic", chat_id=chat_id, message_thread_id=message_thread_id)


async def edit_forum_topic(chat_id: int | str, message_thread_id: int, name: str) -> bool:
    return await _call(
        "editForumTopic", chat_id=chat_id, message_thread_id=message_thread_id, name=name[:128]
    )
