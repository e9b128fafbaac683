"""Redis-based dedupe markers for enqueued jobs."""

import logging

import redis.asyncio as aioredis

from admarket.core.config import settings

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def claim_key(key: str, ttl: int) -> bool:
    """Return True if this is the first claim of `key` (proceed).

    Return False if the key was already claimed (skip). Redis errors
    propagate: a scheduler that cannot reach its broker cannot enqueue either.
    """
    r = await get_redis()
    was_set = await r.set(f"job:{key}", "1", nx=True, ex=ttl)
    return bool(was_set)


async def release_key(key: str) -> None:
    """Drop a claim so the same key can be enqueued again."""
    try:
        r = await get_redis()
        await r.delete(f"job:{key}")
    except Exception:
        logger.exception("Failed to release dedupe key=%s", key)
