import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from brandmart.config import settings

logger = logging.getLogger(__name__)

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis | None:
    """None when no redis_url is configured; delivery dedup is then skipped."""
    global _redis
    if _redis is None and settings.redis_url:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def check_idempotency(key: str, ttl_seconds: int = 86400) -> bool:
    """
    Returns True if this key was already seen (duplicate) -> caller should return 200.
    Returns False if key is new, or dedup is disabled or unreachable -> caller should proceed.
    Uses SETNX: set if not exists. If we set it, we're first; if not, duplicate.
    """
    r = await get_redis()
    if r is None:
        return False
    try:
        was_set = await r.set(key, "1", nx=True, ex=ttl_seconds)
    except (RedisError, OSError) as e:
        # Order transitions are conditional, so processing without dedup is safe.
        logger.warning("Dedup check for %s skipped, redis unavailable: %s", key, e)
        return False
    return not was_set  # True = duplicate (already existed), False = new


async def forget(key: str) -> None:
    """Drop a dedup key so a redelivery is processed again."""
    r = await get_redis()
    if r is None:
        return
    try:
        await r.delete(key)
    except (RedisError, OSError) as e:
        logger.warning("Could not drop dedup key %s, redis unavailable: %s", key, e)
