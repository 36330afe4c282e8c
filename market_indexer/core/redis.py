"""
Redis connection shared by the price fast list, the market cache and queue bookkeeping.

Usage:
    from market_indexer.core.redis import get_redis, close_redis

Key layout:
    market:{id}:prices          LIST of JSON price samples, newest first (capped)
    cache:{endpoint}|{params}   STRING JSON response with TTL
    {queue}:succeeded|failed    LIST of recent job outcomes (capped)
    {queue}:stats               HASH of outcome counters
"""

from urllib.parse import urlparse

import redis.asyncio as aioredis
from arq.connections import RedisSettings

from market_indexer.core.config import REDIS_URL

_redis: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    """Return the shared Redis connection, creating it on first call."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(
            REDIS_URL,
            decode_responses=True,
        )
    return _redis


async def close_redis() -> None:
    """Close the Redis connection. Called during process shutdown."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def check_redis_health() -> bool:
    try:
        redis = await get_redis()
        return bool(await redis.ping())
    except Exception:
        return False


def parse_redis_settings(url: str = REDIS_URL) -> RedisSettings:
    """Convert REDIS_URL string to arq RedisSettings."""
    # REDIS_URL format: redis://[:password@]host:port[/db]
    parsed = urlparse(url)
    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        password=parsed.password,
        database=int(parsed.path.lstrip("/") or 0),
    )
