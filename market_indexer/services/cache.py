"""
MarketCache — Redis read-through cache for market list/detail responses.

Keys are canonical: cache:{endpoint}|{k1=v1&k2=v2...} with params sorted by name and
None values dropped, so the same query always hits the same key regardless of the
order the caller built its params in.

Invalidation is deliberately coarse: when a market changes, every entry whose params
name that market id is dropped, and so is every list entry (the mutator can't know
which filters/sorts the market appears under).

A Redis outage turns every call into a miss/no-op. Nothing here raises to the caller.
"""

import json
import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from market_indexer.core.config import MARKET_CACHE_TTL_SECONDS

logger = logging.getLogger(__name__)

KEY_PREFIX = "cache"
LIST_MARKER = "list"

# Param names whose value is a market id
_ID_PARAMS = ("id", "market_id", "marketId")


def cache_key(endpoint: str, params: dict[str, Any] | None = None) -> str:
    pairs = sorted((k, v) for k, v in (params or {}).items() if v is not None)
    query = "&".join(f"{k}={v}" for k, v in pairs)
    return f"{KEY_PREFIX}:{endpoint}|{query}"


def _parse_key(key: str) -> tuple[str, dict[str, str]]:
    body = key[len(KEY_PREFIX) + 1:]
    endpoint, _, query = body.partition("|")
    params = dict(pair.split("=", 1) for pair in query.split("&") if "=" in pair)
    return endpoint, params


def _is_list_endpoint(endpoint: str) -> bool:
    return LIST_MARKER in endpoint.split(":")


class MarketCache:
    def __init__(self, redis: aioredis.Redis, ttl: int = MARKET_CACHE_TTL_SECONDS):
        self._redis = redis
        self.ttl = ttl

    async def get(self, endpoint: str, params: dict[str, Any] | None = None) -> Any | None:
        key = cache_key(endpoint, params)
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            logger.warning("[cache] GET %s failed, treating as miss: %s", key, exc)
            return None
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, endpoint: str, params: dict[str, Any] | None, value: Any) -> None:
        key = cache_key(endpoint, params)
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=self.ttl)
        except RedisError as exc:
            logger.warning("[cache] SET %s failed: %s", key, exc)

    async def invalidate(self, market_id: str) -> int:
        """Drop entries referencing market_id plus all list entries. Returns the number deleted."""
        market_id = str(market_id)
        try:
            doomed = []
            async for key in self._redis.scan_iter(match=f"{KEY_PREFIX}:*", count=500):
                endpoint, params = _parse_key(key)
                if _is_list_endpoint(endpoint) or any(params.get(p) == market_id for p in _ID_PARAMS):
                    doomed.append(key)
            if doomed:
                await self._redis.delete(*doomed)
        except RedisError as exc:
            logger.warning("[cache] Invalidation for market %s failed: %s", market_id, exc)
            return 0

        logger.debug("[cache] Invalidated %d entries for market %s", len(doomed), market_id)
        return len(doomed)

    async def clear(self) -> int:
        """Drop every cache entry."""
        try:
            keys = [key async for key in self._redis.scan_iter(match=f"{KEY_PREFIX}:*", count=500)]
            if keys:
                await self._redis.delete(*keys)
        except RedisError as exc:
            logger.warning("[cache] Clear failed: %s", exc)
            return 0
        logger.info("[cache] Cleared %d entries", len(keys))
        return len(keys)
