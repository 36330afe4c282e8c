"""
PriceStore — revealed probability history per market.

Two tiers:
    Redis LIST market:{id}:prices    newest-first JSON samples, capped at MAX_ENTRIES (fast path)
    PostgreSQL price_samples         same samples, trimmed to MAX_ENTRIES per market (crash recovery)

Appends write PostgreSQL first; the unique (market_id, option_index, timestamp) key
makes a redelivered sample a no-op there, and only a newly stored sample is pushed
to Redis. Reads serve Redis when the list is non-empty, otherwise fall back to
PostgreSQL and merge the archived samples back into Redis. Redis errors never reach
the caller; they degrade to the durable tier.

Every read is prefixed with a synthetic {createdAt(market), 0.5} sample — the uniform
prior before any reveal. It is never stored.
"""

import json
import logging
from datetime import datetime
from typing import Optional

import asyncpg
import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from market_indexer.core.config import PRICE_HISTORY_MAX_ENTRIES
from market_indexer.services.markets import MarketNotFoundError, MarketStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "market"
INITIAL_PROB = 0.5


class PricePoint(BaseModel):
    timestamp: datetime
    prob: float
    option: Optional[int] = None    # None for the synthetic prior and for untagged legacy samples


def _market_key(market_id: str) -> str:
    return f"{KEY_PREFIX}:{market_id}:prices"


def _market_id_from_key(key: str) -> str:
    return key[len(KEY_PREFIX) + 1:-len(":prices")]


# ---------------------------------------------------------------------------
# Durable tier
# ---------------------------------------------------------------------------

class PriceArchive:
    """price_samples table access through the raw asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool, max_entries: int = PRICE_HISTORY_MAX_ENTRIES):
        self._pool = pool
        self.max_entries = max_entries

    async def insert(self, market_id: str, point: PricePoint) -> bool:
        """
        Store one sample. Returns False if a sample for the same option and
        timestamp already exists (a redelivered event), True otherwise.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                inserted = await conn.fetchval(
                    """
                    INSERT INTO price_samples (market_id, option_index, timestamp, prob)
                    VALUES ($1, $2, $3, $4)
                    ON CONFLICT (market_id, option_index, timestamp) DO NOTHING
                    RETURNING id
                    """,
                    market_id,
                    point.option or 0,
                    point.timestamp,
                    point.prob,
                )
                if inserted is None:
                    return False
                await conn.execute(
                    """
                    DELETE FROM price_samples
                    WHERE market_id = $1
                      AND id NOT IN (
                          SELECT id FROM price_samples
                          WHERE market_id = $1
                          ORDER BY timestamp DESC, id DESC
                          LIMIT $2
                      )
                    """,
                    market_id,
                    self.max_entries,
                )
        return True

    async def recent(self, market_id: str) -> list[PricePoint]:
        """Newest-first, at most max_entries."""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT timestamp, prob, option_index FROM price_samples
                WHERE market_id = $1
                ORDER BY timestamp DESC, id DESC
                LIMIT $2
                """,
                market_id,
                self.max_entries,
            )
        return [PricePoint(timestamp=r["timestamp"], prob=r["prob"], option=r["option_index"]) for r in rows]

    async def delete(self, market_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute("DELETE FROM price_samples WHERE market_id = $1", market_id)


# ---------------------------------------------------------------------------
# Two-tier store
# ---------------------------------------------------------------------------

# Merges archived samples (ARGV[2..], newest-first) behind whatever the list
# already holds. Samples pushed by a concurrent append while the archive was
# being read stay at the head; duplicates of them in the archive are skipped.
MERGE_ARCHIVED_SCRIPT = """
local existing = redis.call('LRANGE', KEYS[1], 0, -1)
local seen = {}
for _, entry in ipairs(existing) do
    seen[entry] = true
end
for i = 2, #ARGV do
    if not seen[ARGV[i]] then
        redis.call('RPUSH', KEYS[1], ARGV[i])
        seen[ARGV[i]] = true
    end
end
redis.call('LTRIM', KEYS[1], 0, tonumber(ARGV[1]) - 1)
return redis.call('LRANGE', KEYS[1], 0, -1)
"""


class PriceStore:
    def __init__(
        self,
        redis: aioredis.Redis,
        archive: PriceArchive,
        markets: MarketStore,
        max_entries: int = PRICE_HISTORY_MAX_ENTRIES,
    ):
        self._redis = redis
        self._archive = archive
        self._markets = markets
        self.max_entries = max_entries

    async def append(self, market_id: str, timestamp: datetime, prob: float, option: int = 0) -> bool:
        """
        Record one sample in both tiers, durable tier first. Returns False when
        the archive already held this (option, timestamp) sample; the fast list
        is left alone then, so a retried job cannot double its samples.

        A Redis failure is logged; a later read repopulates the fast list.
        """
        point = PricePoint(timestamp=timestamp, prob=prob, option=option)
        if not await self._archive.insert(market_id, point):
            logger.debug("[prices] Sample for market %s option %d at %s already stored", market_id, option, timestamp)
            return False

        key = _market_key(market_id)
        try:
            await self._redis.lpush(key, point.model_dump_json())
            await self._redis.ltrim(key, 0, self.max_entries - 1)
        except RedisError as exc:
            logger.warning("[prices] Fast list append failed for market %s: %s", market_id, exc)
        return True

    async def _fast_read(self, market_id: str) -> list[PricePoint] | None:
        try:
            raw_entries = await self._redis.lrange(_market_key(market_id), 0, self.max_entries - 1)
        except RedisError as exc:
            logger.warning("[prices] Fast list read failed for market %s: %s", market_id, exc)
            return None
        return [PricePoint.model_validate(json.loads(e)) for e in raw_entries]

    async def _repopulate(self, market_id: str, points: list[PricePoint]) -> list[PricePoint]:
        """
        Merge archived samples into the fast list in one server-side step and
        return the resulting list. Falls back to the archived samples alone if
        Redis is unavailable.
        """
        try:
            merged = await self._redis.eval(
                MERGE_ARCHIVED_SCRIPT,
                1,
                _market_key(market_id),
                self.max_entries,
                *[p.model_dump_json() for p in points],
            )
        except RedisError as exc:
            logger.warning("[prices] Fast list repopulate failed for market %s: %s", market_id, exc)
            return points
        return [PricePoint.model_validate(json.loads(e)) for e in merged]

    async def read(self, market_id: str) -> list[PricePoint]:
        """
        Price history for a market: synthetic prior followed by samples newest-first.
        Raises MarketNotFoundError if the market has no local record.
        """
        market = await self._markets.get(market_id)
        if market is None:
            raise MarketNotFoundError(market_id)

        prior = PricePoint(timestamp=market.created_at, prob=INITIAL_PROB)

        points = await self._fast_read(market_id)
        if not points:
            points = await self._archive.recent(market_id)
            if points:
                logger.info("[prices] Cache miss for market %s, repopulating %d samples", market_id, len(points))
                points = await self._repopulate(market_id, points)

        return [prior, *points]

    async def read_option(self, market_id: str, option_index: int) -> list[PricePoint]:
        """Price history for one option, keeping the synthetic prior in front."""
        prior, *points = await self.read(market_id)
        tagged = [p for p in points if p.option is not None]
        if tagged:
            return [prior, *[p for p in tagged if p.option == option_index]]

        market = await self._markets.get(market_id)
        option_count = len(market.options) if market else 1
        return [prior, *interleaved_option_samples(points, option_index, option_count)]

    async def clear(self, market_id: str) -> None:
        try:
            await self._redis.delete(_market_key(market_id))
        except RedisError as exc:
            logger.warning("[prices] Fast list delete failed for market %s: %s", market_id, exc)
        await self._archive.delete(market_id)
        logger.info("[prices] Cleared price data for market %s", market_id)

    async def market_ids(self) -> list[str]:
        """Ids of markets with price data in the fast tier."""
        try:
            return [
                _market_id_from_key(key)
                async for key in self._redis.scan_iter(match=f"{KEY_PREFIX}:*:prices", count=500)
            ]
        except RedisError as exc:
            logger.warning("[prices] Could not list markets with price data: %s", exc)
            return []


def interleaved_option_samples(points: list[PricePoint], option_index: int, option_count: int) -> list[PricePoint]:
    """
    Heuristic split of untagged samples. A reveal appends options 0..n-1 in
    order, and LPUSH leaves each group reversed in the newest-first list, so
    option i sits at position n-1-i of its group. Only exact when every reveal
    appended one sample per option.
    """
    if option_count <= 0:
        return []
    slot = option_count - 1 - option_index
    seen: set[datetime] = set()
    result = []
    for position, point in enumerate(points):
        if position % option_count != slot:
            continue
        if point.timestamp in seen:
            continue
        seen.add(point.timestamp)
        result.append(point)
    return result
