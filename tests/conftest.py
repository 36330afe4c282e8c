"""
Shared fixtures: in-memory stand-ins for Redis and the asyncpg-backed stores.

The fakes implement exactly the calls the components make, with the same
semantics as the SQL they replace (forward-only status, GREATEST timestamps,
signature dedup), so reconciliation logic can be exercised without PostgreSQL.
"""

from __future__ import annotations

import fnmatch
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from market_indexer.models.market import MarketRecord, MarketSnapshot, MarketStatus
from market_indexer.services.cache import MarketCache
from market_indexer.services.chain import ChainGateway
from market_indexer.services.markets import MarketNotFoundError
from market_indexer.services.prices import MERGE_ARCHIVED_SCRIPT, PricePoint, PriceStore
from market_indexer.workers.reconciler import Reconciler

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

_STATUS_ORDER = [MarketStatus.INACTIVE, MarketStatus.ACTIVE, MarketStatus.SETTLED]


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    stamps = [t for t in (a, b) if t is not None]
    return max(stamps) if stamps else None


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class FakeRedis:
    """Dict-backed subset of redis.asyncio.Redis (decode_responses=True)."""

    def __init__(self):
        self.strings: dict[str, str] = {}
        self.lists: dict[str, list[str]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.ttls: dict[str, int] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._check()
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self.strings.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.strings[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            for store in (self.strings, self.lists, self.hashes):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    async def scan_iter(self, match: str = "*", count: int | None = None):
        self._check()
        keys = list(self.strings) + list(self.lists) + list(self.hashes)
        for key in keys:
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def lpush(self, key: str, *values: str) -> int:
        self._check()
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    async def rpush(self, key: str, *values: str) -> int:
        self._check()
        lst = self.lists.setdefault(key, [])
        lst.extend(values)
        return len(lst)

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        self._check()
        if key in self.lists:
            self.lists[key] = self.lists[key][start:end + 1]
        return True

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        lst = self.lists.get(key, [])
        return lst[start:] if end == -1 else lst[start:end + 1]

    async def llen(self, key: str) -> int:
        self._check()
        return len(self.lists.get(key, []))

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> Any:
        """Runs MERGE_ARCHIVED_SCRIPT, the only script the services load."""
        self._check()
        assert script == MERGE_ARCHIVED_SCRIPT
        key = keys_and_args[0]
        max_entries, *archived = keys_and_args[numkeys:]
        lst = self.lists.setdefault(key, [])
        for entry in archived:
            if entry not in lst:
                lst.append(entry)
        del lst[int(max_entries):]
        return list(lst)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        self._check()
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, "0")) + amount)
        return int(h[field])

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        return dict(self.hashes.get(key, {}))

    async def zcard(self, key: str) -> int:
        self._check()
        return 0


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class FakeMarketStore:
    """In-memory MarketStore with the same conflict/ordering rules as the SQL."""

    def __init__(self):
        self.rows: dict[str, MarketRecord] = {}
        self.processed: set[str] = set()
        self.clock = T0

    async def get(self, market_id: str) -> MarketRecord | None:
        record = self.rows.get(market_id)
        return record.model_copy(deep=True) if record else None

    async def list_markets(self, sort_by="createdAt", order="desc", limit=50, offset=0):
        records = sorted(self.rows.values(), key=lambda r: r.created_at, reverse=order == "desc")
        return records[offset:offset + limit], len(records)

    async def find_reveal_candidates(self, threshold: datetime) -> list[MarketRecord]:
        return [
            r.model_copy(deep=True) for r in self.rows.values()
            if r.status is MarketStatus.ACTIVE
            and (
                r.last_reveal_probs_event_timestamp is None
                or (r.last_trade_timestamp is not None and r.last_trade_timestamp >= threshold)
            )
        ]

    async def insert_snapshot(self, snapshot: MarketSnapshot) -> bool:
        if snapshot.record_id in self.rows:
            return False
        self.rows[snapshot.record_id] = MarketRecord(
            id=snapshot.record_id,
            authority=snapshot.authority,
            question=snapshot.question,
            options=snapshot.options,
            probs=snapshot.padded_probs(),
            votes=snapshot.padded_votes(),
            liquidity_parameter=snapshot.liquidity_parameter,
            mint=snapshot.mint,
            tvl=snapshot.tvl,
            status=snapshot.status,
            winning_option=snapshot.winning_option,
            market_updated_at=snapshot.updated_at,
            created_at=self.clock,
            updated_at=self.clock,
        )
        return True

    async def refresh_from_snapshot(self, snapshot: MarketSnapshot, at: datetime) -> MarketRecord:
        record = self.rows.get(snapshot.record_id)
        if record is None:
            raise MarketNotFoundError(snapshot.record_id)
        status = max(record.status, snapshot.status, key=_STATUS_ORDER.index)
        record.status = status
        if status is MarketStatus.SETTLED:
            if record.winning_option is None:
                record.winning_option = snapshot.winning_outcome
        else:
            record.winning_option = None
        record.market_updated_at = max(record.market_updated_at, snapshot.updated_at)
        record.last_init_market_stats_event_timestamp = _later(record.last_init_market_stats_event_timestamp, at)
        return record.model_copy(deep=True)

    async def touch_init(self, market_id: str, at: datetime) -> None:
        record = self.rows.get(market_id)
        if record is not None:
            record.last_init_market_stats_event_timestamp = _later(record.last_init_market_stats_event_timestamp, at)

    async def apply_reveal(self, market_id: str, probs, votes, at: datetime) -> bool:
        record = self.rows.get(market_id)
        if record is None or record.status is MarketStatus.SETTLED:
            return False
        last = record.last_reveal_probs_event_timestamp
        if last is not None and last > at:
            return False
        record.probs = list(probs)
        record.votes = list(votes)
        record.last_reveal_probs_event_timestamp = at
        return True

    async def apply_trade(self, side, market_id, tvl, at, signature=None, event_kind=None) -> bool:
        if signature and signature in self.processed:
            return False
        record = self.rows.get(market_id)
        if record is None:
            raise MarketNotFoundError(market_id)
        if signature:
            self.processed.add(signature)

        newest = record.last_trade_timestamp
        if newest is None or at >= newest:
            record.tvl = tvl
        if side == "buy":
            record.num_buy_events += 1
            record.last_buy_shares_event_timestamp = _later(record.last_buy_shares_event_timestamp, at)
        else:
            record.num_sell_events += 1
            record.last_sell_shares_event_timestamp = _later(record.last_sell_shares_event_timestamp, at)
        return True

    async def apply_settlement(self, market_id, winning_option, probs, votes, at) -> bool:
        record = self.rows.get(market_id)
        if record is None:
            return False
        record.status = MarketStatus.SETTLED
        record.winning_option = winning_option
        record.probs = list(probs)
        record.votes = list(votes)
        record.last_market_settled_event_timestamp = _later(record.last_market_settled_event_timestamp, at)
        return True


class FakePriceArchive:
    def __init__(self, max_entries: int = 100):
        self.max_entries = max_entries
        self.samples: dict[str, list[PricePoint]] = {}

    async def insert(self, market_id: str, point: PricePoint) -> bool:
        points = self.samples.setdefault(market_id, [])
        if any(p.option == point.option and p.timestamp == point.timestamp for p in points):
            return False
        points.insert(0, point)
        del points[self.max_entries:]
        return True

    async def recent(self, market_id: str) -> list[PricePoint]:
        return list(self.samples.get(market_id, []))

    async def delete(self, market_id: str) -> None:
        self.samples.pop(market_id, None)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

def make_snapshot(market_id: int = 7, **overrides: Any) -> MarketSnapshot:
    data = {
        "marketId": market_id,
        "authority": "Auth1111111111111111111111111111111111111111",
        "question": "Will it rain tomorrow?",
        "options": ["Yes", "No"],
        "probs": [0.5, 0.5],
        "votes": [0, 0],
        "liquidityParameter": "1000000",
        "mint": "Mint111111111111111111111111111111111111111",
        "tvl": 0,
        "status": {"active": {}},
        "updatedAt": 1735732800,
    }
    data.update(overrides)
    return MarketSnapshot.model_validate(data)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store():
    return FakeMarketStore()


@pytest.fixture
def archive():
    return FakePriceArchive()


@pytest.fixture
def cache(fake_redis):
    return MarketCache(fake_redis)


@pytest.fixture
def prices(fake_redis, archive, store):
    return PriceStore(fake_redis, archive, store)


@pytest.fixture
def chain():
    """ChainGateway double whose fetch_market serves make_snapshot() for any id."""
    gateway = MagicMock(spec=ChainGateway)
    gateway.fetch_market.side_effect = lambda market_id: make_snapshot(market_id)
    return gateway


@pytest.fixture
def reconciler(store, chain, cache, prices):
    return Reconciler(store, chain, cache, prices)


@pytest.fixture
def at():
    """Event capture times: at(0) == T0, at(5) == T0 + 5s."""
    return lambda seconds=0: T0 + timedelta(seconds=seconds)
