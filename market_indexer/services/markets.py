"""
MarketStore — the durable markets table, accessed through the raw asyncpg pool.

Every mutation is a single atomic statement (or one transaction), so concurrent
queue workers touching the same market id are serialized by PostgreSQL row locks
rather than by any in-process lock:

    - creation is INSERT ... ON CONFLICT DO NOTHING (a market is created at most once)
    - counters are SET n = n + 1
    - status moves with GREATEST(status, new) over the ordered market_status enum
    - event timestamps move with GREATEST(old, new), so a late redelivery never
      rewinds them, and overwrites guarded by those timestamps ignore stale events
"""

import logging
from datetime import datetime
from typing import Literal

import asyncpg

from market_indexer.models.market import MarketRecord, MarketSnapshot

logger = logging.getLogger(__name__)

# Public sort keys (API names) → column names
SORT_FIELDS: dict[str, str] = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "marketUpdatedAt": "market_updated_at",
    "tvl": "tvl",
    "numBuyEvents": "num_buy_events",
    "numSellEvents": "num_sell_events",
    "question": "question",
    "status": "status",
}

_TRADE_COLUMNS: dict[str, tuple[str, str]] = {
    "buy": ("num_buy_events", "last_buy_shares_event_timestamp"),
    "sell": ("num_sell_events", "last_sell_shares_event_timestamp"),
}


class MarketNotFoundError(LookupError):
    """No local record exists for the market id."""


def _to_record(row: asyncpg.Record) -> MarketRecord:
    return MarketRecord(**dict(row))


class MarketStore:
    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    async def get(self, market_id: str) -> MarketRecord | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM markets WHERE id = $1", market_id)
        return _to_record(row) if row else None

    async def list_markets(
        self,
        sort_by: str = "createdAt",
        order: Literal["asc", "desc"] = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[MarketRecord], int]:
        """
        Return one page of markets plus the total count. Only SORT_FIELDS
        columns are interpolated into the query; anything else is a ValueError.
        """
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"Unsupported sort field: {sort_by!r}")
        column = SORT_FIELDS[sort_by]
        direction = "ASC" if order == "asc" else "DESC"
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM markets ORDER BY {column} {direction}, id ASC LIMIT $1 OFFSET $2",
                limit,
                offset,
            )
            total = await conn.fetchval("SELECT COUNT(*) FROM markets")
        return [_to_record(r) for r in rows], total

    async def find_reveal_candidates(self, threshold: datetime) -> list[MarketRecord]:
        """
        Active markets that were never revealed, or that traded at/after threshold.
        Coarse SQL filter; RevealScheduler applies the exact eligibility rule.
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM markets
                WHERE status = 'active'
                  AND (
                        last_reveal_probs_event_timestamp IS NULL
                     OR GREATEST(last_buy_shares_event_timestamp, last_sell_shares_event_timestamp) >= $1
                  )
                """,
                threshold,
            )
        return [_to_record(r) for r in rows]

    # -----------------------------------------------------------------------
    # Creation
    # -----------------------------------------------------------------------

    async def insert_snapshot(self, snapshot: MarketSnapshot) -> bool:
        """
        Create the local record from a chain snapshot if it doesn't exist yet.
        Returns True if this call created it.
        """
        async with self._pool.acquire() as conn:
            created = await conn.fetchval(
                """
                INSERT INTO markets (id, authority, question, options, probs, votes,
                                     liquidity_parameter, mint, tvl, status, winning_option,
                                     num_buy_events, num_sell_events, market_updated_at,
                                     created_at, updated_at)
                VALUES ($1, $2, $3, $4::text[], $5::float8[], $6::int8[],
                        $7, $8, $9, $10::market_status, $11,
                        0, 0, $12,
                        NOW(), NOW())
                ON CONFLICT (id) DO NOTHING
                RETURNING id
                """,
                snapshot.record_id,
                snapshot.authority,
                snapshot.question,
                snapshot.options,
                snapshot.padded_probs(),
                snapshot.padded_votes(),
                snapshot.liquidity_parameter,
                snapshot.mint,
                snapshot.tvl,
                snapshot.status.value,
                snapshot.winning_option,
                snapshot.updated_at,
            )
        return created is not None

    async def refresh_from_snapshot(self, snapshot: MarketSnapshot, at: datetime) -> MarketRecord:
        """
        Pull forward-only fields from a fresh snapshot onto an existing record:
        status never moves backward and the chain clock never rewinds.
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE markets SET
                    status = GREATEST(status, $2::market_status),
                    winning_option = CASE
                        WHEN GREATEST(status, $2::market_status) = 'settled'
                        THEN COALESCE(winning_option, $3)
                        ELSE NULL
                    END,
                    market_updated_at = GREATEST(market_updated_at, $4),
                    last_init_market_stats_event_timestamp = GREATEST(last_init_market_stats_event_timestamp, $5),
                    updated_at = NOW()
                WHERE id = $1
                RETURNING *
                """,
                snapshot.record_id,
                snapshot.status.value,
                snapshot.winning_option,
                snapshot.updated_at,
                at,
            )
        if row is None:
            raise MarketNotFoundError(snapshot.record_id)
        return _to_record(row)

    async def touch_init(self, market_id: str, at: datetime) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE markets SET
                    last_init_market_stats_event_timestamp = GREATEST(last_init_market_stats_event_timestamp, $2),
                    updated_at = NOW()
                WHERE id = $1
                """,
                market_id,
                at,
            )

    # -----------------------------------------------------------------------
    # Event deltas
    # -----------------------------------------------------------------------

    async def apply_reveal(self, market_id: str, probs: list[float], votes: list[int], at: datetime) -> bool:
        """
        Overwrite probs/votes. Skipped (returns False) for settled markets and for
        reveals older than the one already applied.
        """
        async with self._pool.acquire() as conn:
            updated = await conn.fetchval(
                """
                UPDATE markets SET
                    probs = $2::float8[],
                    votes = $3::int8[],
                    last_reveal_probs_event_timestamp = $4,
                    updated_at = NOW()
                WHERE id = $1
                  AND status <> 'settled'
                  AND (last_reveal_probs_event_timestamp IS NULL OR last_reveal_probs_event_timestamp <= $4)
                RETURNING id
                """,
                market_id,
                probs,
                votes,
                at,
            )
        return updated is not None

    async def apply_trade(
        self,
        side: Literal["buy", "sell"],
        market_id: str,
        tvl: int,
        at: datetime,
        signature: str | None = None,
        event_kind: str | None = None,
    ) -> bool:
        """
        Increment the side's counter and overwrite tvl in one transaction.

        When a transaction signature is given it is recorded in processed_events
        first; a signature seen before makes this a no-op and returns False.
        tvl only moves if this event is at least as new as the newest trade applied.
        """
        counter, stamp = _TRADE_COLUMNS[side]
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                if signature:
                    fresh = await conn.fetchval(
                        """
                        INSERT INTO processed_events (signature, event_kind, market_id)
                        VALUES ($1, $2, $3)
                        ON CONFLICT DO NOTHING
                        RETURNING signature
                        """,
                        signature,
                        event_kind or side,
                        market_id,
                    )
                    if fresh is None:
                        return False

                updated = await conn.fetchval(
                    f"""
                    UPDATE markets SET
                        {counter} = {counter} + 1,
                        tvl = CASE
                            WHEN $3 >= COALESCE(
                                GREATEST(last_buy_shares_event_timestamp, last_sell_shares_event_timestamp), $3
                            )
                            THEN $2
                            ELSE tvl
                        END,
                        {stamp} = GREATEST({stamp}, $3),
                        updated_at = NOW()
                    WHERE id = $1
                    RETURNING id
                    """,
                    market_id,
                    tvl,
                    at,
                )
                if updated is None:
                    # Rolls back the processed_events insert so a retry can apply it
                    raise MarketNotFoundError(market_id)
        return True

    async def apply_settlement(
        self,
        market_id: str,
        winning_option: int,
        probs: list[float],
        votes: list[int],
        at: datetime,
    ) -> bool:
        async with self._pool.acquire() as conn:
            updated = await conn.fetchval(
                """
                UPDATE markets SET
                    status = 'settled',
                    winning_option = $2,
                    probs = $3::float8[],
                    votes = $4::int8[],
                    last_market_settled_event_timestamp = GREATEST(last_market_settled_event_timestamp, $5),
                    updated_at = NOW()
                WHERE id = $1
                RETURNING id
                """,
                market_id,
                winning_option,
                probs,
                votes,
                at,
            )
        return updated is not None
