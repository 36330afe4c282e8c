"""
Reveal Scheduler

Every tick (60s, driven by APScheduler) finds active markets whose probabilities
need a fresh reveal and asks the chain to run the reveal_probs computation:

    eligible = status is active AND (
                   never revealed
                OR newest buy/sell is within the staleness window AND not older than the last reveal
               )

Each submission gets a fresh random 64-bit computation offset. Submission returns as
soon as the queueing transaction confirms; finalization is then awaited in a separate
task (bounded by a timeout) so one slow computation never holds up the tick or other
markets. The resulting revealProbsEvent comes back through the EventSource.

Failures are logged and swallowed. The market simply stays eligible for the next tick.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from market_indexer.core.config import (
    REVEAL_FINALIZATION_TIMEOUT_SECONDS,
    REVEAL_MAX_IN_FLIGHT,
    REVEAL_STALENESS_SECONDS,
)
from market_indexer.models.market import MarketRecord, MarketStatus
from market_indexer.services.chain import (
    LAMPORTS_PER_SOL,
    ChainGateway,
    InsufficientBalanceError,
    new_computation_offset,
)
from market_indexer.services.markets import MarketStore

logger = logging.getLogger(__name__)


def is_eligible(
    market: MarketRecord,
    now: datetime,
    staleness: timedelta = timedelta(seconds=REVEAL_STALENESS_SECONDS),
) -> bool:
    if market.status is not MarketStatus.ACTIVE:
        return False

    last_reveal = market.last_reveal_probs_event_timestamp
    if last_reveal is None:
        return True

    last_trade = market.last_trade_timestamp
    if last_trade is None or last_trade < now - staleness:
        return False
    return last_trade >= last_reveal


class RevealScheduler:
    def __init__(
        self,
        store: MarketStore,
        chain: ChainGateway,
        finalization_timeout: float = REVEAL_FINALIZATION_TIMEOUT_SECONDS,
        max_in_flight: int = REVEAL_MAX_IN_FLIGHT,
        staleness: timedelta = timedelta(seconds=REVEAL_STALENESS_SECONDS),
    ):
        self.store = store
        self.chain = chain
        self.finalization_timeout = finalization_timeout
        self.staleness = staleness
        self._slots = asyncio.Semaphore(max_in_flight)
        self._in_flight: dict[str, asyncio.Task] = {}

        self.last_tick_at: datetime | None = None
        self.last_tick_eligible = 0
        self.ticks = 0
        self.submitted = 0
        self.finalized = 0
        self.failed = 0

    async def find_eligible(self, now: datetime | None = None) -> list[MarketRecord]:
        now = now or datetime.now(timezone.utc)
        candidates = await self.store.find_reveal_candidates(now - self.staleness)
        return [m for m in candidates if is_eligible(m, now, self.staleness)]

    async def tick(self) -> list[str]:
        """
        One sweep. Returns the market ids for which a reveal task was started.
        Does not wait for any reveal to finish.
        """
        now = datetime.now(timezone.utc)
        self.ticks += 1
        self.last_tick_at = now

        try:
            markets = await self.find_eligible(now)
        except Exception as exc:
            logger.error("[reveal] Could not load eligible markets: %s", exc, exc_info=True)
            return []

        self.last_tick_eligible = len(markets)
        started = []
        for market in markets:
            if market.id in self._in_flight:
                logger.info("[reveal] Market %s already has a reveal in flight, skipping", market.id)
                continue
            task = asyncio.create_task(self._reveal(market.id), name=f"reveal-{market.id}")
            self._in_flight[market.id] = task
            task.add_done_callback(lambda _t, mid=market.id: self._in_flight.pop(mid, None))
            started.append(market.id)

        logger.info("[reveal] Tick: %d eligible, %d started, %d in flight", len(markets), len(started), len(self._in_flight))
        return started

    async def _reveal(self, market_id: str) -> str | None:
        """Submit and await one reveal. Returns the finalize signature, or None on failure."""
        async with self._slots:
            try:
                logger.info("[reveal] Revealing probs for market %s", market_id)
                submission = await asyncio.to_thread(
                    self.chain.submit_reveal, int(market_id), new_computation_offset(),
                )
                self.submitted += 1
                logger.info(
                    "[reveal] Market %s queued (computation %d, sig %s)",
                    market_id, submission.computation_offset, submission.queue_signature,
                )

                finalize_sig = await asyncio.to_thread(
                    self.chain.await_finalization, submission.computation_offset, self.finalization_timeout,
                )
                self.finalized += 1
                logger.info("[reveal] Market %s finalized: %s", market_id, finalize_sig)
                return finalize_sig

            except InsufficientBalanceError as exc:
                self.failed += 1
                logger.error("[reveal] Failed to reveal probs for market %s: %s", market_id, exc)
                await self._log_balance()
            except Exception as exc:
                self.failed += 1
                logger.error("[reveal] Failed to reveal probs for market %s: %s", market_id, exc, exc_info=True)
        return None

    async def _log_balance(self) -> None:
        try:
            balance = await asyncio.to_thread(self.chain.get_balance)
            logger.warning("[reveal] Wallet balance: %.4f SOL", balance / LAMPORTS_PER_SOL)
        except Exception as exc:
            logger.warning("[reveal] Could not fetch wallet balance: %s", exc)

    async def drain(self) -> None:
        """Cancel in-flight reveals. Called during shutdown."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def get_status(self) -> dict[str, Any]:
        return {
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_tick_eligible": self.last_tick_eligible,
            "in_flight": sorted(self._in_flight),
            "ticks": self.ticks,
            "submitted": self.submitted,
            "finalized": self.finalized,
            "failed": self.failed,
        }
