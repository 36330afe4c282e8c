"""
Reconciler — applies program events to the local market mirror.

One handler per event kind, each following the same shape:
    1. ensure_market_exists(): lazily create the local record from a chain snapshot
    2. apply the event's delta as an atomic upsert in MarketStore
    3. invalidate MarketCache for the market (and every list entry)

Handlers are safe under redelivery and reordering:
    - reveal / settle are absolute overwrites, guarded by event timestamps
    - buy / sell increments skip failed transactions (status 0) and, when the
      event carries a transaction signature, signatures already processed

Any exception propagates to EventQueue, which retries and eventually dead-letters.
"""

import asyncio
import logging
from datetime import datetime

from market_indexer.models.events import (
    BuySharesEvent,
    InitMarketStatsEvent,
    MalformedEventError,
    MarketSettledEvent,
    QueueJob,
    RevealProbsEvent,
    SellSharesEvent,
    decode_event,
)
from market_indexer.models.market import MarketRecord
from market_indexer.services.cache import MarketCache
from market_indexer.services.chain import ChainGateway
from market_indexer.services.markets import MarketNotFoundError, MarketStore
from market_indexer.services.prices import PriceStore
from market_indexer.workers.event_queue import JobOutcome

logger = logging.getLogger(__name__)


def _check_parallel(market: MarketRecord, probs: list[float], votes: list[int]) -> None:
    if not len(probs) == len(votes) == len(market.options):
        raise MalformedEventError(
            f"Market {market.id} has {len(market.options)} options but event carries "
            f"{len(probs)} probs and {len(votes)} votes"
        )


class Reconciler:
    def __init__(
        self,
        store: MarketStore,
        chain: ChainGateway,
        cache: MarketCache,
        prices: PriceStore,
    ):
        self.store = store
        self.chain = chain
        self.cache = cache
        self.prices = prices

    # -----------------------------------------------------------------------
    # Entry point (EventQueue consumer)
    # -----------------------------------------------------------------------

    async def handle(self, job: QueueJob) -> JobOutcome:
        event = decode_event(job)
        at = job.occurred_at

        if isinstance(event, RevealProbsEvent):
            outcome = await self.handle_reveal_probs(event, at)
        elif isinstance(event, BuySharesEvent):
            outcome = await self.handle_trade("buy", event, at, job.signature)
        elif isinstance(event, SellSharesEvent):
            outcome = await self.handle_trade("sell", event, at, job.signature)
        elif isinstance(event, InitMarketStatsEvent):
            outcome = await self.handle_init_market_stats(event, at)
        else:
            outcome = await self.handle_market_settled(event, at)

        logger.info("[reconciler] %s for market %s: %s", job.event_kind, event.record_id, outcome.value)
        return outcome

    # -----------------------------------------------------------------------
    # Lazy materialization
    # -----------------------------------------------------------------------

    async def ensure_market_exists(self, market_id: str) -> tuple[MarketRecord, bool]:
        """
        Return the local record, creating it from the chain snapshot if absent.
        The bool is True when this call created the record.
        """
        market = await self.store.get(market_id)
        if market is not None:
            return market, False

        logger.info("[reconciler] Market %s not found locally, fetching from chain...", market_id)
        snapshot = await asyncio.to_thread(self.chain.fetch_market, int(market_id))
        created = await self.store.insert_snapshot(snapshot)

        market = await self.store.get(market_id)
        if market is None:
            raise MarketNotFoundError(market_id)
        if created:
            logger.info("[reconciler] Created market %s (%s) from chain snapshot", market_id, market.status.value)
            await self.cache.invalidate(market_id)
        return market, created

    # -----------------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------------

    async def handle_reveal_probs(self, event: RevealProbsEvent, at: datetime) -> JobOutcome:
        market, _ = await self.ensure_market_exists(event.record_id)
        _check_parallel(market, event.probs, event.votes)

        applied = await self.store.apply_reveal(market.id, event.probs, event.votes, at)
        if not applied:
            logger.info("[reconciler] Stale or post-settlement reveal for market %s ignored", market.id)
            return JobOutcome.SKIPPED

        for option, prob in enumerate(event.probs):
            await self.prices.append(market.id, at, prob, option)

        await self.cache.invalidate(market.id)
        return JobOutcome.APPLIED

    async def handle_trade(
        self,
        side: str,
        event: BuySharesEvent | SellSharesEvent,
        at: datetime,
        signature: str | None = None,
    ) -> JobOutcome:
        market, _ = await self.ensure_market_exists(event.record_id)

        if not event.succeeded:
            logger.info("[reconciler] %s on market %s has failed status, skipping", side, market.id)
            return JobOutcome.SKIPPED

        applied = await self.store.apply_trade(
            side, market.id, event.tvl, at,
            signature=signature,
            event_kind=event.kind.value,
        )
        if not applied:
            logger.info("[reconciler] Duplicate %s %s on market %s skipped", side, signature, market.id)
            return JobOutcome.SKIPPED

        await self.cache.invalidate(market.id)
        return JobOutcome.APPLIED

    async def handle_init_market_stats(self, event: InitMarketStatsEvent, at: datetime) -> JobOutcome:
        market, created = await self.ensure_market_exists(event.record_id)

        if created:
            await self.store.touch_init(market.id, at)
        else:
            # The market existed before its init event arrived; pull forward-only
            # fields (status, chain clock) from a fresh snapshot
            snapshot = await asyncio.to_thread(self.chain.fetch_market, int(market.id))
            await self.store.refresh_from_snapshot(snapshot, at)

        await self.cache.invalidate(market.id)
        return JobOutcome.APPLIED

    async def handle_market_settled(self, event: MarketSettledEvent, at: datetime) -> JobOutcome:
        market, _ = await self.ensure_market_exists(event.record_id)
        _check_parallel(market, event.probs, event.votes)
        if not 0 <= event.winning_outcome < len(market.options):
            raise MalformedEventError(
                f"Winning outcome {event.winning_outcome} out of range for market {market.id} "
                f"with {len(market.options)} options"
            )

        applied = await self.store.apply_settlement(
            market.id, event.winning_outcome, event.probs, event.votes, at,
        )
        if not applied:
            raise MarketNotFoundError(market.id)

        for option, prob in enumerate(event.probs):
            await self.prices.append(market.id, at, prob, option)

        await self.cache.invalidate(market.id)
        return JobOutcome.APPLIED
