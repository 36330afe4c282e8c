"""
Component wiring.

Each process builds its components exactly once at startup and hands them to
whoever needs them (FastAPI app.state in the API process, arq ctx in the worker).
Nothing below is reachable through module globals.
"""

from dataclasses import dataclass

import asyncpg
import redis.asyncio as aioredis
from arq.connections import ArqRedis

from market_indexer.services.cache import MarketCache
from market_indexer.services.chain import ChainGateway
from market_indexer.services.markets import MarketStore
from market_indexer.services.prices import PriceArchive, PriceStore
from market_indexer.workers.event_queue import EventQueue
from market_indexer.workers.reconciler import Reconciler


@dataclass
class Services:
    store: MarketStore
    cache: MarketCache
    prices: PriceStore
    chain: ChainGateway
    queue: EventQueue
    reconciler: Reconciler


def build_services(
    pool: asyncpg.Pool,
    redis: aioredis.Redis,
    arq_pool: ArqRedis | None = None,
    chain: ChainGateway | None = None,
) -> Services:
    chain = chain or ChainGateway.from_env()
    store = MarketStore(pool)
    cache = MarketCache(redis)
    prices = PriceStore(redis, PriceArchive(pool), store)
    queue = EventQueue(redis, arq_pool)
    reconciler = Reconciler(store, chain, cache, prices)
    return Services(
        store=store,
        cache=cache,
        prices=prices,
        chain=chain,
        queue=queue,
        reconciler=reconciler,
    )
