"""
Market Indexer — FastAPI entry point.

Startup sequence:
    1. Create schema, initialize asyncpg pool + Redis connection + arq pool
    2. Build per-process components (stores, caches, chain gateway, event queue)
    3. Start the EventSource websocket subscription as a background task
    4. Register and start APScheduler jobs (reveal sweep, optional airdrop)

Shutdown:
    5. Stop the scheduler and cancel in-flight reveals
    6. Stop the EventSource
    7. Close arq pool, Redis, asyncpg pool

The EventQueue consumer (Reconciler) runs in a SEPARATE arq worker process:
    arq market_indexer.core.arq_worker.WorkerSettings
"""

import logging
from contextlib import asynccontextmanager

from arq import create_pool
from fastapi import FastAPI

from market_indexer.api.routes import health, markets, prices
from market_indexer.core.database import close_asyncpg_pool, init_asyncpg_pool, init_db
from market_indexer.core.redis import close_redis, get_redis, parse_redis_settings
from market_indexer.core.scheduler import register_jobs, scheduler
from market_indexer.core.services import build_services
from market_indexer.workers.event_source import EventSource
from market_indexer.workers.reveal_scheduler import RevealScheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage the application lifecycle.
    All startup logic runs before yield; shutdown logic runs after.
    """
    logger.info("Starting market indexer...")

    # Create tables and enum types if they don't exist
    await init_db()
    logger.info("Database schema verified.")

    pool = await init_asyncpg_pool()
    redis = await get_redis()
    arq_pool = await create_pool(parse_redis_settings())
    logger.info("Connection pools ready (asyncpg + Redis + arq).")

    services = build_services(pool, redis, arq_pool)
    event_source = EventSource(services.queue)
    reveal_scheduler = RevealScheduler(services.store, services.chain)

    app.state.services = services
    app.state.event_source = event_source
    app.state.reveal_scheduler = reveal_scheduler

    await event_source.start()

    register_jobs(reveal_scheduler, services.chain)
    scheduler.start()
    logger.info("Scheduler started.")

    yield

    # Graceful shutdown
    logger.info("Shutting down...")

    scheduler.shutdown(wait=False)
    await reveal_scheduler.drain()
    await event_source.stop()

    await arq_pool.aclose()
    await close_redis()
    await close_asyncpg_pool()
    logger.info("Shutdown complete.")


app = FastAPI(
    title="Market Indexer",
    description="Off-chain mirror of on-chain prediction markets with periodic probability reveals.",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router, prefix="/health", tags=["health"])
app.include_router(markets.router, prefix="/markets", tags=["markets"])
app.include_router(prices.router, prefix="/prices", tags=["prices"])
