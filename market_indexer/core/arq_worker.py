"""
arq worker configuration — the EventQueue consumer process.

Run as a separate process:
    arq market_indexer.core.arq_worker.WorkerSettings

Functions:
    - process_chain_event: one program event → Reconciler, with EventQueue's
      retry/backoff/dead-letter policy applied around it
"""

import logging

from arq import func

from market_indexer.core.config import EVENT_QUEUE_MAX_ATTEMPTS, EVENT_QUEUE_NAME, EVENT_QUEUE_WORKERS
from market_indexer.core.redis import parse_redis_settings
from market_indexer.workers.event_queue import JOB_FUNCTION

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:
    """Called once when the arq worker process starts."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("[arq] Worker starting up...")

    from market_indexer.core.database import init_asyncpg_pool
    from market_indexer.core.redis import get_redis
    from market_indexer.core.services import build_services

    ctx["asyncpg_pool"] = await init_asyncpg_pool()
    ctx["redis"] = await get_redis()

    services = build_services(ctx["asyncpg_pool"], ctx["redis"])
    services.queue.register_consumer(services.reconciler.handle)
    ctx["services"] = services
    logger.info("[arq] Worker ready.")


async def shutdown(ctx: dict) -> None:
    """Called once when the arq worker process shuts down."""
    logger.info("[arq] Worker shutting down...")

    from market_indexer.core.database import close_asyncpg_pool
    from market_indexer.core.redis import close_redis

    await close_asyncpg_pool()
    await close_redis()


async def process_chain_event(ctx: dict, message: dict) -> str:
    """Deliver one queued program event to the registered consumer."""
    return await ctx["services"].queue.deliver(ctx, message)


class WorkerSettings:
    functions = [
        func(process_chain_event, name=JOB_FUNCTION, max_tries=EVENT_QUEUE_MAX_ATTEMPTS),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = parse_redis_settings()
    queue_name = EVENT_QUEUE_NAME
    max_jobs = EVENT_QUEUE_WORKERS
    job_timeout = 120
    keep_result = 3600
