"""
APScheduler setup for the API process.

All jobs use AsyncIOScheduler so they run in the same event loop as FastAPI.
Jobs are registered here and started/stopped via the FastAPI lifespan in main.py.

Jobs:
    - reveal_probs_sweep: every 60s, trigger reveals for eligible markets
    - devnet_airdrop: daily at 00:00 UTC, only when AIRDROP_ENABLED
"""

import asyncio
import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from market_indexer.core.config import AIRDROP_ENABLED, REVEAL_INTERVAL_SECONDS
from market_indexer.services.chain import ChainGateway
from market_indexer.workers.reveal_scheduler import RevealScheduler

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


async def _airdrop(chain: ChainGateway) -> None:
    await asyncio.to_thread(chain.request_airdrop)


def register_jobs(reveal: RevealScheduler, chain: ChainGateway) -> None:
    """
    Register all background jobs with the scheduler.
    Called once during app startup before scheduler.start().
    """

    # A tick only starts reveal tasks and returns, so it never overlaps itself;
    # max_instances=1 guards against a slow candidate query.
    scheduler.add_job(
        reveal.tick,
        trigger=IntervalTrigger(seconds=REVEAL_INTERVAL_SECONDS),
        id="reveal_probs_sweep",
        name="Reveal probabilities for active markets",
        replace_existing=True,
        misfire_grace_time=30,
        max_instances=1,
        coalesce=True,
    )

    if AIRDROP_ENABLED:
        scheduler.add_job(
            _airdrop,
            trigger=CronTrigger(hour=0, minute=0),
            args=[chain],
            id="devnet_airdrop",
            name="Devnet payer airdrop",
            replace_existing=True,
        )

    logger.info("[scheduler] Registered %d jobs", len(scheduler.get_jobs()))


def get_job_status() -> list[dict[str, Any]]:
    return [
        {
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            "alive": scheduler.running and job.next_run_time is not None,
        }
        for job in scheduler.get_jobs()
    ]
