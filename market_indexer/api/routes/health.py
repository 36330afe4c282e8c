"""
Health endpoints.

GET /health           - liveness
GET /health/detailed  - database, redis, event queue, event source and scheduler status
"""

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Request

from market_indexer.core.config import ENVIRONMENT
from market_indexer.core.database import check_database_health
from market_indexer.core.redis import check_redis_health
from market_indexer.core.scheduler import get_job_status

router = APIRouter()


@router.get("/")
async def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "environment": ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/detailed")
async def health_detailed(request: Request) -> dict[str, Any]:
    state = request.app.state
    database_ok = await check_database_health()
    redis_ok = await check_redis_health()

    return {
        "status": "ok" if database_ok and redis_ok else "degraded",
        "environment": ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": {"connected": database_ok},
        "redis": {"connected": redis_ok},
        "event_queue": await state.services.queue.get_stats(),
        "event_source": state.event_source.get_status(),
        "reveal_scheduler": state.reveal_scheduler.get_status(),
        "jobs": get_job_status(),
    }
