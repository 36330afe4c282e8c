"""
EventQueue — durable at-least-once delivery between EventSource and the Reconciler.

Transport is arq on Redis:
    - enqueue() returns once arq has written the job to Redis
    - the arq worker process calls process_chain_event() once per job per worker slot
      (see core.arq_worker), which hands the job to the registered consumer

Retry policy (arq only retries when the function raises arq.Retry):
    attempt 1 fails → Retry(defer=2s)
    attempt 2 fails → Retry(defer=4s)
    attempt 3 fails → dead-lettered: recorded in {queue}:failed and the error re-raised

Outcome retention is bounded: the last KEEP_SUCCEEDED successes and the last
KEEP_FAILED dead letters are kept as JSON in Redis lists for inspection.

No ordering is guaranteed, across or within markets. Consumers must be idempotent.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from arq import Retry
from arq.connections import ArqRedis
from redis.exceptions import RedisError

from market_indexer.core.config import (
    EVENT_QUEUE_BACKOFF_SECONDS,
    EVENT_QUEUE_KEEP_FAILED,
    EVENT_QUEUE_KEEP_SUCCEEDED,
    EVENT_QUEUE_MAX_ATTEMPTS,
    EVENT_QUEUE_NAME,
)
from market_indexer.models.events import QueueJob, UnknownEventKindError

logger = logging.getLogger(__name__)

JOB_FUNCTION = "process_chain_event"


class JobOutcome(str, Enum):
    APPLIED = "applied"        # state changed
    SKIPPED = "skipped"        # valid event with nothing to do (failed tx, duplicate, stale)
    DROPPED = "dropped"        # unknown event kind, never retried
    DEAD_LETTERED = "dead_lettered"


Consumer = Callable[[QueueJob], Awaitable[JobOutcome]]


def backoff_delay(attempt: int, base: float = EVENT_QUEUE_BACKOFF_SECONDS) -> float:
    """Seconds to wait after the given failed attempt (1-based): base, 2*base, 4*base, ..."""
    return base * 2 ** (attempt - 1)


class EventQueue:
    def __init__(
        self,
        redis: aioredis.Redis,
        pool: ArqRedis | None = None,
        name: str = EVENT_QUEUE_NAME,
        max_attempts: int = EVENT_QUEUE_MAX_ATTEMPTS,
        keep_succeeded: int = EVENT_QUEUE_KEEP_SUCCEEDED,
        keep_failed: int = EVENT_QUEUE_KEEP_FAILED,
    ):
        self._redis = redis
        self._pool = pool
        self.name = name
        self.max_attempts = max_attempts
        self.keep_succeeded = keep_succeeded
        self.keep_failed = keep_failed
        self._consumer: Consumer | None = None

    @property
    def succeeded_key(self) -> str:
        return f"{self.name}:succeeded"

    @property
    def failed_key(self) -> str:
        return f"{self.name}:failed"

    @property
    def stats_key(self) -> str:
        return f"{self.name}:stats"

    # -----------------------------------------------------------------------
    # Producer side
    # -----------------------------------------------------------------------

    async def enqueue(self, job: QueueJob) -> bool:
        """
        Persist a job. Returns False if arq already holds a job with the same id
        (same transaction signature), True otherwise. Raises if Redis is unreachable.
        """
        if self._pool is None:
            raise RuntimeError("EventQueue has no arq pool; enqueue is only available in the API process")

        queued = await self._pool.enqueue_job(
            JOB_FUNCTION,
            job.to_message(),
            _job_id=job.job_id,
            _queue_name=self.name,
        )
        return queued is not None

    # -----------------------------------------------------------------------
    # Consumer side
    # -----------------------------------------------------------------------

    def register_consumer(self, handler: Consumer) -> None:
        if self._consumer is not None:
            logger.warning("[event_queue] Replacing registered consumer %r", self._consumer)
        self._consumer = handler

    async def deliver(self, ctx: dict, message: dict[str, Any]) -> str:
        """
        Run one delivery attempt. Called by the arq job function.
        ctx["job_try"] is arq's 1-based attempt counter.
        """
        if self._consumer is None:
            raise RuntimeError("No consumer registered on EventQueue")

        attempt = ctx.get("job_try", 1)
        job_id = ctx.get("job_id")

        try:
            job = QueueJob.model_validate(message)
            outcome = await self._consumer(job)
        except UnknownEventKindError as exc:
            logger.warning("[event_queue] Dropping job %s: %s", job_id, exc)
            await self._record(JobOutcome.DROPPED, job_id, message, attempt)
            return JobOutcome.DROPPED.value
        except Exception as exc:
            if attempt >= self.max_attempts:
                logger.error(
                    "[event_queue] Job %s dead-lettered after %d attempts: %s",
                    job_id, attempt, exc, exc_info=True,
                )
                await self._record(JobOutcome.DEAD_LETTERED, job_id, message, attempt, error=exc)
                raise

            delay = backoff_delay(attempt)
            logger.warning(
                "[event_queue] Job %s attempt %d/%d failed (%s); retrying in %.0fs",
                job_id, attempt, self.max_attempts, exc, delay,
            )
            await self._incr("retried")
            raise Retry(defer=delay) from exc

        await self._record(outcome, job_id, message, attempt)
        return outcome.value

    # -----------------------------------------------------------------------
    # Bookkeeping
    # -----------------------------------------------------------------------

    async def _incr(self, field: str) -> None:
        try:
            await self._redis.hincrby(self.stats_key, field, 1)
        except RedisError as exc:
            logger.warning("[event_queue] Could not update stats: %s", exc)

    async def _record(
        self,
        outcome: JobOutcome,
        job_id: str | None,
        message: dict[str, Any],
        attempt: int,
        error: Exception | None = None,
    ) -> None:
        entry = {
            "jobId": job_id,
            "outcome": outcome.value,
            "attempts": attempt,
            "finishedAt": datetime.now(timezone.utc).isoformat(),
            "job": message,
        }
        if error is not None:
            entry["error"] = f"{type(error).__name__}: {error}"

        if outcome is JobOutcome.DEAD_LETTERED:
            key, keep = self.failed_key, self.keep_failed
        else:
            key, keep = self.succeeded_key, self.keep_succeeded

        try:
            await self._redis.lpush(key, json.dumps(entry, default=str))
            await self._redis.ltrim(key, 0, keep - 1)
        except RedisError as exc:
            logger.warning("[event_queue] Could not record outcome for job %s: %s", job_id, exc)
        await self._incr(outcome.value)

    async def recent(self, failed: bool = False, limit: int = 20) -> list[dict[str, Any]]:
        key = self.failed_key if failed else self.succeeded_key
        raw = await self._redis.lrange(key, 0, limit - 1)
        return [json.loads(r) for r in raw]

    async def get_stats(self) -> dict[str, Any]:
        """Queue depth and outcome counters for health reporting."""
        try:
            depth = await self._redis.zcard(self.name)
            counters = await self._redis.hgetall(self.stats_key)
            retained_succeeded = await self._redis.llen(self.succeeded_key)
            retained_failed = await self._redis.llen(self.failed_key)
        except RedisError as exc:
            logger.warning("[event_queue] Could not read stats: %s", exc)
            return {"queue": self.name, "available": False}

        return {
            "queue": self.name,
            "available": True,
            "depth": depth,
            "counts": {k: int(v) for k, v in counters.items()},
            "retained": {"succeeded": retained_succeeded, "failed": retained_failed},
        }
