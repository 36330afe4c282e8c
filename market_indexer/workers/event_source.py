"""
Chain Event Source

Persistent websocket subscription to the chain gateway's program event stream.
One listener is registered per consumed event kind; each delivered event is wrapped
in a QueueJob stamped with the capture time and written to the EventQueue.

The listener awaits the enqueue (so the next message is only read once the previous
one is durably in Redis), but an enqueue failure is only logged: the event is lost.

Runs as a long-lived asyncio task started in the FastAPI lifespan.
Reconnects with exponential backoff on disconnect.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import websockets

from market_indexer.core.config import CHAIN_EVENTS_WS_URL
from market_indexer.models.events import EventKind, QueueJob
from market_indexer.workers.event_queue import EventQueue

logger = logging.getLogger(__name__)

MAX_BACKOFF = 60
INITIAL_BACKOFF = 1

Listener = Callable[[dict[str, Any], str | None], Awaitable[None]]


class EventSource:
    def __init__(
        self,
        queue: EventQueue,
        ws_url: str = CHAIN_EVENTS_WS_URL,
        kinds: tuple[EventKind, ...] = tuple(EventKind),
    ):
        self.queue = queue
        self.ws_url = ws_url
        self.kinds = kinds
        self.is_running = False
        self.is_connected = False
        self._listeners: dict[str, Listener] = {}
        self._task: asyncio.Task | None = None

    # -----------------------------------------------------------------------
    # Listeners
    # -----------------------------------------------------------------------

    def _make_listener(self, kind: EventKind) -> Listener:
        async def on_event(data: dict[str, Any], signature: str | None) -> None:
            job = QueueJob(
                event_kind=kind.value,
                occurred_at=datetime.now(timezone.utc),
                payload=data,
                signature=signature,
            )
            logger.info("[event_source] %s received, adding to queue...", kind.value)
            try:
                queued = await self.queue.enqueue(job)
            except Exception as exc:
                logger.error("[event_source] Failed to add %s to queue: %s", kind.value, exc)
                return
            if queued:
                logger.info("[event_source] %s added to queue", kind.value)
            else:
                logger.info("[event_source] %s %s already queued, skipped", kind.value, signature)

        return on_event

    def _register_listeners(self) -> None:
        for kind in self.kinds:
            self._listeners[kind.value] = self._make_listener(kind)
            logger.info("[event_source] Listening for %s events", kind.value)

    async def dispatch(self, raw: str) -> None:
        """Route one websocket message to the listener for its event kind."""
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("[event_source] Non-JSON message: %s", raw[:200])
            return

        kind = msg.get("event")
        if kind is None:
            # Subscription acks and heartbeats
            return
        listener = self._listeners.get(kind)
        if listener is None:
            logger.warning("[event_source] Ignoring unsubscribed event kind: %s", kind)
            return
        await listener(msg.get("data") or {}, msg.get("signature"))

    # -----------------------------------------------------------------------
    # Connection loop
    # -----------------------------------------------------------------------

    async def _run(self) -> None:
        backoff = INITIAL_BACKOFF

        while self.is_running:
            try:
                logger.info("[event_source] Connecting to %s ...", self.ws_url)
                async with websockets.connect(
                    self.ws_url,
                    ping_interval=20,
                    ping_timeout=10,
                ) as ws:
                    self.is_connected = True
                    backoff = INITIAL_BACKOFF  # reset on successful connect

                    await ws.send(json.dumps({
                        "id": 1,
                        "cmd": "subscribe",
                        "params": {"events": list(self._listeners)},
                    }))
                    logger.info("[event_source] Subscribed to %s", ", ".join(self._listeners))

                    async for raw_msg in ws:
                        await self.dispatch(raw_msg)

            except asyncio.CancelledError:
                logger.info("[event_source] Task cancelled, shutting down.")
                self.is_connected = False
                raise
            except Exception as exc:
                logger.error("[event_source] Connection error: %s, reconnecting in %ds", exc, backoff)
                self.is_connected = False
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF)
            finally:
                self.is_connected = False

    async def start(self) -> None:
        if self.is_running:
            logger.warning("[event_source] Already running")
            return
        logger.info("[event_source] Starting program event monitoring...")
        self.is_running = True
        self._register_listeners()
        self._task = asyncio.create_task(self._run(), name="chain-event-source")

    async def stop(self) -> None:
        if not self.is_running:
            logger.warning("[event_source] Not running")
            return
        logger.info("[event_source] Stopping program event monitoring...")
        self.is_running = False
        self._listeners.clear()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[event_source] Stopped")

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "is_connected": self.is_connected,
            "listeners": list(self._listeners),
        }
