"""
Tests for EventSource message routing and listener behaviour (no websocket).
"""

import json
from unittest.mock import AsyncMock

import pytest

from market_indexer.models.events import EventKind
from market_indexer.workers.event_source import EventSource


@pytest.fixture
def queue():
    q = AsyncMock()
    q.enqueue.return_value = True
    return q


@pytest.fixture
def source(queue):
    s = EventSource(queue, ws_url="ws://test")
    s._register_listeners()
    return s


class TestDispatch:
    @pytest.mark.asyncio
    async def test_event_becomes_queue_job(self, source, queue):
        await source.dispatch(json.dumps({
            "event": "buySharesEvent",
            "data": {"marketId": 7, "status": 1, "amount": 2, "tvl": 500},
            "signature": "5xSig",
        }))

        queue.enqueue.assert_awaited_once()
        job = queue.enqueue.await_args.args[0]
        assert job.event_kind == "buySharesEvent"
        assert job.payload["tvl"] == 500
        assert job.signature == "5xSig"
        assert job.occurred_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_acks_and_garbage_are_ignored(self, source, queue):
        await source.dispatch(json.dumps({"id": 1, "result": "subscribed"}))
        await source.dispatch("not json")
        queue.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unsubscribed_kind_is_ignored(self, queue):
        source = EventSource(queue, kinds=(EventKind.REVEAL_PROBS,))
        source._register_listeners()

        await source.dispatch(json.dumps({"event": "buySharesEvent", "data": {"marketId": 7}}))

        queue.enqueue.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_swallowed(self, source, queue):
        queue.enqueue.side_effect = ConnectionError("redis down")

        await source.dispatch(json.dumps({"event": "initMarketStatsEvent", "data": {"marketId": 7}}))

        queue.enqueue.assert_awaited_once()


class TestLifecycle:
    def test_one_listener_per_kind(self, source):
        assert source.get_status()["listeners"] == [k.value for k in EventKind]

    @pytest.mark.asyncio
    async def test_stop_clears_listeners(self, queue, monkeypatch):
        source = EventSource(queue, ws_url="ws://test")
        monkeypatch.setattr(source, "_run", AsyncMock())

        await source.start()
        assert source.get_status()["is_running"] is True

        await source.stop()
        status = source.get_status()
        assert status["is_running"] is False
        assert status["listeners"] == []
