"""
Tests for PriceStore: ordering with the synthetic prior, the 100-entry cap,
fallback to the durable tier, Redis outages, and per-option reads.
"""

import pytest
import pytest_asyncio

from market_indexer.services.markets import MarketNotFoundError
from market_indexer.services.prices import PricePoint, PriceStore, interleaved_option_samples

from conftest import T0, make_snapshot


@pytest_asyncio.fixture
async def market(store):
    await store.insert_snapshot(make_snapshot(7))
    return await store.get("7")


class TestReadWrite:
    @pytest.mark.asyncio
    async def test_newest_first_after_prior(self, prices, market, at):
        await prices.append("7", at(1), 0.6)
        await prices.append("7", at(2), 0.65)

        history = await prices.read("7")

        assert history[0] == PricePoint(timestamp=market.created_at, prob=0.5)
        assert [(p.timestamp, p.prob) for p in history[1:]] == [(at(2), 0.65), (at(1), 0.6)]

    @pytest.mark.asyncio
    async def test_empty_history_is_just_the_prior(self, prices, market):
        history = await prices.read("7")
        assert len(history) == 1
        assert history[0].prob == 0.5
        assert history[0].timestamp == T0

    @pytest.mark.asyncio
    async def test_unknown_market_raises(self, prices):
        with pytest.raises(MarketNotFoundError):
            await prices.read("404")

    @pytest.mark.asyncio
    async def test_capped_at_max_entries(self, prices, archive, market, at):
        for i in range(150):
            await prices.append("7", at(i), i / 1000)

        history = await prices.read("7")

        assert len(history) == 101
        assert history[1].timestamp == at(149)
        assert history[-1].timestamp == at(50)
        assert len(archive.samples["7"]) == 100


class TestTiers:
    @pytest.mark.asyncio
    async def test_miss_falls_back_and_repopulates(self, prices, fake_redis, market, at):
        await prices.append("7", at(1), 0.6)
        await prices.append("7", at(2), 0.7)
        fake_redis.lists.clear()

        history = await prices.read("7")

        assert [p.prob for p in history] == [0.5, 0.7, 0.6]
        assert len(fake_redis.lists["market:7:prices"]) == 2
        assert [p.prob for p in await prices.read("7")] == [0.5, 0.7, 0.6]

    @pytest.mark.asyncio
    async def test_append_during_miss_survives_repopulate(self, prices, fake_redis, archive, market, at, monkeypatch):
        """A sample appended while a read is loading the archive is kept in the fast list."""
        await prices.append("7", at(1), 0.6)
        fake_redis.lists.clear()

        load_archive = archive.recent

        async def recent_with_concurrent_append(market_id):
            points = await load_archive(market_id)
            await prices.append("7", at(2), 0.7)
            return points

        monkeypatch.setattr(archive, "recent", recent_with_concurrent_append)
        first = await prices.read("7")
        monkeypatch.setattr(archive, "recent", load_archive)

        assert [p.prob for p in first] == [0.5, 0.7, 0.6]
        assert len(fake_redis.lists["market:7:prices"]) == 2
        later = await prices.read("7")
        assert [(p.timestamp, p.prob) for p in later[1:]] == [(at(2), 0.7), (at(1), 0.6)]

    @pytest.mark.asyncio
    async def test_repopulate_skips_samples_already_in_fast_list(self, prices, fake_redis, archive, market, at, monkeypatch):
        await prices.append("7", at(1), 0.6)
        fake_redis.lists.clear()

        load_archive = archive.recent

        async def recent_after_append(market_id):
            await prices.append("7", at(2), 0.7)
            return await load_archive(market_id)

        monkeypatch.setattr(archive, "recent", recent_after_append)
        await prices.read("7")

        assert len(fake_redis.lists["market:7:prices"]) == 2

    @pytest.mark.asyncio
    async def test_duplicate_append_is_stored_once(self, prices, fake_redis, archive, market, at):
        assert await prices.append("7", at(1), 0.6, option=0) is True
        assert await prices.append("7", at(1), 0.6, option=0) is False

        assert len(fake_redis.lists["market:7:prices"]) == 1
        assert len(archive.samples["7"]) == 1

    @pytest.mark.asyncio
    async def test_archive_failure_skips_fast_list(self, prices, fake_redis, archive, market, at, monkeypatch):
        async def failing_insert(market_id, point):
            raise ConnectionError("database unavailable")

        monkeypatch.setattr(archive, "insert", failing_insert)
        with pytest.raises(ConnectionError):
            await prices.append("7", at(1), 0.6)

        assert "market:7:prices" not in fake_redis.lists

    @pytest.mark.asyncio
    async def test_redis_down_degrades_to_archive(self, prices, fake_redis, archive, market, at):
        fake_redis.down = True

        await prices.append("7", at(1), 0.6)
        history = await prices.read("7")

        assert [p.prob for p in history] == [0.5, 0.6]
        assert len(archive.samples["7"]) == 1

    @pytest.mark.asyncio
    async def test_market_ids_lists_fast_tier_keys(self, prices, store, at):
        await store.insert_snapshot(make_snapshot(8))
        await prices.append("8", at(1), 0.4)
        assert await prices.market_ids() == ["8"]

    @pytest.mark.asyncio
    async def test_clear_removes_both_tiers(self, prices, fake_redis, archive, market, at):
        await prices.append("7", at(1), 0.6)
        await prices.clear("7")
        assert "market:7:prices" not in fake_redis.lists
        assert "7" not in archive.samples


class TestOptions:
    @pytest.mark.asyncio
    async def test_tagged_samples_filter_by_option(self, prices, market, at):
        await prices.append("7", at(1), 0.6, option=0)
        await prices.append("7", at(1), 0.4, option=1)
        await prices.append("7", at(2), 0.55, option=0)
        await prices.append("7", at(2), 0.45, option=1)

        history = await prices.read_option("7", 1)

        assert [p.prob for p in history] == [0.5, 0.45, 0.4]

    def test_interleaved_heuristic_for_untagged_samples(self, at):
        """Each reveal pushes option 0 then option 1, so the list holds option 1 first."""
        points = [
            PricePoint(timestamp=at(2), prob=0.45),
            PricePoint(timestamp=at(2), prob=0.55),
            PricePoint(timestamp=at(1), prob=0.4),
            PricePoint(timestamp=at(1), prob=0.6),
        ]
        assert [p.prob for p in interleaved_option_samples(points, 0, 2)] == [0.55, 0.6]
        assert [p.prob for p in interleaved_option_samples(points, 1, 2)] == [0.45, 0.4]

    @pytest.mark.asyncio
    async def test_interleaved_matches_append_order(self, prices, fake_redis, market, at):
        for t, yes, no in ((1, 0.61, 0.39), (2, 0.62, 0.38)):
            await prices.append("7", at(t), yes, option=0)
            await prices.append("7", at(t), no, option=1)
        untagged = [
            PricePoint(timestamp=p.timestamp, prob=p.prob)
            for p in (await prices.read("7"))[1:]
        ]

        assert [p.prob for p in interleaved_option_samples(untagged, 0, 2)] == [0.62, 0.61]
        assert [p.prob for p in interleaved_option_samples(untagged, 1, 2)] == [0.38, 0.39]

    def test_interleaved_with_no_options(self):
        assert interleaved_option_samples([], 0, 0) == []


class TestConfiguration:
    @pytest.mark.asyncio
    async def test_custom_cap(self, fake_redis, archive, store, at):
        await store.insert_snapshot(make_snapshot(7))
        small = PriceStore(fake_redis, archive, store, max_entries=3)
        for i in range(5):
            await small.append("7", at(i), 0.1 * i)
        assert len(await small.read("7")) == 4
