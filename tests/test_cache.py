"""Tests for the per-hash-type index cache."""

import asyncio

import pytest

from phash_search.cache import IndexCache
from phash_search.config import SearchSettings
from phash_search.errors import IndexBuildError
from phash_search.vptree import IndexedPoint, RandomVantageSelector


class CountingSource:
    """Data source that counts fetches and can be held open or made to fail."""

    def __init__(self, points_by_type=None, delay=0.0):
        self.points_by_type = points_by_type or {}
        self.delay = delay
        self.calls = []
        self.gate = None
        self.failures = 0

    async def fetch(self, hash_type):
        self.calls.append(hash_type)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise ConnectionError("document store unavailable")
        return list(self.points_by_type.get(hash_type, []))


@pytest.fixture
def source(make_points, make_fingerprints):
    return CountingSource({
        "perceptual_hash": make_points(make_fingerprints(50, seed=1)),
        "average_hash": make_points(make_fingerprints(30, seed=2)),
    })


@pytest.fixture
def cache(source, clock):
    return IndexCache(fetch=source.fetch, ttl=600.0, clock=clock)


class TestGetOrBuild:

    @pytest.mark.asyncio
    async def test_first_call_builds(self, cache, source):
        tree = await cache.get_or_build("perceptual_hash")
        assert len(tree) == 50
        assert source.calls == ["perceptual_hash"]

    @pytest.mark.asyncio
    async def test_fresh_entry_is_reused(self, cache, source, clock):
        first = await cache.get_or_build("perceptual_hash")
        clock.advance(599)
        second = await cache.get_or_build("perceptual_hash")
        assert first is second
        assert len(source.calls) == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_rebuilt(self, cache, source, clock):
        first = await cache.get_or_build("perceptual_hash")
        clock.advance(600)
        second = await cache.get_or_build("perceptual_hash")
        assert first is not second
        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_per_call_fetch_and_ttl(self, cache, source, clock):
        calls = []

        async def other_fetch(hash_type):
            calls.append(hash_type)
            return [IndexedPoint(fingerprint=1, item_id="x")]

        tree = await cache.get_or_build("color_hash", fetch=other_fetch, ttl=5)
        assert len(tree) == 1
        clock.advance(5)
        await cache.get_or_build("color_hash", fetch=other_fetch, ttl=5)
        assert calls == ["color_hash", "color_hash"]
        assert source.calls == []

    @pytest.mark.asyncio
    async def test_empty_source_builds_empty_tree(self, cache):
        tree = await cache.get_or_build("wavelet_hash")
        assert tree.is_empty
        assert tree.search(0, 64) == []

    @pytest.mark.asyncio
    async def test_no_data_source(self):
        with pytest.raises(IndexBuildError):
            await IndexCache().get_or_build("perceptual_hash")

    @pytest.mark.asyncio
    async def test_unknown_hash_type(self, cache):
        with pytest.raises(IndexBuildError):
            await cache.get_or_build("mystery_hash")


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, cache, source):
        source.delay = 0.01
        trees = await asyncio.gather(*(
            cache.get_or_build("perceptual_hash") for _ in range(25)
        ))
        assert source.calls == ["perceptual_hash"]
        assert all(tree is trees[0] for tree in trees)

    @pytest.mark.asyncio
    async def test_concurrent_callers_after_expiry(self, cache, source, clock):
        await cache.get_or_build("perceptual_hash")
        clock.advance(601)
        source.delay = 0.01
        await asyncio.gather(*(cache.get_or_build("perceptual_hash") for _ in range(10)))
        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_different_types_build_independently(self, cache, source):
        source.delay = 0.01
        await asyncio.gather(
            cache.get_or_build("perceptual_hash"),
            cache.get_or_build("average_hash"),
            cache.get_or_build("perceptual_hash"),
        )
        assert sorted(source.calls) == ["average_hash", "perceptual_hash"]

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_then_retries(self, cache, source):
        source.failures = 1
        source.delay = 0.01
        outcomes = await asyncio.gather(
            *(cache.get_or_build("perceptual_hash") for _ in range(5)),
            return_exceptions=True,
        )
        assert all(isinstance(o, IndexBuildError) for o in outcomes)
        assert len(source.calls) == 1

        tree = await cache.get_or_build("perceptual_hash")
        assert len(tree) == 50
        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_waiter_timeout_is_build_error(self, source, clock):
        cache = IndexCache(fetch=source.fetch, build_timeout=0.05, clock=clock)
        source.gate = asyncio.Event()

        with pytest.raises(IndexBuildError) as exc:
            await cache.get_or_build("perceptual_hash")
        assert exc.value.hash_type == "perceptual_hash"
        assert cache.is_building("perceptual_hash")

        # The build keeps running and later callers join it
        cache.build_timeout = 5.0
        source.gate.set()
        tree = await cache.get_or_build("perceptual_hash")
        assert len(tree) == 50
        assert source.calls == ["perceptual_hash"]

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, source, clock):
        cache = IndexCache(fetch=source.fetch, fetch_timeout=0.05, clock=clock)
        source.gate = asyncio.Event()
        with pytest.raises(IndexBuildError):
            await cache.get_or_build("perceptual_hash")
        assert not cache.is_building("perceptual_hash")


class TestBuildValidation:

    @pytest.mark.asyncio
    async def test_malformed_points(self, clock):
        async def fetch(hash_type):
            return [{"fingerprint": 1, "item_id": "dict-not-point"}]

        with pytest.raises(IndexBuildError):
            await IndexCache(fetch=fetch, clock=clock).get_or_build("perceptual_hash")

    @pytest.mark.asyncio
    async def test_fingerprint_too_wide(self, clock):
        async def fetch(hash_type):
            return [IndexedPoint(fingerprint=2 ** 64, item_id="wide")]

        with pytest.raises(IndexBuildError):
            await IndexCache(fetch=fetch, clock=clock).get_or_build("perceptual_hash")

    @pytest.mark.asyncio
    async def test_none_result(self, clock):
        async def fetch(hash_type):
            return None

        with pytest.raises(IndexBuildError):
            await IndexCache(fetch=fetch, clock=clock).get_or_build("perceptual_hash")


class TestInvalidate:

    @pytest.mark.asyncio
    async def test_invalidate_one_type_leaves_others(self, cache, source, clock):
        await cache.get_or_build("perceptual_hash")
        await cache.get_or_build("average_hash")
        before = cache.stats()

        clock.advance(10)
        assert cache.invalidate("perceptual_hash") == ["perceptual_hash"]
        assert "perceptual_hash" not in cache.stats()
        assert cache.stats()["average_hash"]["built_at"] == before["average_hash"]["built_at"]

        await cache.get_or_build("perceptual_hash")
        after = cache.stats()
        assert after["perceptual_hash"]["built_at"] != before["perceptual_hash"]["built_at"]
        assert after["average_hash"]["built_at"] == before["average_hash"]["built_at"]
        assert source.calls.count("perceptual_hash") == 2
        assert source.calls.count("average_hash") == 1

    @pytest.mark.asyncio
    async def test_invalidate_all(self, cache, source):
        await cache.get_or_build("perceptual_hash")
        await cache.get_or_build("average_hash")
        assert sorted(cache.invalidate()) == ["average_hash", "perceptual_hash"]
        assert cache.stats() == {}

    def test_invalidate_missing_type(self, cache):
        assert cache.invalidate("color_hash") == []

    @pytest.mark.asyncio
    async def test_invalidate_during_build_discards_result(self, cache, source):
        source.gate = asyncio.Event()
        pending = asyncio.ensure_future(cache.get_or_build("perceptual_hash"))
        await asyncio.sleep(0)
        assert cache.is_building("perceptual_hash")

        cache.invalidate("perceptual_hash")
        source.gate.set()
        tree = await pending
        assert len(tree) == 50
        assert cache.stats() == {}

        await cache.get_or_build("perceptual_hash")
        assert len(source.calls) == 2


class TestStats:

    @pytest.mark.asyncio
    async def test_stats_fields(self, cache, clock):
        await cache.get_or_build("perceptual_hash")
        clock.advance(42)
        stats = cache.stats()
        assert stats["perceptual_hash"]["size"] == 50
        assert stats["perceptual_hash"]["age"] == pytest.approx(42)
        assert stats["perceptual_hash"]["height"] >= 1

    @pytest.mark.asyncio
    async def test_stats_has_no_side_effects(self, cache, source):
        assert cache.stats() == {}
        await cache.get_or_build("perceptual_hash")
        first = cache.stats()
        second = cache.stats()
        assert first == second
        assert len(source.calls) == 1


class TestFromSettings:

    def test_reads_settings(self, source):
        settings = SearchSettings(cache_ttl=60, build_timeout=5, fetch_timeout=2, vantage_seed=9)
        cache = IndexCache.from_settings(settings, fetch=source.fetch)
        assert cache.ttl == 60
        assert cache.build_timeout == 5
        assert cache.fetch_timeout == 2
        selector = cache.selector_factory()
        assert isinstance(selector, RandomVantageSelector)
        assert selector.seed == 9

    def test_no_seed_uses_first_point(self, source):
        cache = IndexCache.from_settings(SearchSettings(vantage_seed=None), fetch=source.fetch)
        assert cache.selector_factory is None
