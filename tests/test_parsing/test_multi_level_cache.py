"""
Tests for Multi-Level Cache

Tests for scriptflow/parsing/multi_level_cache.py
"""

import pytest

from scriptflow.core.config import CacheConfig
from scriptflow.core.constants import CacheTier
from scriptflow.parsing.multi_level_cache import MultiLevelCache
from scriptflow.storage.stores import InMemoryCacheStore


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenStore:
    async def get(self, key):
        raise OSError("disk gone")

    async def set(self, key, value):
        raise OSError("disk gone")


@pytest.fixture
def clock():
    return FakeClock()


def make_cache(clock, l2=None, l3=None, **config) -> MultiLevelCache:
    return MultiLevelCache(l2_store=l2, l3_store=l3, config=CacheConfig(**config), clock=clock)


class TestReadsAndWrites:
    """Tests for basic cache traffic."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, clock):
        cache = make_cache(clock)
        await cache.set("k", {"name": "A"})

        assert await cache.get("k") == {"name": "A"}
        stats = cache.get_stats()
        assert stats["l1_hits"] == 1
        assert stats["sets"] == 1
        assert stats["tiers"] == ["l1"]

    @pytest.mark.asyncio
    async def test_miss(self, clock):
        cache = make_cache(clock)

        assert await cache.get("nope") is None
        assert cache.get_stats()["misses"] == 1
        assert cache.get_stats()["hit_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_peek_leaves_stats_alone(self, clock):
        cache = make_cache(clock)
        await cache.set("k", 1)

        assert await cache.peek("k") == 1
        assert await cache.has("k")
        assert cache.get_stats()["hits"] == 0

    @pytest.mark.asyncio
    async def test_setting_none_deletes(self, clock):
        store = InMemoryCacheStore()
        cache = make_cache(clock, l2=store)
        await cache.set("k", 1)
        await cache.set("k", None)

        assert await cache.get("k") is None
        assert await store.get("mlc:l2:k") is None

    @pytest.mark.asyncio
    async def test_entry_expires(self, clock):
        cache = make_cache(clock, l1_ttl=10)
        await cache.set("k", 1)

        clock.advance(9)
        assert await cache.get("k") == 1
        clock.advance(2)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_explicit_ttl(self, clock):
        cache = make_cache(clock)
        await cache.set("k", 1, ttl=1)

        clock.advance(2)
        assert await cache.get("k") is None


class TestEvictionAndPromotion:
    """Tests for capacity limits and tier promotion."""

    @pytest.mark.asyncio
    async def test_l1_evicts_least_recently_hit(self, clock):
        cache = make_cache(clock, max_l1_size=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.get("a")
        await cache.set("c", 3)

        assert await cache.peek("a") == 1
        assert await cache.peek("b") is None
        assert await cache.peek("c") == 3
        assert cache.get_stats()["evictions"] == 1

    @pytest.mark.asyncio
    async def test_l2_hit_promotes_to_l1(self, clock):
        store = InMemoryCacheStore()
        cache = make_cache(clock, l2=store)
        await cache.set("k", "v", tiers=[CacheTier.L2])

        assert await cache.get("k") == "v"
        assert await cache.get("k") == "v"
        stats = cache.get_stats()
        assert stats["l2_hits"] == 1
        assert stats["l1_hits"] == 1

    @pytest.mark.asyncio
    async def test_promoted_entry_keeps_remaining_ttl(self, clock):
        store = InMemoryCacheStore()
        cache = make_cache(clock, l2=store, l1_ttl=300)
        await cache.set("k", "v", ttl=50, tiers=["l2"])

        clock.advance(40)
        assert await cache.get("k") == "v"
        await store.set("mlc:l2:k", None)

        clock.advance(5)
        assert await cache.get("k") == "v"
        clock.advance(6)
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_l3_hit_fills_faster_tiers(self, clock):
        l2, l3 = InMemoryCacheStore(), InMemoryCacheStore()
        cache = make_cache(clock, l2=l2, l3=l3)
        await cache.set("k", [1, 2], tiers=[CacheTier.L3])

        assert await cache.get("k") == [1, 2]
        assert cache.get_stats()["l3_hits"] == 1
        assert (await l2.get("mlc:l2:k"))["value"] == [1, 2]

    @pytest.mark.asyncio
    async def test_l2_capacity_drops_oldest_write(self, clock):
        store = InMemoryCacheStore()
        cache = make_cache(clock, l2=store, max_l2_size=2)
        for key in ("a", "b", "c"):
            await cache.set(key, key)

        assert await store.get("mlc:l2:a") is None
        assert await store.get("mlc:l2:__index__") == ["b", "c"]

    @pytest.mark.asyncio
    async def test_failing_store_reads_as_miss(self, clock):
        cache = make_cache(clock, l2=BrokenStore())
        await cache.set("k", 1, tiers=[CacheTier.L2])

        assert await cache.get("k") is None


class TestKeys:
    """Tests for key generation."""

    def test_key_ignores_parameter_order(self):
        first = MultiLevelCache.generate_key("character", {"name": "A", "extra": {"x": 1, "y": 2}})
        second = MultiLevelCache.generate_key("character", {"extra": {"y": 2, "x": 1}, "name": "A"})

        assert first == second
        assert first.startswith("character:")

    def test_key_depends_on_values(self):
        assert MultiLevelCache.generate_key("scene", {"name": "A"}) != MultiLevelCache.generate_key("scene", {"name": "B"})

    def test_fingerprint_ignores_whitespace_layout(self):
        assert MultiLevelCache.fingerprint("a  b\n") == MultiLevelCache.fingerprint("a b")


class TestMaintenance:
    """Tests for sweep, clear and warmup."""

    @pytest.mark.asyncio
    async def test_sweep_removes_expired(self, clock):
        store = InMemoryCacheStore()
        cache = make_cache(clock, l2=store, l1_ttl=10, l2_ttl=10)
        await cache.set("k", 1)

        clock.advance(11)
        removed = await cache.sweep()

        assert removed == {"l1": 1, "l2": 1}
        assert cache.get_stats()["l1_size"] == 0
        assert await store.get("mlc:l2:k") is None

    @pytest.mark.asyncio
    async def test_clear(self, clock):
        store = InMemoryCacheStore()
        cache = make_cache(clock, l2=store)
        await cache.set("k", 1)
        await cache.clear()

        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_warmup(self, clock):
        cache = make_cache(clock)

        assert await cache.warmup({"a": 1, "b": 2}) == 2
        assert await cache.get("b") == 2

    @pytest.mark.asyncio
    async def test_sweeper_start_and_close(self, clock):
        cache = make_cache(clock)
        cache.start_sweeper()
        await cache.close()

        assert cache._sweeper is None
