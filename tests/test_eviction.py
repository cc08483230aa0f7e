"""
LRU Eviction Tests

Capacity enforcement on write and administrative purge.
"""

import pytest

from research_cache.domain.cache.exceptions import InvalidConfigurationException
from research_cache.services.cache.entry_store import EntryStore
from research_cache.services.cache.eviction import LruEvictionPolicy


def build(store, clock, **limits):
    eviction = LruEvictionPolicy(store, **limits)
    return EntryStore(store, clock=clock, eviction=eviction), eviction


class TestLruEviction:
    """Test cases for LruEvictionPolicy."""

    @pytest.mark.asyncio
    async def test_least_recently_inserted_key_evicted(self, store, clock):
        entries, _ = build(store, clock, max_entries=3)

        for i in range(4):
            await entries.set(f"key:{i}", i, ttl_seconds=60)

        assert await entries.get("key:0") is None
        for i in range(1, 4):
            assert await entries.get(f"key:{i}") == i

    @pytest.mark.asyncio
    async def test_read_refreshes_recency(self, store, clock):
        entries, _ = build(store, clock, max_entries=3)
        for i in range(3):
            await entries.set(f"key:{i}", i, ttl_seconds=60)

        await entries.get("key:0")
        await entries.set("key:3", 3, ttl_seconds=60)

        assert await entries.get("key:0") == 0
        assert await entries.get("key:1") is None

    @pytest.mark.asyncio
    async def test_byte_budget(self, store, clock):
        entries, _ = build(store, clock, max_bytes=10)

        await entries.set("a", "xxxx", ttl_seconds=60)  # 6 bytes serialized
        await entries.set("b", "yyyy", ttl_seconds=60)

        assert await entries.get("a") is None
        assert await entries.get("b") == "yyyy"
        assert (await store.usage())[1] <= 10

    @pytest.mark.asyncio
    async def test_just_written_entry_never_evicted(self, store, clock):
        entries, _ = build(store, clock, max_bytes=4)

        await entries.set("big", "larger than budget", ttl_seconds=60)

        assert await entries.get("big") == "larger than budget"

    @pytest.mark.asyncio
    async def test_evict_until_entry_target(self, store, clock):
        entries, eviction = build(store, clock)
        for i in range(5):
            await entries.set(f"key:{i}", i, ttl_seconds=60)

        evicted = await eviction.evict_until(target_entries=2)

        assert evicted == ["key:0", "key:1", "key:2"]
        assert (await store.usage())[0] == 2

    @pytest.mark.asyncio
    async def test_eviction_unregisters_tags(self, store, clock):
        entries, eviction = build(store, clock)
        await entries.set("k1", "v", ttl_seconds=60, tags=["t"])
        await entries.set("k2", "v", ttl_seconds=60, tags=["t"])

        await eviction.evict_until(target_entries=1)

        assert await store.keys_for_tag("t") == {"k2"}

    @pytest.mark.asyncio
    async def test_evict_until_requires_target(self, memory_store):
        eviction = LruEvictionPolicy(memory_store)

        with pytest.raises(InvalidConfigurationException):
            await eviction.evict_until()

    @pytest.mark.parametrize("limits", [{"max_entries": 0}, {"max_entries": -1}, {"max_bytes": -5}])
    def test_invalid_capacity_fails_fast(self, memory_store, limits):
        with pytest.raises(InvalidConfigurationException):
            LruEvictionPolicy(memory_store, **limits)
