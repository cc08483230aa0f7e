"""
Entry Store Tests

Unit tests for expiration, serialization and stale reads.
"""

import pytest

from research_cache.domain.cache.exceptions import InvalidConfigurationException
from research_cache.domain.cache.value_objects import CacheKey, CachePrefix
from research_cache.services.cache.entry_store import EntryStore


@pytest.fixture
def entries(memory_store, clock):
    return EntryStore(memory_store, clock=clock)


class TestEntryStore:
    """Test cases for EntryStore."""

    @pytest.mark.asyncio
    async def test_value_visible_until_ttl_elapses(self, entries, clock):
        await entries.set("project:1", {"name": "Atlas"}, ttl_seconds=10)

        clock.advance(9.999)
        assert await entries.get("project:1") == {"name": "Atlas"}

        clock.advance(0.001)
        assert await entries.get("project:1") is None

    @pytest.mark.asyncio
    async def test_round_trip_returns_equal_value(self, entries):
        value = {
            "items": [{"id": 1, "title": "Graph study", "tags": ["ml", "nlp"]}],
            "total": 1,
            "ratio": 0.5,
            "nested": {"ok": True, "none": None},
        }
        await entries.set("search:q", value, ttl_seconds=30, tags=["search"])

        assert await entries.get("search:q") == value

    @pytest.mark.asyncio
    async def test_bytes_values_round_trip(self, entries):
        await entries.set("report:pdf", b"\x00\x01binary", ttl_seconds=30)

        assert await entries.get("report:pdf") == b"\x00\x01binary"
        entry = await entries.get_entry("report:pdf")
        assert entry.size_bytes == len(b"\x00\x01binary")

    @pytest.mark.asyncio
    async def test_size_is_computed_from_serialized_value(self, entries):
        entry = await entries.set("k", {"a": "é"}, ttl_seconds=30)

        assert entry.size_bytes == len('{"a":"é"}'.encode("utf-8"))
        assert await entries.store.usage() == (1, entry.size_bytes)

    @pytest.mark.asyncio
    async def test_get_stale_flags_expired_entries(self, entries, clock):
        await entries.set("k", "old", ttl_seconds=10, stale_ttl_seconds=50)

        assert await entries.get_stale("k") == ("old", False)

        clock.advance(20)
        assert await entries.get("k") is None
        assert await entries.get_stale("k") == ("old", True)

        clock.advance(40)
        assert await entries.get_stale("k") is None

    @pytest.mark.asyncio
    async def test_without_stale_window_entry_is_dropped_at_ttl(self, entries, clock):
        await entries.set("k", "v", ttl_seconds=10)

        clock.advance(10)
        assert await entries.get_stale("k") is None

    @pytest.mark.asyncio
    async def test_get_updates_last_access(self, entries, clock):
        await entries.set("k", "v", ttl_seconds=60)
        clock.advance(5)

        await entries.get("k")

        entry = await entries.get_entry("k")
        assert entry.access_count == 1
        assert entry.last_accessed_at == int(clock() * 1000)

    @pytest.mark.asyncio
    async def test_delete_reports_existence(self, entries):
        await entries.set("k", "v", ttl_seconds=60, tags=["t"])

        assert await entries.delete("k") is True
        assert await entries.delete("k") is False
        assert await entries.store.keys_for_tag("t") == set()

    @pytest.mark.asyncio
    async def test_lookups_are_counted(self, entries):
        await entries.set("k", "v", ttl_seconds=60)

        await entries.get("k")
        await entries.get("missing")

        assert await entries.store.lookup_counts() == (1, 1)

    @pytest.mark.asyncio
    async def test_invalidate_pattern(self, entries):
        await entries.set("teams:1", "a", ttl_seconds=60)
        await entries.set("teams:2", "b", ttl_seconds=60)
        await entries.set("reports:1", "c", ttl_seconds=60)

        assert await entries.invalidate_pattern("teams:*") == 2
        assert await entries.get("teams:1") is None
        assert await entries.get("reports:1") == "c"

    @pytest.mark.asyncio
    async def test_purge_expired_cleans_index(self, entries, clock):
        await entries.set("k1", "v", ttl_seconds=10, tags=["t"])
        await entries.set("k2", "v", ttl_seconds=100, tags=["t"])

        clock.advance(20)

        assert await entries.purge_expired() == 1
        assert await entries.keys() == ["k2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ttl", [0, -1])
    async def test_non_positive_ttl_rejected(self, entries, ttl):
        with pytest.raises(InvalidConfigurationException):
            await entries.set("k", "v", ttl_seconds=ttl)

    @pytest.mark.asyncio
    async def test_invalid_key_and_value_rejected(self, entries):
        with pytest.raises(InvalidConfigurationException):
            await entries.set("has space", "v", ttl_seconds=10)

        with pytest.raises(InvalidConfigurationException):
            await entries.set("k", object(), ttl_seconds=10)


class TestCacheKey:
    """Test cases for CacheKey."""

    def test_build_joins_prefix_and_identifier(self):
        assert str(CacheKey.build(CachePrefix.RESEARCH_PROJECTS, 42)) == "research_projects:42"
        assert str(CacheKey.build("custom", "a")) == "custom:a"

    @pytest.mark.parametrize("value", ["", "has space", "k" * 251])
    def test_invalid_keys_rejected(self, value):
        with pytest.raises(ValueError):
            CacheKey(value)

    @pytest.mark.asyncio
    async def test_built_keys_work_with_pattern_invalidation(self, entries):
        for member in ("ada", "grace"):
            key = CacheKey.build(CachePrefix.TEAM_MEMBERS, member)
            await entries.set(str(key), member, ttl_seconds=60)

        assert await entries.invalidate_pattern(f"{CachePrefix.TEAM_MEMBERS.value}:*") == 2
