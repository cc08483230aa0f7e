"""
Redis Store Tests

Behaviour specific to the shared Redis-backed store: refresh leases across
processes, physical expiry, error translation, circuit breaking and startup
fallback. Physical expiry runs on Redis time, not on the injected clock.
"""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from research_cache.core.config import Settings
from research_cache.domain.cache.entities import WarmupEntry
from research_cache.domain.cache.value_objects import CacheStrategy, CacheWriteOptions
from research_cache.infrastructure.stores.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitState,
    StoreCircuitBreaker,
)
from research_cache.infrastructure.stores.exceptions import (
    BackingStoreUnavailableException,
    StoreCircuitOpenException,
)
from research_cache.infrastructure.stores.factory import create_backing_store
from research_cache.infrastructure.stores.memory_store import InMemoryStore
from research_cache.services.cache.entry_store import EntryStore
from research_cache.services.cache.eviction import LruEvictionPolicy
from research_cache.services.cache.refresh import RefreshCoordinator


class TestRemoteRefreshLease:
    """At most one refresh per key across processes sharing Redis."""

    @pytest.mark.asyncio
    async def test_background_refresh_skipped_while_peer_holds_lease(self, redis_store, clock):
        entries = EntryStore(redis_store, clock=clock)
        coordinator = RefreshCoordinator(entries, clock=clock, stale_window_seconds=60)
        await entries.set("k", "old", ttl_seconds=10, stale_ttl_seconds=60)
        clock.advance(15)
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return "new"

        assert await redis_store.acquire_lease("k", "other-process", 30000) is True

        assert await coordinator.read_through("k", fetch, CacheWriteOptions(ttl_seconds=10)) == "old"
        await coordinator.drain()

        assert calls == 0
        assert await entries.get_stale("k") == ("old", True)

    @pytest.mark.asyncio
    async def test_lease_released_after_refresh(self, redis_store, clock):
        entries = EntryStore(redis_store, clock=clock)
        coordinator = RefreshCoordinator(entries, clock=clock)

        async def fetch():
            return {"id": 1}

        assert await coordinator.read_through("k", fetch, CacheWriteOptions(ttl_seconds=10)) == {
            "id": 1
        }
        assert await redis_store.acquire_lease("k", "next", 1000) is True

    @pytest.mark.asyncio
    async def test_expired_logical_entry_still_served_stale(self, redis_store, clock):
        entries = EntryStore(redis_store, clock=clock)
        await entries.set("k", [1, 2, 3], ttl_seconds=10, stale_ttl_seconds=60)

        clock.advance(11)

        assert await entries.get("k") is None
        assert await entries.get_stale("k") == ([1, 2, 3], True)

    @pytest.mark.asyncio
    async def test_cold_read_fetches_after_skipped_background_refresh(self, redis_store, clock):
        entries = EntryStore(redis_store, clock=clock)
        coordinator = RefreshCoordinator(
            entries, clock=clock, stale_window_seconds=60, lease_ms=200
        )
        await entries.set("k", "old", ttl_seconds=10, stale_ttl_seconds=60)
        clock.advance(15)
        assert await redis_store.acquire_lease("k", "other-process", 30000) is True
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return "new"

        stale = await coordinator.read_through("k", fetch, CacheWriteOptions(ttl_seconds=10))
        cold = await coordinator.read_through(
            "k",
            fetch,
            CacheWriteOptions(ttl_seconds=10, strategy=CacheStrategy.CACHE_ASIDE),
            timeout=5,
        )

        assert stale == "old"
        assert cold == "new"
        assert calls == 1
        assert await entries.get("k") == "new"

    @pytest.mark.asyncio
    async def test_warmup_fetches_after_skipped_background_refresh(self, redis_store, clock):
        entries = EntryStore(redis_store, clock=clock)
        coordinator = RefreshCoordinator(
            entries, clock=clock, stale_window_seconds=60, lease_ms=200
        )
        await entries.set("k", "old", ttl_seconds=10, stale_ttl_seconds=60)
        clock.advance(15)
        assert await redis_store.acquire_lease("k", "other-process", 30000) is True

        async def fetch():
            return "warm"

        await coordinator.read_through("k", fetch, CacheWriteOptions(ttl_seconds=10))
        result = await coordinator.warmup([WarmupEntry(key="k", fetch=fetch, ttl_seconds=10)])

        assert result.stored == ["k"]
        assert await entries.get("k") == "warm"


class TestRemotePhysicalExpiry:
    """Entries dropped by Redis at the end of their retention leave no trace."""

    @pytest.mark.asyncio
    async def test_expired_payloads_not_counted(self, redis_store):
        await redis_store.write_entry("a", '"a"', retention_ms=50, tags=["t"], size_bytes=3)
        await redis_store.write_entry("b", '"bb"', retention_ms=100000, tags=["t"], size_bytes=4)
        await redis_store.touch("a")

        await asyncio.sleep(0.15)

        assert await redis_store.usage() == (1, 4)
        assert await redis_store.lru_keys(5) == ["b"]
        assert await redis_store.tag_counts() == {"t": 1}
        assert await redis_store.access_counts() == {"b": 0}

    @pytest.mark.asyncio
    async def test_capacity_ignores_expired_entries(self, redis_store, clock):
        eviction = LruEvictionPolicy(redis_store, max_entries=2)
        entries = EntryStore(redis_store, clock=clock, eviction=eviction)
        await entries.set("a", "short", ttl_seconds=0.05)
        await entries.set("b", "long", ttl_seconds=100)
        await entries.get("a")

        await asyncio.sleep(0.15)
        await entries.set("c", "new", ttl_seconds=100)

        assert await entries.get("b") == "long"
        assert await entries.get("c") == "new"
        assert await redis_store.usage() == (2, len('"long"') + len('"new"'))


class TestRemoteStoreErrors:
    """Redis failures become store exceptions."""

    @pytest.mark.asyncio
    async def test_connection_errors_translated(self, redis_store, monkeypatch):
        async def broken(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(redis_store._client, "exists", broken)

        with pytest.raises(BackingStoreUnavailableException) as exc_info:
            await redis_store.has_entry("k")

        assert exc_info.value.details["operation"] == "has_entry"
        assert await redis_store.ping() is True


class TestStoreCircuitBreaker:
    """Test cases for StoreCircuitBreaker."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_recovers(self, clock):
        breaker = StoreCircuitBreaker(
            CircuitBreakerConfig(failure_threshold=2, recovery_timeout=30.0),
            clock=clock,
        )

        async def failing():
            raise ConnectionError("down")

        async def working():
            return "ok"

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call(failing)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(StoreCircuitOpenException):
            await breaker.call(working)

        clock.advance(30)
        assert await breaker.call(working) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, clock):
        breaker = StoreCircuitBreaker(
            CircuitBreakerConfig(failure_threshold=1, recovery_timeout=5.0), clock=clock
        )

        async def failing():
            raise TimeoutError("slow")

        with pytest.raises(TimeoutError):
            await breaker.call(failing)
        clock.advance(5)
        with pytest.raises(TimeoutError):
            await breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        assert breaker.get_state()["circuit_opens"] == 2

    @pytest.mark.asyncio
    async def test_other_errors_do_not_count(self):
        breaker = StoreCircuitBreaker(CircuitBreakerConfig(failure_threshold=1))

        async def bad_value():
            raise ValueError("not a connectivity problem")

        with pytest.raises(ValueError):
            await breaker.call(bad_value)

        assert breaker.state == CircuitState.CLOSED


class TestBackingStoreFactory:
    """Startup selection of the backing store."""

    @pytest.mark.asyncio
    async def test_redis_disabled_uses_memory(self):
        store = await create_backing_store(Settings(REDIS_ENABLED=False))

        assert isinstance(store, InMemoryStore)

    @pytest.mark.asyncio
    async def test_unreachable_redis_falls_back_to_memory(self, caplog):
        settings = Settings(
            REDIS_ENABLED=True,
            REDIS_URL="redis://127.0.0.1:1/0",
            REDIS_CONNECT_ATTEMPTS=1,
            REDIS_CONNECTION_TIMEOUT=0.2,
            REDIS_OPERATION_TIMEOUT=0.2,
        )

        with caplog.at_level("WARNING"):
            store = await asyncio.wait_for(create_backing_store(settings), timeout=10)

        assert isinstance(store, InMemoryStore)
        assert "falling back to in-memory" in caplog.text
