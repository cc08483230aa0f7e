"""
Refresh Coordinator Tests

Read-through, stale-while-revalidate, single-flight fetching and warmup.
"""

import asyncio

import pytest

from research_cache.domain.cache.entities import WarmupEntry
from research_cache.domain.cache.exceptions import (
    FetchFailedException,
    FetchTimeoutException,
)
from research_cache.domain.cache.value_objects import CacheStrategy, CacheWriteOptions
from research_cache.infrastructure.stores.exceptions import BackingStoreUnavailableException
from research_cache.infrastructure.stores.memory_store import InMemoryStore
from research_cache.services.cache.entry_store import EntryStore
from research_cache.services.cache.refresh import RefreshCoordinator


class CountingFetch:
    """Fetch function that counts calls and can be held open."""

    def __init__(self, values=None, gate: asyncio.Event = None, error: Exception = None):
        self.values = list(values or ["fresh"])
        self.gate = gate
        self.error = error
        self.calls = 0
        self.started = asyncio.Event()

    async def __call__(self):
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.values[min(self.calls, len(self.values)) - 1]


@pytest.fixture
def entries(memory_store, clock):
    return EntryStore(memory_store, clock=clock)


@pytest.fixture
def coordinator(entries, clock):
    return RefreshCoordinator(
        entries,
        clock=clock,
        default_ttl_seconds=10,
        stale_window_seconds=60,
        fetch_timeout_seconds=5.0,
    )


OPTIONS = CacheWriteOptions(ttl_seconds=10, tags=["projects"])


class TestReadThrough:
    """Test cases for RefreshCoordinator.read_through."""

    @pytest.mark.asyncio
    async def test_fresh_entry_returned_without_fetch(self, coordinator, entries):
        await entries.set("k", "cached", ttl_seconds=10)
        fetch = CountingFetch()

        assert await coordinator.read_through("k", fetch, OPTIONS) == "cached"
        assert fetch.calls == 0

    @pytest.mark.asyncio
    async def test_cold_read_fetches_and_stores(self, coordinator, entries):
        fetch = CountingFetch(values=[{"id": 7}])

        assert await coordinator.read_through("k", fetch, OPTIONS) == {"id": 7}
        assert fetch.calls == 1
        assert await entries.get("k") == {"id": 7}
        assert await entries.store.keys_for_tag("projects") == {"k"}

    @pytest.mark.asyncio
    async def test_concurrent_stale_reads_share_one_refresh(self, coordinator, entries, clock):
        await entries.set("k", "old", ttl_seconds=10, stale_ttl_seconds=60)
        clock.advance(15)
        gate = asyncio.Event()
        fetch = CountingFetch(values=["new"], gate=gate)

        results = await asyncio.gather(
            *(coordinator.read_through("k", fetch, OPTIONS) for _ in range(20))
        )

        assert results == ["old"] * 20
        assert coordinator.is_refreshing("k") is True
        await fetch.started.wait()
        assert fetch.calls == 1

        gate.set()
        await coordinator.drain()

        assert fetch.calls == 1
        assert coordinator.is_refreshing("k") is False
        assert await entries.get("k") == "new"

    @pytest.mark.asyncio
    async def test_concurrent_cold_reads_share_one_fetch(self, coordinator):
        gate = asyncio.Event()
        fetch = CountingFetch(values=["value"], gate=gate)

        readers = [
            asyncio.ensure_future(coordinator.read_through("k", fetch, OPTIONS))
            for _ in range(10)
        ]
        await fetch.started.wait()
        assert coordinator.in_flight_keys() == ["k"]
        gate.set()

        assert await asyncio.gather(*readers) == ["value"] * 10
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_stale_value(self, coordinator, entries, clock):
        await entries.set("k", "old", ttl_seconds=10, stale_ttl_seconds=60)
        clock.advance(15)
        failing = CountingFetch(error=RuntimeError("upstream down"))

        assert await coordinator.read_through("k", failing, OPTIONS) == "old"
        await coordinator.drain()

        assert await entries.get_stale("k") == ("old", True)

        # Next read retries
        retry = CountingFetch(values=["new"])
        assert await coordinator.read_through("k", retry, OPTIONS) == "old"
        await coordinator.drain()
        assert retry.calls == 1
        assert await entries.get("k") == "new"

    @pytest.mark.asyncio
    async def test_cold_fetch_failure_propagates(self, coordinator, entries):
        failing = CountingFetch(error=ValueError("bad response"))

        with pytest.raises(FetchFailedException) as exc_info:
            await coordinator.read_through("k", failing, OPTIONS)

        assert exc_info.value.key == "k"
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert await entries.get_stale("k") is None

    @pytest.mark.asyncio
    async def test_cache_aside_treats_stale_as_miss(self, coordinator, entries, clock):
        await entries.set("k", "old", ttl_seconds=10, stale_ttl_seconds=60)
        clock.advance(15)
        fetch = CountingFetch(values=["new"])
        options = CacheWriteOptions(ttl_seconds=10, strategy=CacheStrategy.CACHE_ASIDE)

        assert await coordinator.read_through("k", fetch, options) == "new"
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_cache_aside_writes_have_no_stale_window(self, coordinator, entries, clock):
        options = CacheWriteOptions(ttl_seconds=10, strategy=CacheStrategy.CACHE_ASIDE)
        await coordinator.read_through("k", CountingFetch(), options)

        clock.advance(10)
        assert await entries.get_stale("k") is None


class TestTimeoutsAndCancellation:
    """Fetches outlive callers that stop waiting."""

    @pytest.mark.asyncio
    async def test_timeout_fails_read_but_populates_cache(self, coordinator, entries):
        gate = asyncio.Event()
        fetch = CountingFetch(values=["late"], gate=gate)

        with pytest.raises(FetchTimeoutException):
            await coordinator.read_through("k", fetch, OPTIONS, timeout=0.05)

        assert coordinator.is_refreshing("k") is True
        gate.set()
        await coordinator.drain()

        assert await entries.get("k") == "late"

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_fetch(self, coordinator, entries):
        gate = asyncio.Event()
        fetch = CountingFetch(values=["kept"], gate=gate)

        caller = asyncio.ensure_future(coordinator.read_through("k", fetch, OPTIONS))
        await fetch.started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        gate.set()
        await coordinator.drain()

        assert await entries.get("k") == "kept"
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_drain_cancels_fetches_past_timeout(self, coordinator):
        fetch = CountingFetch(gate=asyncio.Event())
        options = CacheWriteOptions(ttl_seconds=10)
        coordinator._spawn("k", fetch, options, "background")
        await fetch.started.wait()

        await coordinator.drain(timeout=0.01)

        assert coordinator.in_flight_keys() == []


class TestStoreFailures:
    """Backing store failures are invisible to readers."""

    @pytest.mark.asyncio
    async def test_read_through_bypasses_failed_store(self, clock, monkeypatch):
        store = InMemoryStore(clock=clock)

        async def unavailable(*args, **kwargs):
            raise BackingStoreUnavailableException(backend="redis", operation="read_entry")

        monkeypatch.setattr(store, "read_entry", unavailable)
        coordinator = RefreshCoordinator(EntryStore(store, clock=clock), clock=clock)
        fetch = CountingFetch(values=["direct"])

        assert await coordinator.read_through("k", fetch, OPTIONS) == "direct"
        assert fetch.calls == 1


class TestWarmup:
    """Test cases for RefreshCoordinator.warmup."""

    @pytest.mark.asyncio
    async def test_failures_do_not_abort_batch(self, coordinator, entries):
        warm = [
            WarmupEntry(key=f"teams:{i}", fetch=CountingFetch(values=[i]), tags=["teams"])
            for i in range(7)
        ]
        warm[2] = WarmupEntry(key="teams:2", fetch=CountingFetch(error=RuntimeError("boom")))

        result = await coordinator.warmup(warm)

        assert result.total == 7
        assert result.failed == ["teams:2"]
        assert len(result.stored) == 6
        assert result.succeeded is False
        assert await entries.get("teams:6") == 6
        assert await entries.get("teams:2") is None

    @pytest.mark.asyncio
    async def test_skip_existing(self, coordinator, entries):
        await entries.set("teams:1", "cached", ttl_seconds=10)
        fetch = CountingFetch(values=["new"])

        result = await coordinator.warmup(
            [WarmupEntry(key="teams:1", fetch=fetch)], skip_existing=True
        )

        assert result.skipped == ["teams:1"]
        assert fetch.calls == 0
        assert await entries.get("teams:1") == "cached"

    @pytest.mark.asyncio
    async def test_runs_in_batches(self, coordinator):
        running = 0
        peak = 0

        async def fetch():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return "v"

        result = await coordinator.warmup(
            [WarmupEntry(key=f"k{i}", fetch=fetch) for i in range(12)]
        )

        assert len(result.stored) == 12
        assert peak == 5

    @pytest.mark.asyncio
    async def test_entry_ttl_defaults_to_coordinator_ttl(self, coordinator, entries, clock):
        await coordinator.warmup([WarmupEntry(key="k", fetch=CountingFetch())])

        clock.advance(9)
        assert await entries.get("k") == "fresh"
        clock.advance(1)
        assert await entries.get("k") is None
