"""
Refresh Coordinator

Read-through with stale-while-revalidate, single-flight fetching and warmup.

Every fetch runs as a background task tracked in a registry keyed by cache
key, so at most one fetch per key is in flight within a process. When the
backing store is shared, a short-lived lease in the store extends that
guarantee across processes. Callers wait on a shielded task: a caller that
times out or is cancelled leaves the fetch running, and its result still
populates the cache.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from ...constants import WARMUP_BATCH_SIZE, current_time_ms
from ...domain.cache.entities import WarmupEntry, WarmupResult
from ...domain.cache.exceptions import (
    CacheException,
    FetchFailedException,
    FetchTimeoutException,
)
from ...domain.cache.value_objects import CacheStrategy, CacheWriteOptions
from ...infrastructure.stores.exceptions import StoreException
from ...monitoring.cache_metrics import cache_metrics
from .entry_store import EntryStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Fetch = Callable[[], Awaitable[Any]]

# Poll interval while another process holds the refresh lease
LEASE_POLL_INTERVAL = 0.05

# Result of a background refresh that left the fetch to another process
_SKIPPED = object()


class RefreshCoordinator:
    """Stale-while-revalidate read-through with at most one fetch per key."""

    def __init__(
        self,
        entries: EntryStore,
        clock: Callable[[], float] = time.time,
        default_ttl_seconds: float = 300,
        stale_window_seconds: float = 300,
        fetch_timeout_seconds: Optional[float] = 30.0,
        lease_ms: int = 30000,
    ):
        self.entries = entries
        self.store = entries.store
        self.default_ttl_seconds = default_ttl_seconds
        self.stale_window_seconds = stale_window_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.lease_ms = lease_ms
        self._clock = clock
        self._tasks: Dict[str, "asyncio.Task[Any]"] = {}

    # Registry

    def is_refreshing(self, key: str) -> bool:
        """Whether a fetch for ``key`` is in flight in this process."""
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def in_flight_keys(self) -> List[str]:
        return [key for key, task in self._tasks.items() if not task.done()]

    def _spawn(self, key: str, fetch: Fetch, options: CacheWriteOptions, mode: str):
        """Start a fetch for ``key`` or attach to the one already running."""
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return task

        task = asyncio.ensure_future(self._run(key, fetch, options, mode))
        self._tasks[key] = task
        cache_metrics.refreshes_in_flight.set(len(self._tasks))

        def _finished(done: "asyncio.Task[Any]") -> None:
            if self._tasks.get(key) is done:
                del self._tasks[key]
            cache_metrics.refreshes_in_flight.set(len(self._tasks))
            if done.cancelled():
                return
            error = done.exception()
            if error is not None and mode == "background":
                logger.warning(
                    f"Background refresh failed for {key}, keeping stale value: {error}"
                )

        task.add_done_callback(_finished)
        return task

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight fetches; cancel whatever outlives ``timeout``."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} unfinished cache refreshes")

    # Fetch execution

    async def _wait_for_peer(self, key: str) -> Optional[Any]:
        """Poll the cache while another process holds the lease for ``key``."""
        deadline = time.monotonic() + self.lease_ms / 1000
        while time.monotonic() < deadline:
            entry = await self.entries.get_entry(key)
            if entry is not None and not entry.is_expired(current_time_ms(self._clock)):
                return entry
            await asyncio.sleep(LEASE_POLL_INTERVAL)
        return None

    async def _run(self, key: str, fetch: Fetch, options: CacheWriteOptions, mode: str):
        token = uuid.uuid4().hex
        leased = False
        if self.store.shared:
            try:
                leased = await self.store.acquire_lease(key, token, self.lease_ms)
                if not leased:
                    if mode == "background":
                        logger.debug(f"Refresh for {key} already running elsewhere")
                        return _SKIPPED
                    entry = await self._wait_for_peer(key)
                    if entry is not None:
                        return entry.value
            except StoreException as e:
                logger.warning(f"Refresh lease unavailable for {key}: {e}")

        try:
            with tracer.start_as_current_span("refresh_coordinator.fetch") as span:
                span.set_attribute("cache.key", key)
                span.set_attribute("cache.refresh_mode", mode)
                started = time.monotonic()
                try:
                    value = await fetch()
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    cache_metrics.refreshes_total.labels(mode=mode, result="failure").inc()
                    raise FetchFailedException(key, original_error=e) from e
                finally:
                    cache_metrics.fetch_duration_seconds.observe(time.monotonic() - started)

                cache_metrics.refreshes_total.labels(mode=mode, result="success").inc()
                stale_window = (
                    self.stale_window_seconds
                    if options.strategy == CacheStrategy.STALE_WHILE_REVALIDATE
                    else 0
                )
                try:
                    await self.entries.set(
                        key,
                        value,
                        options.ttl_seconds,
                        options.tags,
                        stale_ttl_seconds=stale_window,
                    )
                except StoreException as e:
                    cache_metrics.store_errors_total.labels(operation="populate").inc()
                    logger.warning(f"Could not cache fetched value for {key}: {e}")
                return value
        finally:
            if leased:
                try:
                    await self.store.release_lease(key, token)
                except StoreException as e:
                    logger.warning(f"Could not release refresh lease for {key}: {e}")

    async def _join(self, key: str, fetch: Fetch, options: CacheWriteOptions, mode: str) -> Any:
        """Wait for the fetch of ``key``, starting one if none is in flight.

        A background refresh skipped because another process holds the lease
        fetched nothing, so the caller starts its own fetch after it.
        """
        while True:
            task = self._spawn(key, fetch, options, mode)
            result = await asyncio.shield(task)
            if result is not _SKIPPED:
                return result

    async def _await_fetch(
        self, key: str, fetch: Fetch, options: CacheWriteOptions, timeout: Optional[float]
    ) -> Any:
        try:
            return await asyncio.wait_for(self._join(key, fetch, options, "cold"), timeout)
        except asyncio.TimeoutError:
            cache_metrics.refreshes_total.labels(mode="cold", result="timeout").inc()
            raise FetchTimeoutException(key, timeout) from None

    async def _fetch_uncached(self, key: str, fetch: Fetch, timeout: Optional[float]) -> Any:
        try:
            return await asyncio.wait_for(fetch(), timeout)
        except asyncio.TimeoutError:
            raise FetchTimeoutException(key, timeout) from None
        except Exception as e:
            raise FetchFailedException(key, original_error=e) from e

    # Public operations

    async def read_through(
        self,
        key: str,
        fetch: Fetch,
        options: Optional[CacheWriteOptions] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Return the cached value for ``key``, fetching it when needed.

        A fresh entry is returned without fetching. A stale entry is returned
        immediately while one background refresh runs (stale-while-revalidate
        only; cache-aside treats it as a miss). A cold key waits for the
        shared fetch, bounded by ``timeout``.

        Raises:
            FetchFailedException: If a cold fetch fails.
            FetchTimeoutException: If a cold fetch outlives ``timeout``.
        """
        options = options or CacheWriteOptions(ttl_seconds=self.default_ttl_seconds)
        timeout = self.fetch_timeout_seconds if timeout is None else timeout

        with tracer.start_as_current_span("refresh_coordinator.read_through") as span:
            span.set_attribute("cache.key", key)
            try:
                cached = await self.entries.get_stale(key)
            except StoreException as e:
                cache_metrics.store_errors_total.labels(operation="read_through").inc()
                logger.warning(f"Cache bypassed for {key}, backing store failed: {e}")
                span.set_attribute("cache.outcome", "bypass")
                return await self._fetch_uncached(key, fetch, timeout)

            if cached is not None:
                value, is_stale = cached
                if not is_stale:
                    span.set_attribute("cache.outcome", "hit")
                    await self._record(True)
                    return value
                if options.strategy == CacheStrategy.STALE_WHILE_REVALIDATE:
                    span.set_attribute("cache.outcome", "stale")
                    cache_metrics.lookups_total.labels(outcome="stale").inc()
                    await self._record(True, count_metric=False)
                    self._spawn(key, fetch, options, "background")
                    return value

            span.set_attribute("cache.outcome", "miss")
            await self._record(False)
            return await self._await_fetch(key, fetch, options, timeout)

    async def _record(self, hit: bool, count_metric: bool = True) -> None:
        try:
            if count_metric:
                await self.entries.record_lookup(hit)
            else:
                await self.store.record_lookup(hit)
        except StoreException as e:
            logger.debug(f"Could not record cache lookup: {e}")

    async def warmup(
        self,
        entries: List[WarmupEntry],
        skip_existing: bool = False,
        batch_size: int = WARMUP_BATCH_SIZE,
    ) -> WarmupResult:
        """
        Pre-populate the cache in concurrent batches.

        A failing entry is logged and skipped; the rest of the batch and
        later batches still run.
        """
        result = WarmupResult(total=len(entries))
        with tracer.start_as_current_span("refresh_coordinator.warmup") as span:
            span.set_attribute("cache.warmup.total", len(entries))
            for start in range(0, len(entries), max(1, batch_size)):
                batch = entries[start : start + max(1, batch_size)]
                outcomes = await asyncio.gather(
                    *(self._warm_one(entry, skip_existing) for entry in batch)
                )
                for entry, outcome in zip(batch, outcomes):
                    getattr(result, outcome).append(entry.key)
                    cache_metrics.warmup_entries_total.labels(result=outcome).inc()

            span.set_attribute("cache.warmup.failed", len(result.failed))
            logger.info(
                f"Cache warmup finished: {len(result.stored)} stored, "
                f"{len(result.skipped)} skipped, {len(result.failed)} failed"
            )
        return result

    async def _warm_one(self, entry: WarmupEntry, skip_existing: bool) -> str:
        try:
            options = CacheWriteOptions(
                ttl_seconds=entry.ttl_seconds or self.default_ttl_seconds,
                tags=list(entry.tags),
            )
            if skip_existing and await self.entries.has_fresh(entry.key):
                return "skipped"
            await self._join(entry.key, entry.fetch, options, "warmup")
            return "stored"
        except (CacheException, ValueError) as e:
            logger.warning(f"Cache warmup failed for {entry.key}: {e}")
            return "failed"
