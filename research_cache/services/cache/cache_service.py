"""
Cache Service

High-level cache service that composes the backing store, entry store, tag
index, LRU policy, refresh coordinator and rate limiter behind one object
with an explicit lifecycle: ``init`` on process start, ``flush_and_close``
on shutdown.

Backing store failures never reach callers: reads degrade to a miss (or a
direct fetch for read-through) and writes report ``False``.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from ...core.config import Settings, get_settings
from ...domain.cache.entities import WarmupEntry, WarmupResult
from ...domain.cache.exceptions import InvalidConfigurationException
from ...domain.cache.repository_interfaces import BackingStore
from ...domain.cache.value_objects import CacheStrategy, CacheWriteOptions
from ...infrastructure.stores.exceptions import StoreException
from ...infrastructure.stores.factory import create_backing_store
from ...monitoring.cache_metrics import cache_metrics
from ..rate_limiting.rate_limiter import RateLimiter
from .entry_store import EntryStore
from .eviction import LruEvictionPolicy
from .refresh import RefreshCoordinator
from .tag_index import TagIndex

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class CacheService:
    """
    Tagged, expiring cache with stale-while-revalidate and LRU eviction.

    Provides a unified interface for cache reads and writes, tag and pattern
    invalidation, warmup and request rate limiting over one backing store.
    """

    def __init__(
        self,
        store: BackingStore,
        clock: Callable[[], float] = time.time,
        max_entries: Optional[int] = None,
        max_bytes: Optional[int] = None,
        default_ttl_seconds: float = 300,
        stale_window_seconds: float = 300,
        fetch_timeout_seconds: Optional[float] = 30.0,
        refresh_lease_ms: int = 30000,
        sweep_interval_seconds: float = 0,
    ):
        if default_ttl_seconds <= 0:
            raise InvalidConfigurationException(
                "default_ttl_seconds must be positive",
                option="default_ttl_seconds",
                value=default_ttl_seconds,
            )
        if stale_window_seconds < 0:
            raise InvalidConfigurationException(
                "stale_window_seconds cannot be negative",
                option="stale_window_seconds",
                value=stale_window_seconds,
            )

        self.store = store
        self.default_ttl_seconds = default_ttl_seconds
        self.stale_window_seconds = stale_window_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock

        self.eviction = LruEvictionPolicy(store, max_entries=max_entries, max_bytes=max_bytes)
        self.entries = EntryStore(store, clock=clock, eviction=self.eviction)
        self.tags = TagIndex(self.entries)
        self.refresh = RefreshCoordinator(
            self.entries,
            clock=clock,
            default_ttl_seconds=default_ttl_seconds,
            stale_window_seconds=stale_window_seconds,
            fetch_timeout_seconds=fetch_timeout_seconds,
            lease_ms=refresh_lease_ms,
        )
        self.rate_limiter = RateLimiter(store, clock=clock)

        self._background: Set["asyncio.Task[Any]"] = set()
        self._sweeper: Optional["asyncio.Task[None]"] = None
        self._initialized = False

    @classmethod
    async def from_settings(
        cls, settings: Optional[Settings] = None, clock: Callable[[], float] = time.time
    ) -> "CacheService":
        """Select the backing store and build a service from configuration."""
        settings = settings or get_settings()
        store = await create_backing_store(settings, clock=clock)
        return cls(
            store,
            clock=clock,
            max_entries=settings.CACHE_MAX_ENTRIES or None,
            max_bytes=settings.CACHE_MAX_BYTES or None,
            default_ttl_seconds=settings.CACHE_DEFAULT_TTL_SECONDS,
            stale_window_seconds=settings.CACHE_STALE_WINDOW_SECONDS,
            fetch_timeout_seconds=settings.CACHE_FETCH_TIMEOUT_SECONDS,
            refresh_lease_ms=settings.CACHE_REFRESH_LEASE_MS,
            sweep_interval_seconds=settings.CACHE_SWEEP_INTERVAL_SECONDS,
        )

    # Lifecycle

    async def init(self) -> None:
        """Start background maintenance. Safe to call more than once."""
        if self._initialized:
            return
        if self.sweep_interval_seconds and self.sweep_interval_seconds > 0:
            self._sweeper = asyncio.ensure_future(self._sweep_loop())
        self._initialized = True
        logger.info(
            "Cache service initialized",
            extra={"backend": self.store.name, "shared": self.store.shared},
        )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.entries.purge_expired()
            except StoreException as e:
                logger.warning(f"Expired entry sweep failed: {e}")

    async def flush_and_close(self, timeout: float = 5.0) -> None:
        """Finish pending writes and refreshes, then release the store."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None

        await self.refresh.drain(timeout=timeout)
        if self._background:
            await asyncio.wait(set(self._background), timeout=timeout)

        await self.store.close()
        self._initialized = False
        logger.info("Cache service closed")

    @property
    def backend(self) -> str:
        return self.store.name

    def _write_options(
        self,
        ttl_seconds: Optional[float],
        tags: Optional[Iterable[str]],
        strategy: CacheStrategy = CacheStrategy.STALE_WHILE_REVALIDATE,
    ) -> CacheWriteOptions:
        return CacheWriteOptions(
            ttl_seconds=self.default_ttl_seconds if ttl_seconds is None else ttl_seconds,
            tags=list(tags or []),
            strategy=strategy,
        )

    # Entry operations

    async def get(self, key: str) -> Optional[Any]:
        """Cached value if fresh, otherwise None."""
        try:
            return await self.entries.get(key)
        except StoreException as e:
            cache_metrics.store_errors_total.labels(operation="get").inc()
            logger.error(f"Failed to get cache entry {key}: {e}")
            return None

    async def get_stale(self, key: str):
        """(value, is_stale) for a retained entry, otherwise None."""
        try:
            return await self.entries.get_stale(key)
        except StoreException as e:
            cache_metrics.store_errors_total.labels(operation="get_stale").inc()
            logger.error(f"Failed to get stale cache entry {key}: {e}")
            return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        strategy: CacheStrategy = CacheStrategy.STALE_WHILE_REVALIDATE,
    ) -> bool:
        """
        Store a value under ``key``.

        Raises:
            InvalidConfigurationException: On invalid TTL, key, tags or value
        """
        options = self._write_options(ttl_seconds, tags, strategy)
        stale_window = (
            self.stale_window_seconds
            if options.strategy == CacheStrategy.STALE_WHILE_REVALIDATE
            else 0
        )
        with tracer.start_as_current_span("cache_service.set") as span:
            span.set_attribute("cache.key", key)
            try:
                await self.entries.set(
                    key,
                    value,
                    options.ttl_seconds,
                    options.tags,
                    stale_ttl_seconds=stale_window,
                )
                return True
            except StoreException as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                cache_metrics.store_errors_total.labels(operation="set").inc()
                logger.error(f"Failed to set cache entry {key}: {e}")
                return False

    async def delete(self, key: str) -> bool:
        try:
            return await self.entries.delete(key)
        except StoreException as e:
            cache_metrics.store_errors_total.labels(operation="delete").inc()
            logger.error(f"Failed to delete cache entry {key}: {e}")
            return False

    async def read_through(
        self,
        key: str,
        fetch: Callable[[], Awaitable[Any]],
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
        strategy: CacheStrategy = CacheStrategy.STALE_WHILE_REVALIDATE,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Get a value, fetching and caching it on a miss.

        Raises:
            FetchFailedException: If a cold fetch fails or times out
        """
        options = self._write_options(ttl_seconds, tags, strategy)
        return await self.refresh.read_through(key, fetch, options, timeout=timeout)

    async def warmup(
        self, entries: List[WarmupEntry], skip_existing: bool = False
    ) -> WarmupResult:
        return await self.refresh.warmup(entries, skip_existing=skip_existing)

    def is_refreshing(self, key: str) -> bool:
        return self.refresh.is_refreshing(key)

    # Invalidation

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Remove entries carrying any of ``tags``. Returns distinct keys removed."""
        try:
            return await self.tags.invalidate_by_tags(tags)
        except StoreException as e:
            cache_metrics.store_errors_total.labels(operation="invalidate_by_tags").inc()
            logger.error(f"Failed to invalidate cache tags {list(tags)}: {e}")
            return 0

    async def invalidate_pattern(self, pattern: str) -> int:
        try:
            return await self.entries.invalidate_pattern(pattern)
        except StoreException as e:
            cache_metrics.store_errors_total.labels(operation="invalidate_pattern").inc()
            logger.error(f"Failed to invalidate cache pattern {pattern}: {e}")
            return 0

    async def clear(self) -> int:
        return await self.entries.clear()

    # Write strategies

    async def set_with_write_through(
        self,
        key: str,
        value: Any,
        write: Callable[[Any], Awaitable[None]],
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """Persist through ``write`` first, then cache. False if either step fails."""
        try:
            await write(value)
        except Exception as e:
            logger.error(f"Write-through persistence failed for {key}: {e}")
            return False
        return await self.set(key, value, ttl_seconds, tags)

    async def set_with_write_behind(
        self,
        key: str,
        value: Any,
        write: Callable[[Any], Awaitable[None]],
        ttl_seconds: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> bool:
        """Cache immediately and persist through ``write`` in a tracked task."""
        if not await self.set(key, value, ttl_seconds, tags):
            return False

        async def _persist() -> None:
            try:
                await write(value)
            except Exception as e:
                logger.error(f"Write-behind persistence failed for {key}: {e}")

        task = asyncio.ensure_future(_persist())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return True

    # Introspection

    async def health_check(self) -> Dict[str, Any]:
        """Backend reachability and refresh state."""
        healthy = await self.store.ping()
        return {
            "status": "healthy" if healthy else "degraded",
            "backend": self.store.name,
            "shared": self.store.shared,
            "refreshes_in_flight": len(self.refresh.in_flight_keys()),
        }
