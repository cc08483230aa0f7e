"""
Cache Admin Service

Operator-facing cache operations: statistics, clear, tag invalidation, LRU
purge and category warmup. Every operation reports success or a stats
object; failures are logged and reported, never raised.
"""

import inspect
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from ...domain.cache.entities import WarmupEntry
from ...domain.cache.exceptions import CacheException
from ...domain.cache.value_objects import CacheStats
from ...monitoring.cache_metrics import cache_metrics
from .cache_service import CacheService

logger = logging.getLogger(__name__)

WarmupProvider = Callable[[], Union[List[WarmupEntry], Awaitable[List[WarmupEntry]]]]


class CacheAdminService:
    """Administrative operations over a cache service."""

    def __init__(self, cache: CacheService):
        self.cache = cache
        self._warmup_providers: Dict[str, WarmupProvider] = {}

    def register_warmup(self, category: str, provider: WarmupProvider) -> None:
        """Register the entries to pre-populate for a warmup category."""
        self._warmup_providers[category] = provider
        logger.debug(f"Registered cache warmup provider for {category}")

    @property
    def warmup_categories(self) -> List[str]:
        return sorted(self._warmup_providers)

    async def get_stats(self) -> CacheStats:
        """Aggregate entry count, size, hit rate, access counts and tag counts."""
        store = self.cache.store
        try:
            total_entries, total_bytes = await store.usage()
            hits, misses = await store.lookup_counts()
            access_counts = await store.access_counts()
            tag_stats = await store.tag_counts()
        except CacheException as e:
            logger.error(f"Error getting cache stats: {e}")
            return CacheStats(backend=store.name, error=e.message)

        lookups = hits + misses
        stats = CacheStats(
            backend=store.name,
            total_entries=total_entries,
            total_size_bytes=total_bytes,
            hits=hits,
            misses=misses,
            hit_rate=hits / lookups if lookups else 0.0,
            avg_access_count=(
                sum(access_counts.values()) / len(access_counts) if access_counts else 0.0
            ),
            tag_stats=tag_stats,
            refreshes_in_flight=len(self.cache.refresh.in_flight_keys()),
        )
        cache_metrics.entries.set(total_entries)
        cache_metrics.size_bytes.set(total_bytes)
        return stats

    async def clear_all(self) -> bool:
        try:
            removed = await self.cache.clear()
        except CacheException as e:
            logger.error(f"Error clearing cache: {e}")
            return False
        logger.info(f"Cache cleared, {removed} entries removed")
        return True

    async def invalidate_by_tags(self, tags: Iterable[str]) -> bool:
        tags = list(tags)
        try:
            await self.cache.tags.invalidate_by_tags(tags)
        except (CacheException, ValueError) as e:
            logger.error(f"Error invalidating cache tags {tags}: {e}")
            return False
        return True

    async def purge_lru(
        self,
        target_entries: Optional[int] = None,
        target_bytes: Optional[int] = None,
        fraction: Optional[float] = None,
    ) -> bool:
        """
        Evict least recently used entries.

        Either explicit targets or ``fraction`` of the current entries to
        drop (default 0.2 when nothing is given).
        """
        try:
            if target_entries is None and target_bytes is None:
                fraction = 0.2 if fraction is None else fraction
                if not 0 < fraction <= 1:
                    logger.error(f"Invalid LRU purge fraction: {fraction}")
                    return False
                entries, _ = await self.cache.store.usage()
                target_entries = entries - max(1, int(entries * fraction)) if entries else 0
            await self.cache.eviction.evict_until(
                target_bytes=target_bytes, target_entries=target_entries
            )
        except CacheException as e:
            logger.error(f"Error purging LRU cache entries: {e}")
            return False
        return True

    async def warmup_category(self, category: str, skip_existing: bool = False) -> bool:
        """Run the registered warmup for ``category``; entries get the category tag."""
        provider = self._warmup_providers.get(category)
        if provider is None:
            logger.error(f"Unknown cache warmup category: {category}")
            return False

        try:
            entries = provider()
            if inspect.isawaitable(entries):
                entries = await entries
        except Exception as e:
            logger.error(f"Error building warmup entries for {category}: {e}")
            return False

        for entry in entries:
            if category not in entry.tags:
                entry.tags = list(entry.tags) + [category]

        result = await self.cache.warmup(entries, skip_existing=skip_existing)
        if not result.succeeded:
            logger.warning(
                f"Cache warmup for {category} had failures",
                extra={"failed": result.failed},
            )
        return result.succeeded
