"""
LRU Eviction Policy

Evicts least recently used entries when the cache exceeds its entry-count
or byte budget. Recency is kept by the backing store: every read and write
moves a key to the most recent end. Keys with equal access time leave in
insertion order.
"""

import logging
from typing import Iterable, List, Optional

from ...domain.cache.exceptions import InvalidConfigurationException
from ...domain.cache.repository_interfaces import BackingStore
from ...monitoring.cache_metrics import cache_metrics

logger = logging.getLogger(__name__)


def _validate_capacity(name: str, value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    if value < 0 or (value == 0 and name == "max_entries"):
        raise InvalidConfigurationException(
            f"{name} must be positive", option=name, value=value
        )
    return value


class LruEvictionPolicy:
    """Capacity enforcement and administrative LRU purge."""

    def __init__(
        self,
        store: BackingStore,
        max_entries: Optional[int] = None,
        max_bytes: Optional[int] = None,
    ):
        self.store = store
        self.max_entries = _validate_capacity("max_entries", max_entries)
        self.max_bytes = _validate_capacity("max_bytes", max_bytes)

    async def touch(self, key: str) -> bool:
        return await self.store.touch(key)

    @staticmethod
    def _satisfied(
        entries: int,
        size: int,
        target_entries: Optional[int],
        target_bytes: Optional[int],
    ) -> bool:
        if target_entries is not None and entries > target_entries:
            return False
        if target_bytes is not None and size > target_bytes:
            return False
        return True

    async def evict_until(
        self,
        target_bytes: Optional[int] = None,
        target_entries: Optional[int] = None,
        protected: Optional[Iterable[str]] = None,
        reason: str = "purge",
    ) -> List[str]:
        """
        Evict least recently used keys until usage is within both targets.

        Protected keys are never evicted; if only protected keys remain the
        loop stops short of the target. Returns the evicted keys in order.
        """
        if target_bytes is None and target_entries is None:
            raise InvalidConfigurationException(
                "evict_until needs target_bytes or target_entries"
            )
        skip = set(protected or ())
        evicted: List[str] = []

        while True:
            entries, size = await self.store.usage()
            if self._satisfied(entries, size, target_entries, target_bytes):
                break

            candidates = [
                key
                for key in await self.store.lru_keys(len(skip) + 1)
                if key not in skip
            ]
            if not candidates:
                logger.warning(
                    "LRU eviction stopped short of target",
                    extra={"entries": entries, "size_bytes": size},
                )
                break

            key = candidates[0]
            # An entry the store already expired frees space without counting
            if await self.store.remove_entry(key):
                evicted.append(key)

        if evicted:
            cache_metrics.evictions_total.labels(reason=reason).inc(len(evicted))
            logger.info(
                f"Evicted {len(evicted)} least recently used cache entries",
                extra={"reason": reason},
            )
        return evicted

    async def enforce_capacity(self, protected: Optional[Iterable[str]] = None) -> List[str]:
        """Evict down to the configured budget after a write."""
        if self.max_entries is None and self.max_bytes is None:
            return []
        return await self.evict_until(
            target_bytes=self.max_bytes,
            target_entries=self.max_entries,
            protected=protected,
            reason="capacity",
        )
