"""
Entry Store

Cache entries keyed by string. Values are serialized into a JSON envelope
carrying the logical expiration; the backing store retains the payload for
the freshness TTL plus an optional stale window, so expired entries stay
readable through the stale path until retention runs out.
"""

import base64
import fnmatch
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Iterable, List, Optional, Tuple

from ...constants import current_time_ms, to_millis
from ...domain.cache.entities import CacheEntry
from ...domain.cache.exceptions import InvalidConfigurationException
from ...domain.cache.repository_interfaces import BackingStore, StoredEntry
from ...domain.cache.value_objects import normalize_tags, validate_key
from ...monitoring.cache_metrics import cache_metrics

if TYPE_CHECKING:
    from .eviction import LruEvictionPolicy

logger = logging.getLogger(__name__)


def encode_value(value: Any) -> Tuple[str, int]:
    """Serialize a value for storage. Returns (envelope fragment, size in bytes)."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
        return base64.b64encode(raw).decode("ascii"), len(raw)
    serialized = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return serialized, len(serialized.encode("utf-8"))


class EntryStore:
    """Read and write cache entries on top of a backing store."""

    def __init__(
        self,
        store: BackingStore,
        clock: Callable[[], float] = time.time,
        eviction: Optional["LruEvictionPolicy"] = None,
    ):
        self.store = store
        self.eviction = eviction
        self._clock = clock

    def _now(self) -> int:
        return current_time_ms(self._clock)

    def _pack(self, value: Any, expires_at: int, created_at: int) -> Tuple[str, int]:
        try:
            fragment, size = encode_value(value)
        except (TypeError, ValueError) as e:
            raise InvalidConfigurationException(
                f"Cache value is not serializable: {e}", option="value"
            ) from e
        envelope = {"expires_at": expires_at, "created_at": created_at}
        if isinstance(value, (bytes, bytearray)):
            envelope["b64"] = fragment
        else:
            envelope["json"] = fragment
        return json.dumps(envelope, separators=(",", ":")), size

    @staticmethod
    def _unpack(stored: StoredEntry) -> CacheEntry:
        envelope = json.loads(stored.payload)
        if "b64" in envelope:
            raw = base64.b64decode(envelope["b64"])
            value, size = raw, len(raw)
        else:
            value = json.loads(envelope["json"])
            size = len(envelope["json"].encode("utf-8"))
        return CacheEntry(
            key=stored.key,
            value=value,
            expires_at=envelope["expires_at"],
            created_at=envelope["created_at"],
            last_accessed_at=stored.last_accessed_at,
            tags=set(stored.tags),
            size_bytes=size,
            access_count=stored.access_count,
        )

    async def _touch(self, key: str) -> None:
        if self.eviction is not None:
            await self.eviction.touch(key)
        else:
            await self.store.touch(key)

    async def get(self, key: str) -> Optional[Any]:
        """Return the value only if unexpired; records the access."""
        entry = await self.get_entry(validate_key(key))
        if entry is None or entry.is_expired(self._now()):
            await self.record_lookup(False)
            return None
        await self._touch(key)
        await self.record_lookup(True)
        return entry.value

    async def get_stale(self, key: str) -> Optional[Tuple[Any, bool]]:
        """Return (value, is_stale) for any retained entry; records the access."""
        entry = await self.get_entry(validate_key(key))
        if entry is None:
            return None
        await self._touch(key)
        return entry.value, entry.is_expired(self._now())

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Read a retained entry with its metadata, without touching it."""
        stored = await self.store.read_entry(key)
        if stored is None:
            return None
        try:
            return self._unpack(stored)
        except (ValueError, KeyError) as e:
            logger.error(f"Discarding corrupt cache entry {key}: {e}")
            await self.store.remove_entry(key)
            return None

    async def has_fresh(self, key: str) -> bool:
        entry = await self.get_entry(key)
        return entry is not None and not entry.is_expired(self._now())

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: float,
        tags: Optional[Iterable[str]] = None,
        stale_ttl_seconds: float = 0,
    ) -> CacheEntry:
        """
        Insert or overwrite an entry and index its tags in one atomic write.

        Raises:
            InvalidConfigurationException: On non-positive TTL, bad key or tag,
                or a value that cannot be serialized.
        """
        try:
            key = validate_key(key)
            tag_list = normalize_tags(tags)
        except ValueError as e:
            raise InvalidConfigurationException(str(e), option="key") from e
        if ttl_seconds is None or ttl_seconds <= 0:
            raise InvalidConfigurationException(
                "ttl_seconds must be positive", option="ttl_seconds", value=ttl_seconds
            )
        if stale_ttl_seconds < 0:
            raise InvalidConfigurationException(
                "stale_ttl_seconds cannot be negative",
                option="stale_ttl_seconds",
                value=stale_ttl_seconds,
            )

        now = self._now()
        expires_at = now + to_millis(ttl_seconds)
        payload, size = self._pack(value, expires_at, now)
        await self.store.write_entry(
            key,
            payload,
            retention_ms=to_millis(ttl_seconds + stale_ttl_seconds),
            tags=tag_list,
            size_bytes=size,
        )

        if self.eviction is not None:
            await self.eviction.enforce_capacity(protected={key})

        return CacheEntry(
            key=key,
            value=value,
            expires_at=expires_at,
            created_at=now,
            last_accessed_at=now,
            tags=set(tag_list),
            size_bytes=size,
        )

    async def delete(self, key: str) -> bool:
        """Remove an entry and unregister it from all tags."""
        removed = await self.store.remove_entry(key)
        if removed:
            cache_metrics.invalidations_total.labels(kind="key").inc()
        return removed

    async def record_lookup(self, hit: bool) -> None:
        await self.store.record_lookup(hit)
        cache_metrics.lookups_total.labels(outcome="hit" if hit else "miss").inc()

    async def purge_expired(self) -> int:
        """Drop index records of entries whose retention has run out."""
        purged = 0
        for key in await self.store.tracked_keys():
            if not await self.store.has_entry(key):
                await self.store.remove_entry(key)
                purged += 1
        if purged:
            logger.debug(f"Purged {purged} expired cache entries")
        return purged

    async def invalidate_pattern(self, pattern: str) -> int:
        """Remove every entry whose key matches a glob pattern."""
        removed = 0
        for key in await self.store.tracked_keys():
            if fnmatch.fnmatchcase(key, pattern) and await self.store.remove_entry(key):
                removed += 1
        cache_metrics.invalidations_total.labels(kind="pattern").inc(removed)
        logger.info(f"Invalidated {removed} cache entries matching {pattern}")
        return removed

    async def clear(self) -> int:
        removed = await self.store.clear()
        cache_metrics.invalidations_total.labels(kind="clear").inc(removed)
        return removed

    async def keys(self) -> List[str]:
        """Tracked keys, least recently used first."""
        return await self.store.tracked_keys()
