"""
In-Memory Backing Store

Process-local implementation of the backing store contract. Used when Redis
is disabled or unreachable at startup, and in tests.

Every public coroutine runs to completion without awaiting, so each
composite mutation is atomic with respect to other tasks on the event loop.
Correct only for a single-process deployment: nothing here is visible to
other workers.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from ...constants import current_time_ms
from ...domain.cache.entities import RateWindow
from ...domain.cache.repository_interfaces import BackingStore, StoredEntry

logger = logging.getLogger(__name__)


@dataclass
class _Record:
    payload: str
    deadline: int
    size_bytes: int


class InMemoryStore(BackingStore):
    """Dictionary-backed store with per-entry retention deadlines."""

    name = "memory"
    shared = False

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._records: Dict[str, _Record] = {}
        self._key_tags: Dict[str, Set[str]] = {}
        self._tag_keys: Dict[str, Set[str]] = {}
        # Least recently used first; move_to_end keeps touch O(1)
        self._recency: "OrderedDict[str, None]" = OrderedDict()
        self._access_counts: Dict[str, int] = {}
        self._access_times: Dict[str, int] = {}
        self._total_bytes = 0
        self._hits = 0
        self._misses = 0
        self._windows: Dict[str, RateWindow] = {}
        self._leases: Dict[str, Tuple[str, int]] = {}

    def _now(self) -> int:
        return current_time_ms(self._clock)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        logger.debug("In-memory store closed", extra={"entries": len(self._records)})

    # Entries

    def _live(self, key: str) -> Optional[_Record]:
        record = self._records.get(key)
        if record is None:
            return None
        if record.deadline <= self._now():
            self._drop(key)
            return None
        return record

    def _unindex(self, key: str, tags: Iterable[str]) -> None:
        for tag in tags:
            keys = self._tag_keys.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tag_keys[tag]

    def _drop(self, key: str) -> bool:
        record = self._records.pop(key, None)
        self._unindex(key, self._key_tags.pop(key, set()))
        self._recency.pop(key, None)
        self._access_counts.pop(key, None)
        self._access_times.pop(key, None)
        if record is not None:
            self._total_bytes -= record.size_bytes
            return record.deadline > self._now()
        return False

    async def write_entry(
        self,
        key: str,
        payload: str,
        retention_ms: int,
        tags: Iterable[str],
        size_bytes: int,
    ) -> None:
        new_tags = set(tags)
        self._unindex(key, self._key_tags.get(key, set()) - new_tags)
        self._key_tags[key] = new_tags
        for tag in new_tags:
            self._tag_keys.setdefault(tag, set()).add(key)

        previous = self._records.get(key)
        if previous is not None:
            self._total_bytes -= previous.size_bytes
        now = self._now()
        self._records[key] = _Record(
            payload=payload, deadline=now + retention_ms, size_bytes=size_bytes
        )
        self._total_bytes += size_bytes

        self._recency[key] = None
        self._recency.move_to_end(key)
        self._access_counts.setdefault(key, 0)
        self._access_times[key] = now

    async def read_entry(self, key: str) -> Optional[StoredEntry]:
        record = self._live(key)
        if record is None:
            return None
        return StoredEntry(
            key=key,
            payload=record.payload,
            tags=set(self._key_tags.get(key, set())),
            access_count=self._access_counts.get(key, 0),
            last_accessed_at=self._access_times.get(key, 0),
        )

    async def has_entry(self, key: str) -> bool:
        return self._live(key) is not None

    async def remove_entry(self, key: str) -> bool:
        return self._drop(key)

    async def touch(self, key: str) -> bool:
        if self._live(key) is None:
            return False
        self._recency.move_to_end(key)
        self._access_counts[key] = self._access_counts.get(key, 0) + 1
        self._access_times[key] = self._now()
        return True

    # Tag index

    async def index_tags(self, key: str, tags: Iterable[str]) -> bool:
        if self._live(key) is None:
            return False
        current = self._key_tags.setdefault(key, set())
        for tag in tags:
            current.add(tag)
            self._tag_keys.setdefault(tag, set()).add(key)
        return True

    async def unindex_all(self, key: str) -> None:
        self._unindex(key, self._key_tags.get(key, set()))
        if key in self._key_tags:
            self._key_tags[key] = set()

    async def keys_for_tag(self, tag: str) -> Set[str]:
        keys = set()
        for key in list(self._tag_keys.get(tag, ())):
            if self._live(key) is not None:
                keys.add(key)
        return keys

    async def tag_counts(self) -> Dict[str, int]:
        self._sweep()
        return {tag: len(keys) for tag, keys in self._tag_keys.items()}

    # Recency and accounting

    def _sweep(self) -> None:
        for key in list(self._records):
            self._live(key)

    async def lru_keys(self, count: int) -> List[str]:
        keys: List[str] = []
        for key in self._recency:
            if len(keys) >= count:
                break
            keys.append(key)
        return keys

    async def tracked_keys(self) -> List[str]:
        return list(self._recency)

    async def usage(self) -> Tuple[int, int]:
        self._sweep()
        return len(self._records), self._total_bytes

    async def access_counts(self) -> Dict[str, int]:
        self._sweep()
        return dict(self._access_counts)

    async def record_lookup(self, hit: bool) -> None:
        if hit:
            self._hits += 1
        else:
            self._misses += 1

    async def lookup_counts(self) -> Tuple[int, int]:
        return self._hits, self._misses

    async def clear(self) -> int:
        self._sweep()
        removed = len(self._records)
        self._records.clear()
        self._key_tags.clear()
        self._tag_keys.clear()
        self._recency.clear()
        self._access_counts.clear()
        self._access_times.clear()
        self._total_bytes = 0
        self._hits = 0
        self._misses = 0
        return removed

    # Rate windows

    async def increment_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        now = self._now()
        window = self._windows.get(key)
        # The window length is fixed when the window opens
        if window is None or window.is_elapsed(now):
            window = RateWindow(
                identifier=key, window_start=now, count=0, window_ms=window_ms
            )
            self._windows[key] = window
        window.count += 1
        return window.count, window.reset_at() - now

    async def window_status(self, key: str) -> Optional[Tuple[int, int]]:
        now = self._now()
        window = self._windows.get(key)
        if window is None:
            return None
        if window.is_elapsed(now):
            del self._windows[key]
            return None
        return window.count, window.reset_at() - now

    async def reset_window(self, key: str) -> bool:
        return self._windows.pop(key, None) is not None

    # Refresh leases

    async def acquire_lease(self, name: str, token: str, ttl_ms: int) -> bool:
        now = self._now()
        held = self._leases.get(name)
        if held is not None and held[1] > now:
            return False
        self._leases[name] = (token, now + ttl_ms)
        return True

    async def release_lease(self, name: str, token: str) -> bool:
        held = self._leases.get(name)
        if held is None or held[0] != token:
            return False
        del self._leases[name]
        return True
