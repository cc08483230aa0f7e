"""
Cache Repository Interfaces

Abstract backing store contract. Two variants implement it: ``InMemoryStore``
(single process) and ``RemoteStore`` (Redis, shared between processes). The
variant is chosen once at startup.

Every composite mutation below must be atomic: an entry never exists without
its tag index and recency record reflecting it, and vice versa.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple


@dataclass
class StoredEntry:
    """Raw entry record as persisted by a backing store."""

    key: str
    payload: str
    tags: Set[str] = field(default_factory=set)
    access_count: int = 0
    last_accessed_at: int = 0


class BackingStore(ABC):
    """Persistence primitives for the entry store, tag index, LRU and limiter."""

    #: Short backend name reported in stats and logs
    name: str = "abstract"

    #: Whether state is shared with other processes
    shared: bool = False

    async def initialize(self) -> None:
        """Prepare connections. Raises BackingStoreUnavailableException."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check backend reachability."""

    # Entries

    @abstractmethod
    async def write_entry(
        self,
        key: str,
        payload: str,
        retention_ms: int,
        tags: Iterable[str],
        size_bytes: int,
    ) -> None:
        """Insert or overwrite an entry, replace its tag set, mark it most recent."""

    @abstractmethod
    async def read_entry(self, key: str) -> Optional[StoredEntry]:
        """Read an entry with its tags and access metadata, without touching it."""

    @abstractmethod
    async def has_entry(self, key: str) -> bool:
        """Check whether the entry payload is still retained."""

    @abstractmethod
    async def remove_entry(self, key: str) -> bool:
        """Remove an entry and every index record of it. True if it existed."""

    @abstractmethod
    async def touch(self, key: str) -> bool:
        """Record an access: move to most recent, bump access count and time."""

    # Tag index

    @abstractmethod
    async def index_tags(self, key: str, tags: Iterable[str]) -> bool:
        """Add tags to an existing entry. False when the entry is missing."""

    @abstractmethod
    async def unindex_all(self, key: str) -> None:
        """Drop every tag of an entry, leaving the entry itself."""

    @abstractmethod
    async def keys_for_tag(self, tag: str) -> Set[str]:
        """Keys currently indexed under a tag."""

    @abstractmethod
    async def tag_counts(self) -> Dict[str, int]:
        """Number of keys per tag."""

    # Recency and accounting

    @abstractmethod
    async def lru_keys(self, count: int) -> List[str]:
        """Up to ``count`` keys, least recently used first."""

    @abstractmethod
    async def tracked_keys(self) -> List[str]:
        """All keys in the recency index, least recently used first."""

    @abstractmethod
    async def usage(self) -> Tuple[int, int]:
        """(entry count, total size in bytes)."""

    @abstractmethod
    async def access_counts(self) -> Dict[str, int]:
        """Access count per tracked key."""

    @abstractmethod
    async def record_lookup(self, hit: bool) -> None:
        """Count a cache hit or miss."""

    @abstractmethod
    async def lookup_counts(self) -> Tuple[int, int]:
        """(hits, misses) since the last clear."""

    @abstractmethod
    async def clear(self) -> int:
        """Remove every entry and index record. Returns entries removed."""

    # Rate windows

    @abstractmethod
    async def increment_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        """Atomically count one request. Returns (count, ms until reset)."""

    @abstractmethod
    async def window_status(self, key: str) -> Optional[Tuple[int, int]]:
        """(count, ms until reset) of a live window, without counting."""

    @abstractmethod
    async def reset_window(self, key: str) -> bool:
        """Drop a window. True if one existed."""

    # Refresh leases

    @abstractmethod
    async def acquire_lease(self, name: str, token: str, ttl_ms: int) -> bool:
        """Claim a short-lived lease if nobody holds it."""

    @abstractmethod
    async def release_lease(self, name: str, token: str) -> bool:
        """Release a lease only if ``token`` still owns it."""
