"""
Cache Domain Entities

Core domain entities for cache and rate-limit state. Timestamps are epoch
milliseconds to match the backing store's TTL resolution.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Set


@dataclass
class CacheEntry:
    """
    Cache entry entity.

    An entry whose ``expires_at`` is not in the future is logically absent
    for normal reads; it remains available to the stale-read path until the
    store drops it at the end of its retention.
    """

    key: str
    value: Any
    expires_at: int
    created_at: int
    last_accessed_at: int
    tags: Set[str] = field(default_factory=set)
    size_bytes: int = 0
    access_count: int = 0

    def is_expired(self, now_ms: int) -> bool:
        """Check if cache entry is past its freshness TTL."""
        return self.expires_at <= now_ms


@dataclass
class RateWindow:
    """
    Fixed rate-limit window for one identifier.

    ``count`` restarts at zero once ``now - window_start >= window_ms``.
    """

    identifier: str
    window_start: int
    count: int
    window_ms: int

    def is_elapsed(self, now_ms: int) -> bool:
        """Check whether the window has run its full length."""
        return now_ms - self.window_start >= self.window_ms

    def reset_at(self) -> int:
        """Epoch ms at which the window resets."""
        return self.window_start + self.window_ms


@dataclass
class WarmupEntry:
    """One key to pre-populate during warmup."""

    key: str
    fetch: Callable[[], Awaitable[Any]]
    ttl_seconds: Optional[float] = None
    tags: List[str] = field(default_factory=list)


@dataclass
class WarmupResult:
    """Outcome of a warmup batch run."""

    total: int = 0
    stored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """True when no entry failed."""
        return not self.failed
