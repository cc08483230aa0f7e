"""
Cache Value Objects

Immutable value objects for the cache domain. Provides key and tag
validation, TTL presets, write options and the statistics snapshot.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from ...constants import MAX_KEY_LENGTH, MAX_TAG_LENGTH
from .exceptions import InvalidConfigurationException


class CacheStrategy(str, Enum):
    """How a read-through treats an entry whose TTL has passed."""

    CACHE_ASIDE = "cache_aside"
    STALE_WHILE_REVALIDATE = "stale_while_revalidate"


class CacheExpiration(IntEnum):
    """Default cache expiration presets (in seconds)."""

    SHORT = 60
    MEDIUM = 300
    LONG = 3600
    VERY_LONG = 86400


class CachePrefix(str, Enum):
    """Key prefixes (and warmup categories) for platform data."""

    RESEARCH_PROJECTS = "research_projects"
    TEAMS = "teams"
    TEAM_MEMBERS = "team_members"
    SEARCH = "search"
    ANALYTICS = "analytics"
    REPORTS = "reports"


@dataclass(frozen=True)
class CacheKey:
    """
    Immutable cache key value object.

    Enforces key naming conventions and provides validation.
    """

    value: str

    def __post_init__(self) -> None:
        """Validate cache key format."""
        if not self.value:
            raise ValueError("Cache key cannot be empty")

        if len(self.value) > MAX_KEY_LENGTH:
            raise ValueError(f"Cache key too long (max {MAX_KEY_LENGTH} characters)")

        if any(char.isspace() for char in self.value):
            raise ValueError("Cache key cannot contain whitespace")

    @classmethod
    def build(cls, prefix: Union[CachePrefix, str], identifier: Union[str, int]) -> "CacheKey":
        """Create ``<prefix>:<identifier>`` key."""
        prefix_value = prefix.value if isinstance(prefix, CachePrefix) else prefix
        return cls(f"{prefix_value}:{identifier}")

    def __str__(self) -> str:
        return self.value


def validate_key(key: str) -> str:
    """Validate a raw key string and return it unchanged."""
    return CacheKey(key).value


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Deduplicate and validate tags, keeping first-seen order."""
    normalized: List[str] = []
    for tag in tags or ():
        if not isinstance(tag, str) or not tag:
            raise ValueError("Cache tag must be a non-empty string")
        if len(tag) > MAX_TAG_LENGTH:
            raise ValueError(f"Cache tag too long (max {MAX_TAG_LENGTH} characters)")
        if any(char.isspace() for char in tag):
            raise ValueError("Cache tag cannot contain whitespace")
        if tag not in normalized:
            normalized.append(tag)
    return normalized


@dataclass(frozen=True)
class CacheWriteOptions:
    """Options for a cache write or read-through."""

    ttl_seconds: float = CacheExpiration.MEDIUM
    tags: List[str] = field(default_factory=list)
    strategy: CacheStrategy = CacheStrategy.STALE_WHILE_REVALIDATE

    def __post_init__(self) -> None:
        if self.ttl_seconds is None or self.ttl_seconds <= 0:
            raise InvalidConfigurationException(
                "ttl_seconds must be positive", option="ttl_seconds", value=self.ttl_seconds
            )
        try:
            tags = normalize_tags(self.tags)
        except ValueError as e:
            raise InvalidConfigurationException(str(e), option="tags") from e
        object.__setattr__(self, "tags", tags)
        object.__setattr__(self, "strategy", CacheStrategy(self.strategy))


class CacheStats(BaseModel):
    """Aggregated cache statistics for operator tooling."""

    backend: str = Field(..., description="Backing store in use")
    total_entries: int = Field(0, description="Live entries")
    total_size_bytes: int = Field(0, description="Aggregate serialized size")
    hits: int = Field(0, description="Lookups served from cache")
    misses: int = Field(0, description="Lookups that found nothing")
    hit_rate: float = Field(0.0, description="hits / (hits + misses)")
    avg_access_count: float = Field(0.0, description="Mean access count per entry")
    tag_stats: Dict[str, int] = Field(default_factory=dict, description="Keys per tag")
    refreshes_in_flight: int = Field(0, description="Background refreshes running")
    error: Optional[str] = Field(None, description="Set when stats collection failed")
