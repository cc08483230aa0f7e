"""
Cache Services

Entry store, tag index, LRU eviction and refresh coordination composed by
CacheService, plus operator-facing administration.
"""

from .admin import CacheAdminService
from .cache_service import CacheService

__all__ = ["CacheAdminService", "CacheService"]
