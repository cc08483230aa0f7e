"""
Research Cache

Tagged, expiring cache with stale-while-revalidate refresh, LRU eviction
and fixed-window rate limiting over Redis or an in-process store.
"""

from .constants import APP_VERSION as __version__

__all__ = ["__version__"]
