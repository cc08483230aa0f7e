"""
Research Cache Monitoring Module

Prometheus metrics for cache lookups, evictions, refreshes and rate limiting.
"""

from .cache_metrics import CacheMetrics, cache_metrics

__all__ = ["CacheMetrics", "cache_metrics"]
