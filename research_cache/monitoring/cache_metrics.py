"""
Cache Metrics Collector

Prometheus metrics for the cache and rate limiter. Metrics live in a
dedicated registry exposed by the ``/metrics`` endpoint.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class CacheMetrics:
    """Prometheus collectors for cache lookups, refreshes and rate limiting."""

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        self.lookups_total = Counter(
            "research_cache_lookups_total",
            "Cache lookups by outcome",
            ["outcome"],  # hit, stale, miss
            registry=self.registry,
        )

        self.evictions_total = Counter(
            "research_cache_evictions_total",
            "Entries evicted by the LRU policy",
            ["reason"],  # capacity, purge
            registry=self.registry,
        )

        self.invalidations_total = Counter(
            "research_cache_invalidations_total",
            "Entries removed by explicit invalidation",
            ["kind"],  # key, tag, pattern, clear
            registry=self.registry,
        )

        self.refreshes_total = Counter(
            "research_cache_refreshes_total",
            "Fetches run by the refresh coordinator",
            ["mode", "result"],  # mode: cold, background; result: success, failure, timeout
            registry=self.registry,
        )

        self.fetch_duration_seconds = Histogram(
            "research_cache_fetch_duration_seconds",
            "Duration of source fetches",
            buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

        self.warmup_entries_total = Counter(
            "research_cache_warmup_entries_total",
            "Warmup entries by result",
            ["result"],  # stored, skipped, failed
            registry=self.registry,
        )

        self.rate_limit_decisions_total = Counter(
            "research_cache_rate_limit_decisions_total",
            "Rate limiter decisions",
            ["decision"],  # allowed, rejected, bypassed
            registry=self.registry,
        )

        self.store_errors_total = Counter(
            "research_cache_store_errors_total",
            "Backing store failures recovered by bypassing the cache",
            ["operation"],
            registry=self.registry,
        )

        self.backend_fallbacks_total = Counter(
            "research_cache_backend_fallbacks_total",
            "Startups that fell back to the in-memory store",
            registry=self.registry,
        )

        self.entries = Gauge(
            "research_cache_entries",
            "Live cache entries at last stats collection",
            registry=self.registry,
        )

        self.size_bytes = Gauge(
            "research_cache_size_bytes",
            "Aggregate entry size at last stats collection",
            registry=self.registry,
        )

        self.refreshes_in_flight = Gauge(
            "research_cache_refreshes_in_flight",
            "Fetches currently tracked by the refresh coordinator",
            registry=self.registry,
        )

    def export(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)


# Global metrics instance
cache_metrics = CacheMetrics()
