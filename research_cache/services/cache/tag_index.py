"""
Tag Index

Secondary index from tag to cache keys, used for bulk invalidation. The
index records themselves are written by the backing store together with
the entry; this service reads them, prunes dangling members and removes
entries by tag.
"""

import logging
from typing import Dict, Iterable, Set

from opentelemetry import trace

from ...domain.cache.value_objects import normalize_tags
from ...monitoring.cache_metrics import cache_metrics
from .entry_store import EntryStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class TagIndex:
    """Tag to key lookups and tag-based invalidation."""

    def __init__(self, entries: EntryStore):
        self.entries = entries
        self.store = entries.store

    async def index_tags(self, key: str, tags: Iterable[str]) -> bool:
        """Add tags to an existing entry. False when the entry is gone."""
        return await self.store.index_tags(key, normalize_tags(tags))

    async def unindex_all(self, key: str) -> None:
        await self.store.unindex_all(key)

    async def keys_for_tag(self, tag: str) -> Set[str]:
        """Live keys under a tag. Members whose entry has expired are pruned."""
        live: Set[str] = set()
        for key in await self.store.keys_for_tag(tag):
            if await self.store.has_entry(key):
                live.add(key)
            else:
                await self.store.remove_entry(key)
        return live

    async def tag_counts(self) -> Dict[str, int]:
        return await self.store.tag_counts()

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """
        Remove every entry carrying any of ``tags``.

        Keys shared by several tags are removed once. Returns the number of
        distinct entries removed, so repeating the call reports zero.
        """
        tag_list = normalize_tags(tags)
        with tracer.start_as_current_span("tag_index.invalidate_by_tags") as span:
            span.set_attribute("cache.tags", tag_list)

            keys: Set[str] = set()
            for tag in tag_list:
                keys.update(await self.store.keys_for_tag(tag))

            removed = 0
            for key in sorted(keys):
                if await self.store.remove_entry(key):
                    removed += 1

            span.set_attribute("cache.removed", removed)
            cache_metrics.invalidations_total.labels(kind="tag").inc(removed)
            logger.info(
                f"Invalidated {removed} cache entries by tags",
                extra={"tags": tag_list, "removed": removed},
            )
            return removed
