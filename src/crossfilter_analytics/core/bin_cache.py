"""
BinCache - Memoized BinSets with LRU eviction.

A BinSet is computed lazily on first request and reused until the dataset
changes (filter applied, data reloaded, column re-typed). Invalidation is
all-or-nothing: any dataset mutation drops every entry.
"""

from collections import OrderedDict
from dataclasses import dataclass

import structlog

from crossfilter_analytics.core.bins import BinSet
from crossfilter_analytics.core.column_types import Column, ColumnType

logger = structlog.get_logger()


@dataclass(frozen=True)
class BinCacheKey:
    """Full parameter tuple that determines a BinSet."""

    column: str
    column_type: ColumnType
    max_bins: int
    strategy: str
    min_bin_size: int
    merge_policy: str
    thresholds: tuple[float, ...] = ()

    @classmethod
    def for_column(cls, column: Column, min_bin_size: int, merge_policy: str) -> "BinCacheKey":
        return cls(
            column=column.name,
            column_type=column.column_type,
            max_bins=column.max_bins,
            strategy=column.strategy,
            min_bin_size=min_bin_size,
            merge_policy=merge_policy,
            thresholds=tuple(column.thresholds),
        )


class BinCache:
    """
    Manages BinSet memoization keyed by BinCacheKey.

    A hit returns the identical BinSet object that was stored.
    """

    def __init__(self, max_size: int = 256) -> None:
        """
        Initialize bin cache.

        Args:
            max_size: Maximum number of BinSets kept (least recently used evicted first)
        """
        self._max_size = max_size
        self._entries: OrderedDict[BinCacheKey, BinSet] = OrderedDict()
        self.hits = 0
        self.misses = 0
        self.invalidations = 0

    def get(self, key: BinCacheKey) -> BinSet | None:
        """
        Get the cached BinSet for a key.

        Args:
            key: Cache key

        Returns:
            Cached BinSet if found, None otherwise
        """
        bin_set = self._entries.get(key)
        if bin_set is None:
            self.misses += 1
            logger.debug("bin_cache_miss", column=key.column, column_type=key.column_type.value)
            return None

        # Update LRU: move accessed key to end (most recent)
        self._entries.move_to_end(key)
        self.hits += 1
        logger.debug("bin_cache_hit", column=key.column, column_type=key.column_type.value)
        return bin_set

    def put(self, key: BinCacheKey, bin_set: BinSet) -> None:
        """
        Store a BinSet, evicting the least recently used entry when full.

        Args:
            key: Cache key
            bin_set: BinSet to cache
        """
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = bin_set

        while len(self._entries) > self._max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("bin_cache_evicted", column=evicted.column)

    def invalidate_all(self, reason: str = "") -> None:
        """Drop every cached BinSet."""
        dropped = len(self._entries)
        self._entries.clear()
        self.invalidations += 1
        logger.info("bin_cache_invalidated", reason=reason, dropped=dropped)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: BinCacheKey) -> bool:
        return key in self._entries

    def stats(self) -> dict[str, int]:
        """Hit/miss counters for observability."""
        return {
            "size": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "invalidations": self.invalidations,
        }
