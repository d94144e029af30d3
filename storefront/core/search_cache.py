"""
Product search result cache

LRU cache with TTL for catalog search pages. Cache key is an MD5 hash of the
normalized query plus its filters. There is no module-level instance: the app
builds one from settings at startup and hands it to ProductSearchService, and
tests construct their own with a fake clock.
"""
import hashlib
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from storefront.core.config import settings

logger = logging.getLogger(__name__)


class SearchCache:
    """
    Bounded LRU cache with TTL for product search results.

    Safe for single-threaded async usage (standard in asyncio).

    Attributes:
        ttl_seconds: Time-to-live for cache entries
        max_size: Maximum cache entries before LRU eviction
    """

    def __init__(
        self,
        ttl_seconds: int = 180,
        max_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[float, List[Dict[str, Any]]]]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @classmethod
    def from_settings(cls) -> "SearchCache":
        return cls(
            ttl_seconds=settings.SEARCH_CACHE_TTL_SECONDS,
            max_size=settings.SEARCH_CACHE_MAX_SIZE,
        )

    def _make_key(self, query: str, **filters) -> str:
        """MD5 hash of the lowercased query plus sorted non-null filters."""
        key_parts = [query.lower().strip()]
        for k, v in sorted(filters.items()):
            if v is not None:
                key_parts.append(f"{k}={str(v).lower().strip()}")
        return hashlib.md5("|".join(key_parts).encode()).hexdigest()

    def get(self, query: str, **filters) -> Optional[List[Dict[str, Any]]]:
        """Return cached results, or None if missing or expired."""
        key = self._make_key(query, **filters)

        if key not in self._cache:
            self._misses += 1
            return None

        stored_at, results = self._cache[key]
        if self._clock() - stored_at > self.ttl_seconds:
            del self._cache[key]
            self._misses += 1
            logger.debug(f"[SEARCH_CACHE] Expired: {query[:50]}")
            return None

        self._cache.move_to_end(key)
        self._hits += 1
        logger.debug(f"[SEARCH_CACHE] Hit: {query[:50]} ({len(results)} results)")
        return results

    def set(self, query: str, results: List[Dict[str, Any]], **filters) -> None:
        key = self._make_key(query, **filters)
        if key in self._cache:
            del self._cache[key]

        while len(self._cache) >= self.max_size:
            self._cache.popitem(last=False)
            self._evictions += 1
            logger.debug("[SEARCH_CACHE] Evicted oldest entry (capacity)")

        self._cache[key] = (self._clock(), results)

    async def get_or_fetch(
        self,
        query: str,
        fetch_func: Callable[..., Awaitable[List[Dict[str, Any]]]],
        **filters
    ) -> List[Dict[str, Any]]:
        """
        Get from cache or fetch and cache.

        Args:
            query: Search query string
            fetch_func: Async function called on a miss with (query, **filters)
            **filters: Filter parameters, part of the key and passed to fetch_func
        """
        cached = self.get(query, **filters)
        if cached is not None:
            return cached

        results = await fetch_func(query, **filters)
        self.set(query, results, **filters)
        return results

    def get_stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 4) if total > 0 else 0.0,
            "size": len(self._cache),
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "evictions": self._evictions,
        }

    def clear(self) -> None:
        """Clear all cached entries."""
        count = len(self._cache)
        self._cache.clear()
        logger.info(f"[SEARCH_CACHE] Cleared {count} entries")

    def __len__(self) -> int:
        return len(self._cache)
