"""
Bounded in-process TTL cache for pipeline stages.

Used for the structured-query cache and both rerank score caches:
- Insertion-order (FIFO) eviction once max_size is exceeded
- Time-to-live checked lazily on read; expired entries are dropped
- Hit/miss statistics for monitoring

Entries are plain upserts without locking. Concurrent requests computing the
same key write the same value, so a racing read sees either the old or the
new entry.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

import structlog

logger = structlog.get_logger(__name__)

V = TypeVar("V")


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    hits: int = 0
    misses: int = 0
    expirations: int = 0
    evictions: int = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        if self.total_requests == 0:
            return 0.0
        return self.hits / self.total_requests


class TTLCache(Generic[V]):
    """
    Bounded map with FIFO eviction and lazy expiry.

    Usage:
        cache = TTLCache(name="sqg", max_size=300, ttl_ms=600_000)
        hit = cache.get(key)
        if hit is None:
            value = compute()
            cache.set(key, value)
    """

    def __init__(
        self,
        name: str,
        max_size: int,
        ttl_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize cache.

        Args:
            name: Cache name used in log events
            max_size: Maximum number of entries kept
            ttl_ms: Time-to-live for each entry in milliseconds
            clock: Time source in seconds (injectable for tests)
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.name = name
        self.max_size = max_size
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._entries: Dict[str, Tuple[V, float]] = {}
        self._stats = CacheStats()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def get(self, key: str) -> Optional[V]:
        """Return the cached value, or None on miss or expiry."""
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None

        value, expires_at = entry
        if expires_at <= self._now_ms():
            # Stale hit counts as a miss
            self._entries.pop(key, None)
            self._stats.expirations += 1
            self._stats.misses += 1
            logger.debug("Cache entry expired", cache=self.name, key_preview=key[:60])
            return None

        self._stats.hits += 1
        return value

    def set(self, key: str, value: V) -> None:
        """Insert or refresh an entry, evicting the oldest beyond max_size."""
        self._entries[key] = (value, self._now_ms() + self.ttl_ms)

        while len(self._entries) > self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self._stats.evictions += 1

    def clear(self) -> None:
        """Drop every entry; statistics are kept."""
        self._entries.clear()

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        return self._stats

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list:
        """Keys in insertion order, including not-yet-purged expired ones."""
        return list(self._entries)

    def describe(self) -> Dict[str, Any]:
        """Summary for logs and health endpoints."""
        return {
            "name": self.name,
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_ms": self.ttl_ms,
            "hit_rate": round(self._stats.hit_rate, 4),
        }
