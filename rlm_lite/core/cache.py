"""
Retrieval cache with LRU eviction.

Key -> value store for retrieved context, with hit/miss bookkeeping.
All mutations happen under a single lock.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50


@dataclass
class CacheEntry:
    """A cached retrieval result.

    key, value and created_at never change after creation; only the access
    bookkeeping is updated on hits.
    """
    key: str
    value: Any
    created_at: float
    last_accessed_at: float
    expires_at: Optional[float] = None
    hit_count: int = 0
    sequence: int = field(default=0, repr=False)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


@dataclass(frozen=True)
class CacheStats:
    """Read-only view of cache counters."""
    hits: int
    misses: int
    evictions: int
    expirations: int
    size: int
    capacity: int

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Fraction of lookups served from cache, 0.0 when unused."""
        if self.total_requests == 0:
            return 0.0
        return self.hits / self.total_requests


class RetrievalCache:
    """LRU cache for retrieval results.

    Eviction removes the least recently used entry, ties broken by earliest
    creation, one entry per trigger. Counters only ever increase.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """Initialize the cache.

        Args:
            capacity: Maximum number of live entries
            ttl_seconds: Optional time-to-live per entry
            clock: Time source, seconds

        Raises:
            ValueError: If capacity or ttl is not positive
        """
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")

        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @property
    def hits(self) -> int:
        return self._hits

    @property
    def misses(self) -> int:
        return self._misses

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def get(self, key: str) -> Optional[Any]:
        """Look up a key, counting a hit or a miss.

        Args:
            key: Cache key

        Returns:
            Cached value, or None when absent or expired
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry is None:
                self._misses += 1
                logger.debug("Cache miss for key %.50s", key)
                return None

            if entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                logger.debug("Cache entry expired for key %.50s", key)
                return None

            entry.last_accessed_at = now
            entry.hit_count += 1
            self._hits += 1
            logger.debug("Cache hit for key %.50s", key)
            return entry.value

    def put(self, key: str, value: Any) -> CacheEntry:
        """Store a value under a new entry.

        A live entry for the same key is kept as is; entries are never
        overwritten.

        Args:
            key: Cache key
            value: Value to store

        Returns:
            The live entry for the key
        """
        with self._lock:
            now = self._clock()
            existing = self._entries.get(key)
            if existing is not None and not existing.is_expired(now):
                return existing
            if existing is not None:
                del self._entries[key]
                self._expirations += 1

            expires_at = now + self.ttl_seconds if self.ttl_seconds is not None else None
            entry = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                last_accessed_at=now,
                expires_at=expires_at,
                sequence=next(self._sequence)
            )
            self._entries[key] = entry

            if len(self._entries) > self.capacity:
                self._evict_one()
            return entry

    def evict(self) -> Optional[str]:
        """Evict the least recently used entry.

        Returns:
            Evicted key, or None when the cache is empty
        """
        with self._lock:
            return self._evict_one()

    def _evict_one(self) -> Optional[str]:
        if not self._entries:
            return None
        victim = min(
            self._entries.values(),
            key=lambda e: (e.last_accessed_at, e.created_at, e.sequence)
        )
        del self._entries[victim.key]
        self._evictions += 1
        logger.debug("Evicted LRU cache entry %.50s", victim.key)
        return victim.key

    def clear_expired(self) -> int:
        """Drop expired entries.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
            return len(expired)

    def clear(self) -> None:
        """Remove all entries. Counters are kept."""
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        """Snapshot of cache counters."""
        with self._lock:
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                expirations=self._expirations,
                size=len(self._entries),
                capacity=self.capacity
            )
