"""
Exercise cache.

In-memory LRU cache with per-entry TTL for generated exercise sets, so
repeated requests for the same learner context skip the generation call.
Expired entries are dropped lazily on read and by ``clean_expired()``.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, TypeVar

from loguru import logger

from config import Settings, get_settings

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    created_at: float
    ttl: float  # seconds
    last_accessed: float
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.ttl


@dataclass
class CacheStats:
    size: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    hit_rate: float  # percent


class ExerciseCache(Generic[V]):
    """Fixed-capacity LRU cache with per-entry TTL."""

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_size: Entries kept before the least recently used is evicted
            default_ttl: Time to live in seconds when ``set`` gets none
            clock: Monotonic time source in seconds
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        # Ordered least to most recently used
        self._entries: OrderedDict[str, CacheEntry[V]] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ExerciseCache:
        settings = settings or get_settings()
        return cls(
            max_size=settings.exercise_cache_max_size,
            default_ttl=settings.exercise_cache_ttl_seconds,
        )

    @staticmethod
    def generate_key(
        exercise_type: str,
        level: int,
        weak_topics: Iterable[str],
        topic: str | None = None,
    ) -> str:
        """Build a key that ignores the order of ``weak_topics``."""
        topics = ",".join(sorted(weak_topics))
        return f"{exercise_type}:{level}:{topics}:{topic or 'general'}"

    def get(self, key: str) -> V | None:
        """Return a live entry and mark it most recently used; None on miss or expiry."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if entry.is_expired(now):
            del self._entries[key]
            self._misses += 1
            logger.debug(f"Cache entry expired: {key}")
            return None

        entry.last_accessed = now
        entry.access_count += 1
        self._entries.move_to_end(key)
        self._hits += 1
        logger.debug("Cache hit: {} (accessed {} times)", key, entry.access_count)
        return entry.value

    def set(self, key: str, value: V, ttl: float | None = None) -> None:
        """Insert or replace an entry; a new key at capacity evicts the LRU entry."""
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_lru()

        now = self._clock()
        self._entries[key] = CacheEntry(
            value=value,
            created_at=now,
            ttl=self.default_ttl if ttl is None else ttl,
            last_accessed=now,
        )
        self._entries.move_to_end(key)

    def _evict_lru(self) -> None:
        key, _ = self._entries.popitem(last=False)
        self._evictions += 1
        logger.debug(f"LRU eviction: {key}")

    def has(self, key: str) -> bool:
        """Check for a live entry without touching recency or counters."""
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        size = len(self._entries)
        self._entries.clear()
        logger.info(f"Exercise cache cleared ({size} entries removed)")

    def clean_expired(self) -> int:
        """Remove every expired entry and return how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info(f"Cleaned {len(expired)} expired cache entries")
        return len(expired)

    def get_stats(self) -> CacheStats:
        lookups = self._hits + self._misses
        return CacheStats(
            size=len(self._entries),
            max_size=self.max_size,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            hit_rate=(self._hits / lookups) * 100 if lookups else 0.0,
        )

    def get_usage_count(self, key: str) -> int:
        entry = self._entries.get(key)
        return entry.access_count if entry else 0

    def get_keys(self) -> list[str]:
        return list(self._entries.keys())

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)
