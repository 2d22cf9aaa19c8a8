"""
In-memory response cache with TTL expiry and LRU eviction.
"""

import copy
import logging
import re
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from .models import CacheEntry, CacheStats, MemoryUsage
from .utils import estimate_size

logger = logging.getLogger(__name__)

# Rough per-entry bookkeeping cost added to the memory estimate
ENTRY_OVERHEAD_BYTES = 100


class RequestCache:
    """
    Bounded cache of successful responses.

    Entries expire ``ttl`` seconds after they are stored and are removed
    lazily when read. When the cache is full (by entry count, or by the
    estimated memory footprint when ``max_memory_bytes`` is set) expired
    entries are purged first, then the least recently used ones.

    Values are deep-copied on the way in and on the way out, so callers can
    never mutate what is cached.
    """

    def __init__(self, ttl: float = 300, max_size: int = 1000, max_memory_bytes: Optional[int] = None):
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.ttl = ttl
        self.max_size = max_size
        self.max_memory_bytes = max_memory_bytes

        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._memory: int = 0
        self._lock = threading.RLock()
        self._reset_stats()

    def _reset_stats(self) -> None:
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.deletes = 0
        self.evictions = 0

    def get(self, key: str) -> Optional[Any]:
        """Return a copy of the cached value, or None on a miss."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            if not entry.is_fresh(time.time()):
                self._remove(key)
                self.deletes += 1
                self.misses += 1
                logger.debug(f"Cache entry expired: {key}")
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return copy.deepcopy(entry.value)

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a copy of ``value`` under ``key``."""
        stored = copy.deepcopy(value)
        entry = CacheEntry(
            key=key,
            value=stored,
            stored_at=time.time(),
            ttl=ttl or self.ttl,
            size=len(key) * 2 + estimate_size(stored) + ENTRY_OVERHEAD_BYTES,
        )

        with self._lock:
            if key in self._entries:
                self._remove(key)
            elif self._is_full(entry.size):
                self.cleanup()

            while self._entries and self._is_full(entry.size):
                self._evict_lru()

            self._entries[key] = entry
            self._memory += entry.size
            self.sets += 1

    def has(self, key: str) -> bool:
        """True if ``key`` holds a fresh entry. Does not count as a hit or touch recency."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if not entry.is_fresh(time.time()):
                self._remove(key)
                self.deletes += 1
                return False
            return True

    def delete(self, key: str) -> bool:
        """Invalidate one entry."""
        with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            self.deletes += 1
            return True

    def clear(self) -> None:
        with self._lock:
            self.deletes += len(self._entries)
            self._entries.clear()
            self._memory = 0

    def cleanup(self) -> int:
        """Remove every expired entry and return how many were removed."""
        now = time.time()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
            for key in expired:
                self._remove(key)
            self.deletes += len(expired)
        if expired:
            logger.debug(f"Removed {len(expired)} expired cache entries")
        return len(expired)

    def get_by_pattern(self, pattern: str) -> List[Dict[str, Any]]:
        """
        Fresh entries whose key matches the regular expression ``pattern``.

        This is an inspection query: it does not count as a hit and does not
        change which entries are least recently used.
        """
        regex = re.compile(pattern)
        now = time.time()
        with self._lock:
            return [
                {
                    "key": key,
                    "value": copy.deepcopy(entry.value),
                    "stored_at": entry.stored_at,
                    "expires_at": entry.expires_at,
                }
                for key, entry in self._entries.items()
                if regex.search(key) and entry.is_fresh(now)
            ]

    def keys(self) -> List[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def get_stats(self) -> CacheStats:
        with self._lock:
            lookups = self.hits + self.misses
            hit_rate = round(self.hits / lookups * 100, 2) if lookups else 0.0
            return CacheStats(
                hits=self.hits,
                misses=self.misses,
                sets=self.sets,
                deletes=self.deletes,
                evictions=self.evictions,
                hit_rate=hit_rate,
                size=len(self._entries),
                max_size=self.max_size,
                memory_usage=MemoryUsage(bytes=self._memory, mb=round(self._memory / 1024 / 1024, 2)),
            )

    def reset_stats(self) -> None:
        with self._lock:
            self._reset_stats()

    def __len__(self) -> int:
        return len(self._entries)

    def _is_full(self, incoming_size: int) -> bool:
        if len(self._entries) >= self.max_size:
            return True
        if self.max_memory_bytes is not None:
            return self._memory + incoming_size > self.max_memory_bytes
        return False

    def _evict_lru(self) -> None:
        key, entry = self._entries.popitem(last=False)
        self._memory -= entry.size
        self.evictions += 1
        logger.debug(f"Evicted least recently used cache entry: {key}")

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._memory -= entry.size
