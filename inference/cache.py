"""
Prediction cache with TTL support.

Keys follow ``ml:{model_kind}:{subject_id}``. Entries expire lazily on read,
in a periodic sweep run from set(), and in bulk through cleanup_expired().
The map never holds more than max_entries; the oldest entry is evicted first.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class CacheEntry:
    """A cached entry with metadata"""
    value: Any
    created_at: float
    ttl_seconds: float
    access_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.created_at + self.ttl_seconds


def make_key(model_kind: str, subject_id: str) -> str:
    return f"ml:{model_kind}:{subject_id}"


class PredictionCache:
    """Thread-safe in-memory TTL cache with a size cap."""

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        time_fn: Optional[Callable[[], float]] = None,
        max_entries: int = 10000,
        cleanup_interval: float = 60.0,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, int(max_entries))
        self.cleanup_interval = cleanup_interval
        self._time = time_fn or time.monotonic
        # insertion ordered: first key is the oldest write
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._last_sweep = self._time()
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            if entry.is_expired(self._time()):
                del self._cache[key]
                self._stats["evictions"] += 1
                self._stats["misses"] += 1
                return None
            entry.access_count += 1
            self._stats["hits"] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        now = self._time()
        with self._lock:
            if now - self._last_sweep >= self.cleanup_interval:
                self.cleanup_expired()

            self._cache.pop(key, None)
            if len(self._cache) >= self.max_entries:
                self.cleanup_expired()
            while len(self._cache) >= self.max_entries:
                del self._cache[next(iter(self._cache))]
                self._stats["evictions"] += 1

            self._cache[key] = CacheEntry(
                value=value,
                created_at=now,
                ttl_seconds=self.ttl_seconds if ttl_seconds is None else ttl_seconds,
            )
            self._stats["sets"] += 1

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self, prefix: Optional[str] = None) -> int:
        with self._lock:
            if prefix is None:
                n = len(self._cache)
                self._cache.clear()
                return n
            keys = [k for k in self._cache if k.startswith(prefix)]
            for k in keys:
                del self._cache[k]
            return len(keys)

    def cleanup_expired(self) -> int:
        now = self._time()
        with self._lock:
            expired = [k for k, e in self._cache.items() if e.is_expired(now)]
            for k in expired:
                del self._cache[k]
            self._stats["evictions"] += len(expired)
            self._last_sweep = now
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "size": len(self._cache),
                "max_entries": self.max_entries,
                "hit_rate": self._stats["hits"] / total if total else 0.0,
            }
