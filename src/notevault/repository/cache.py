"""Bounded least-recently-used read cache with expiry."""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class LRUCache(Generic[V]):
    """Ordered map evicting the least recently used entry when full.

    Reads refresh recency. Entries older than ``ttl_seconds`` are treated
    as missing and dropped on access. A ``max_size`` of 0 disables caching.
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl_seconds: Optional[float] = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 0:
            raise ValueError("max_size must be >= 0")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()
        self._lock = threading.Lock()
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, record=False) is not None

    def _expired(self, stored_at: float) -> bool:
        return (
            self.ttl_seconds is not None
            and self._clock() - stored_at > self.ttl_seconds
        )

    def get(self, key: Hashable, record: bool = True) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                if record:
                    self.stats.misses += 1
                return None
            stored_at, value = entry
            if self._expired(stored_at):
                del self._entries[key]
                self.stats.expirations += 1
                if record:
                    self.stats.misses += 1
                return None
            self._entries.move_to_end(key)
            if record:
                self.stats.hits += 1
            return value

    def set(self, key: Hashable, value: V) -> None:
        if self.max_size == 0:
            return
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)
            self._entries[key] = (self._clock(), value)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self.stats.evictions += 1

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> list:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "evictions": self.stats.evictions,
            "expirations": self.stats.expirations,
            "hit_rate": round(self.stats.hit_rate, 3),
        }
