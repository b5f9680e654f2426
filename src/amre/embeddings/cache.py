from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


def cache_key(text: str) -> str:
    """sha256 of the trimmed, lower-cased text."""
    return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()


class EmbeddingCache:
    """LRU cache of vectors keyed by normalised text, with a TTL.

    A ``max_size`` of 0 disables caching.  A ``ttl_sec`` of 0 keeps
    vectors until they are evicted.
    """

    def __init__(self, max_size: int = 1000, ttl_sec: float = 86_400.0,
                 clock: Optional[Callable[[], float]] = None) -> None:
        if max_size < 0:
            raise ValueError("max_size must not be negative")
        self.max_size = max_size
        self.ttl_sec = ttl_sec
        self._clock = clock or time.monotonic
        self._data: "OrderedDict[str, Tuple[float, List[float]]]" = OrderedDict()
        self._lock = threading.Lock()
        self.stats = CacheStats()

    @property
    def enabled(self) -> bool:
        return self.max_size > 0

    def __len__(self) -> int:
        return len(self._data)

    def get(self, text: str) -> Optional[List[float]]:
        if not self.enabled:
            return None
        key = cache_key(text)
        with self._lock:
            item = self._data.get(key)
            if item is not None and self._expired(item[0]):
                del self._data[key]
                self.stats.expirations += 1
                item = None
            if item is None:
                self.stats.misses += 1
                self.stats.size = len(self._data)
                return None
            self._data.move_to_end(key)
            self.stats.hits += 1
            return list(item[1])

    def put(self, text: str, vector: List[float]) -> None:
        if not self.enabled:
            return
        key = cache_key(text)
        with self._lock:
            self._data[key] = (self._clock(), list(vector))
            self._data.move_to_end(key)
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)
                self.stats.evictions += 1
            self.stats.size = len(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self.stats.size = 0

    def _expired(self, stored_at: float) -> bool:
        return self.ttl_sec > 0 and self._clock() - stored_at > self.ttl_sec
