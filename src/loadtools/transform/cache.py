from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class LookupCache:
    """
    Bounded TTL cache keyed by (table, key).

    Hits refresh the entry's recency and the least recently used entry is
    evicted once ``max_entries`` is exceeded. The lock is held for bookkeeping
    only, never around the provider call: two workers missing on the same key
    both query the provider and the last write wins.
    """

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 10000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get_or_load(self, table: str, key: str, loader: Callable[[], Any]) -> Any:
        cache_key = (table, key)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is not None and now - entry[0] < self.ttl_seconds:
                self.hits += 1
                self._entries.move_to_end(cache_key)
                return entry[1]
            self.misses += 1

        value = loader()
        with self._lock:
            self._entries[cache_key] = (now, value)
            self._entries.move_to_end(cache_key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def hit_ratio(self) -> Optional[float]:
        total = self.hits + self.misses
        return self.hits / total if total else None

    def stats(self) -> Dict[str, Any]:
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "hit_ratio": self.hit_ratio,
        }
