from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, FrozenSet, Optional, Tuple

log = logging.getLogger("loadtools.validation.reference")


class ReferenceCache:
    """
    Foreign-key existence cache for referential-integrity rules.

    Each (table, column) key set is loaded with a single provider call the
    first time it is needed in an execution and reloaded only once it is
    older than ``ttl_seconds``. Membership tests afterwards never touch the
    provider.
    """

    def __init__(self, provider: Any, ttl_seconds: float = 300.0,
                 clock: Callable[[], float] = time.monotonic):
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sets: Dict[Tuple[str, str], Tuple[float, FrozenSet[str]]] = {}
        self._load_lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.loads = 0

    def _fresh(self, key: Tuple[str, str]) -> Optional[FrozenSet[str]]:
        entry = self._sets.get(key)
        if entry is not None and self._clock() - entry[0] < self.ttl_seconds:
            return entry[1]
        return None

    def keys_for(self, table: str, column: str) -> FrozenSet[str]:
        key = (table, column)
        keys = self._fresh(key)
        if keys is not None:
            self.hits += 1
            return keys
        with self._load_lock:
            # another worker may have loaded while we waited
            keys = self._fresh(key)
            if keys is not None:
                self.hits += 1
                return keys
            self.misses += 1
            loaded = frozenset(str(k).strip() for k in self.provider.load_keys(table, column))
            self._sets[key] = (self._clock(), loaded)
            self.loads += 1
            log.info("Reference keys loaded: %s.%s (%d keys)", table, column, len(loaded))
            return loaded

    def contains(self, table: str, column: str, value: str) -> bool:
        return str(value).strip() in self.keys_for(table, column)

    @property
    def hit_ratio(self) -> Optional[float]:
        total = self.hits + self.misses
        return self.hits / total if total else None

    def stats(self) -> Dict[str, Any]:
        return {"sets": len(self._sets), "loads": self.loads, "hits": self.hits,
                "misses": self.misses, "hit_ratio": self.hit_ratio}
