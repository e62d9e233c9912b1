# =============================================
# File: cuppa/utils/ttlcache.py
# Purpose: In-process TTL cache with LRU eviction (read-through store for snapshots)
# =============================================
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    key -> (stored_at, value). Entries past `ttl` are never returned: they are dropped
    lazily on access and in bulk by `sweep()`. `set` replaces the whole entry, values are
    never mutated in place, so concurrent readers always see a complete snapshot.
    """
    def __init__(self, ttl: float, max_entries: int = 1000, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = float(ttl)
        self.max_entries = max_entries
        self._clock = clock
        self._store: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _expired(self, stored_at: float, now: float) -> bool:
        return now - stored_at >= self.ttl

    def get(self, key: Hashable) -> Optional[V]:
        now = self._clock()
        with self._lock:
            item = self._store.get(key)
            if item is None:
                self.misses += 1
                return None
            stored_at, val = item
            if self._expired(stored_at, now):
                self._store.pop(key, None)
                self.misses += 1
                return None
            # LRU touch
            self._store.move_to_end(key, last=True)
            self.hits += 1
            return val

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            self._store[key] = (self._clock(), value)
            self._store.move_to_end(key, last=True)
            while len(self._store) > self.max_entries:
                self._store.popitem(last=False)

    def invalidate(self, key: Hashable) -> bool:
        with self._lock:
            return self._store.pop(key, None) is not None

    def invalidate_where(self, match: Callable[[Hashable], bool]) -> int:
        """Drop every entry whose key satisfies `match`; returns how many were removed."""
        with self._lock:
            dead = [k for k in self._store if match(k)]
            for k in dead:
                del self._store[k]
        return len(dead)

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        with self._lock:
            dead = [k for k, (ts, _) in self._store.items() if self._expired(ts, now)]
            for k in dead:
                self._store.pop(k, None)
        return len(dead)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0
