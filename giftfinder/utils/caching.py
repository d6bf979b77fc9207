# =============================================
# File: giftfinder/utils/caching.py
# Purpose: In-memory TTL cache with LRU eviction
# =============================================
from __future__ import annotations
import time
from collections import OrderedDict
from typing import Any, Callable, Iterator, Optional, Tuple


class TTLCache:
    """
    Bounded in-process map. Entries expire `ttl` seconds after they are set;
    the least recently used entry is evicted once `max_entries` is exceeded.
    Not shared across processes.
    """

    def __init__(self, ttl: float, max_entries: int = 1000, clock: Callable[[], float] = time.time):
        self.ttl = float(ttl)
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        # key -> (expires_at, value)
        self._store: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> Optional[Any]:
        item = self._store.get(key)
        if item is None:
            return None
        exp, val = item
        if exp <= self._clock():
            self._store.pop(key, None)
            return None
        self._store.move_to_end(key, last=True)
        return val

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        exp = self._clock() + (self.ttl if ttl is None else float(ttl))
        self._store[key] = (exp, value)
        self._store.move_to_end(key, last=True)
        while len(self._store) > self.max_entries:
            self._store.popitem(last=False)

    def pop(self, key: str) -> Optional[Any]:
        item = self._store.pop(key, None)
        return item[1] if item else None

    def items(self) -> Iterator[Tuple[str, Any]]:
        """Live (key, value) pairs, oldest first. Does not touch LRU order."""
        now = self._clock()
        for k, (exp, val) in list(self._store.items()):
            if exp > now:
                yield k, val

    def prune(self) -> int:
        now = self._clock()
        dead = [k for k, (exp, _) in self._store.items() if exp <= now]
        for k in dead:
            self._store.pop(k, None)
        return len(dead)

    def clear(self) -> None:
        self._store.clear()
