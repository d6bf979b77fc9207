# =============================================
# File: giftfinder/utils/ratelimit.py
# Purpose: In-memory fixed-window rate limiter (per process)
# =============================================
from __future__ import annotations
import math
import threading
import time
from typing import Callable, Dict, Tuple

from .errors import RateLimitExceeded


class FixedWindowRateLimiter:
    """
    At most `max_requests` per key in each `window_s` window. The counter
    resets when a new window starts. Raises RateLimitExceeded with the whole
    seconds left in the current window.
    """

    def __init__(self, max_requests: int = 60, window_s: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.max_requests = int(max_requests)
        self.window_s = float(window_s)
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (window_start, count)
        self._store: Dict[str, Tuple[float, int]] = {}

    def check(self, key: str = "global") -> None:
        now = self._clock()
        with self._lock:
            start, count = self._store.get(key, (now, 0))
            if now - start >= self.window_s:
                start, count = now, 0
            if count >= self.max_requests:
                remaining = self.window_s - (now - start)
                raise RateLimitExceeded(retry_after=max(1, math.ceil(remaining)))
            self._store[key] = (start, count + 1)

    def remaining(self, key: str = "global") -> int:
        now = self._clock()
        with self._lock:
            start, count = self._store.get(key, (now, 0))
            if now - start >= self.window_s:
                return self.max_requests
            return max(0, self.max_requests - count)

    def reset(self) -> None:
        """For tests: clear in-memory counters."""
        with self._lock:
            self._store.clear()
