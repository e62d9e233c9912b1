# =============================================
# File: cuppa/utils/ratelimit.py
# Purpose: Sliding-window limiter for recommendation requests, keyed by user
# =============================================
from __future__ import annotations
import os
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict


class RateLimitExceeded(RuntimeError):
    def __init__(self, key: str, retry_after: float) -> None:
        super().__init__(f"Rate limit exceeded for '{key}'")
        self.key = key
        self.retry_after = retry_after


class SlidingWindowLimiter:
    """Per key, at most `max_requests()` hits inside any `window_seconds()` span."""
    def __init__(
        self,
        max_requests: Callable[[], int],
        window_seconds: Callable[[], float],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max = max_requests
        self._window = window_seconds
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> None:
        now = self._clock()
        limit, window = self._max(), self._window()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= window:
                hits.popleft()
            if len(hits) >= limit:
                if not hits:
                    del self._hits[key]
                    raise RateLimitExceeded(key, retry_after=window)
                raise RateLimitExceeded(key, retry_after=max(0.0, window - (now - hits[0])))
            hits.append(now)

    def prune(self) -> int:
        """Forget keys whose hits have all left the window; returns how many were dropped."""
        now, window = self._clock(), self._window()
        with self._lock:
            idle = [k for k, hits in self._hits.items() if not hits or now - hits[-1] >= window]
            for k in idle:
                del self._hits[k]
        return len(idle)

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


# Limits are read per call so env overrides in tests apply without a restart
_default = SlidingWindowLimiter(
    max_requests=lambda: int(os.getenv("RL_MAX_REQS", "100")),
    window_seconds=lambda: float(os.getenv("RL_WINDOW_SECONDS", "60")),
)


def check_rate_limit(key: str) -> None:
    _default.hit(key)


def prune_rate_limit() -> int:
    return _default.prune()


def reset_rate_limit() -> None:
    _default.clear()
