"""
Fixed-window rate limiter for the Gateway.
"""

import math
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from shared.logging import get_logger


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one limiter check."""

    allowed: bool
    limit: int
    remaining: int
    reset_after: float
    retry_after: Optional[float] = None

    def headers(self) -> Dict[str, str]:
        """Standard rate limit headers advertised on passing responses."""
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(max(0, math.ceil(self.reset_after))),
        }


@dataclass
class WindowCounter:
    """Requests seen from one client key in its current window."""

    count: int
    window_start: float


class RateLimiter(ABC):
    """Interface the gateway uses to ask whether a client may proceed."""

    limit: int
    window_seconds: float
    backend: str = "unknown"

    @abstractmethod
    async def check(self, client_key: str) -> RateLimitDecision:
        """Count one request from ``client_key`` and decide on it."""

    def stats(self) -> Dict[str, Any]:
        return {"backend": self.backend, "limit": self.limit, "window_seconds": self.window_seconds}

    async def close(self) -> None:
        return None


class FixedWindowRateLimiter(RateLimiter):
    """In-process fixed-window limiter.

    Counters live in an ordered map whose order follows ``window_start``: a
    counter is re-inserted at the end whenever its window restarts. Expired
    counters are therefore always at the front, which keeps both the periodic
    sweep and the capacity eviction cheap.

    A window covers ``[window_start, window_start + window_seconds]``; it
    restarts on the first hit strictly after its end.

    ``hit`` holds a lock across the whole read-modify-write and never awaits,
    so concurrent checks for one key are linearizable whether they come from
    coroutines or threads.
    """

    backend = "memory"

    def __init__(
        self,
        limit: int = 100,
        window_seconds: float = 15 * 60,
        max_keys: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_keys < 1:
            raise ValueError("max_keys must be positive")

        self.limit = limit
        self.window_seconds = window_seconds
        self.max_keys = max_keys
        self.logger = get_logger("gateway.rate_limiter")
        self._clock = clock
        self._counters: "OrderedDict[str, WindowCounter]" = OrderedDict()
        self._lock = threading.Lock()
        self._last_sweep = clock()
        self._evicted = 0

    async def check(self, client_key: str) -> RateLimitDecision:
        return self.hit(client_key)

    def hit(self, client_key: str) -> RateLimitDecision:
        """Synchronous, thread-safe core of ``check``."""
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)

            counter = self._counters.get(client_key)
            if counter is None or now > counter.window_start + self.window_seconds:
                if counter is None:
                    self._make_room()
                else:
                    del self._counters[client_key]
                counter = WindowCounter(count=1, window_start=now)
                self._counters[client_key] = counter
            else:
                counter.count += 1

            # A clock that steps backwards must never produce a negative wait.
            reset_after = max(0.0, counter.window_start + self.window_seconds - now)

            if counter.count > self.limit:
                return RateLimitDecision(
                    allowed=False,
                    limit=self.limit,
                    remaining=0,
                    reset_after=reset_after,
                    retry_after=reset_after,
                )

            return RateLimitDecision(
                allowed=True,
                limit=self.limit,
                remaining=self.limit - counter.count,
                reset_after=reset_after,
            )

    def _sweep(self, now: float) -> None:
        """Drop counters whose window has ended."""
        while self._counters:
            key, counter = next(iter(self._counters.items()))
            if now <= counter.window_start + self.window_seconds:
                break
            del self._counters[key]
        self._last_sweep = now

    def _make_room(self) -> None:
        while len(self._counters) >= self.max_keys:
            key, _ = self._counters.popitem(last=False)
            self._evicted += 1
            self.logger.debug("Evicted rate limit counter", client_key=key, max_keys=self.max_keys)

    def reset(self, client_key: str) -> bool:
        """Forget the counter for ``client_key``."""
        with self._lock:
            return self._counters.pop(client_key, None) is not None

    def get_counter(self, client_key: str) -> Optional[WindowCounter]:
        with self._lock:
            counter = self._counters.get(client_key)
            return WindowCounter(counter.count, counter.window_start) if counter else None

    def __len__(self) -> int:
        return len(self._counters)

    def stats(self) -> Dict[str, Any]:
        stats = super().stats()
        stats.update({"tracked_clients": len(self._counters), "evicted_clients": self._evicted})
        return stats
