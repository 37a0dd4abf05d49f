"""Sliding-window rate limiter for outbound API calls.

Kommo allows about 7 requests per second per account. The limiter keeps the
start times of recent requests per key (the API domain) and makes callers
wait until a slot in the rolling window frees up, so at most ``max_requests``
calls start within any ``window_seconds`` interval.

The clock and sleep functions are injectable for deterministic tests.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)


class SlidingWindowRateLimiter:
    """Async limiter admitting at most ``max_requests`` per rolling window.

    Args:
        max_requests: Calls allowed per window (per key).
        window_seconds: Window length in seconds.
        clock: Monotonic time source.
        sleep: Coroutine used to wait for a free slot.
    """

    def __init__(
        self,
        max_requests: int = 7,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: dict[str, deque[float]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _prune(self, key: str, now: float) -> deque[float]:
        timestamps = self._timestamps.setdefault(key, deque())
        cutoff = now - self.window_seconds
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        return timestamps

    async def acquire(self, key: str = "default") -> None:
        """Wait until a request for ``key`` may start, then record it."""
        lock = self._locks.setdefault(key, asyncio.Lock())
        # Waiters queue on the lock so slots are handed out in arrival order
        async with lock:
            while True:
                now = self._clock()
                timestamps = self._prune(key, now)
                if len(timestamps) < self.max_requests:
                    timestamps.append(now)
                    return
                delay = timestamps[0] + self.window_seconds - now
                logger.debug("rate_limit.waiting", key=key, delay=round(delay, 3))
                await self._sleep(max(delay, 0.0))

    def remaining(self, key: str = "default") -> int:
        """Slots still free in the current window for ``key``."""
        timestamps = self._prune(key, self._clock())
        return max(0, self.max_requests - len(timestamps))
