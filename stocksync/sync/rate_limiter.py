"""Outbound rate limiter for calls to the remote source.

Admits at most `max_calls` acquisitions per rolling `window` seconds, with an
optional minimum spacing between consecutive calls. Waiters are served in
arrival order: the internal asyncio.Lock hands itself to waiters FIFO and only
the lock holder sleeps toward the next free slot.

A waiter cancelled while queued (task cancel or asyncio.wait_for timeout)
leaves the queue without consuming a slot. Nothing is ever dropped silently.

Usage:
    limiter = RateLimiter(max_calls=2, window=1.0, min_interval=0.5)
    await limiter.acquire()
    resp = await http.get(url)
"""

import asyncio
import logging
import time
from collections import deque

log = logging.getLogger("stocksync.ratelimit")


class RateLimiter:
    def __init__(
        self,
        max_calls: int = 2,
        window: float = 1.0,
        min_interval: float = 0.0,
        *,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        if window <= 0:
            raise ValueError("window must be > 0")
        self.max_calls = max_calls
        self.window = window
        self.min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._stamps: deque[float] = deque()
        self._blocked_until = 0.0
        self._waiting = 0
        self.total_acquired = 0
        self.total_waited = 0.0

    def _next_free(self, now: float) -> float:
        """Earliest monotonic time at which one more call may start."""
        while self._stamps and now - self._stamps[0] >= self.window:
            self._stamps.popleft()
        ready = max(now, self._blocked_until)
        if len(self._stamps) >= self.max_calls:
            ready = max(ready, self._stamps[0] + self.window)
        if self.min_interval and self._stamps:
            ready = max(ready, self._stamps[-1] + self.min_interval)
        return ready

    async def acquire(self) -> float:
        """Block until a slot is free. Returns seconds spent waiting."""
        self._waiting += 1
        started = self._clock()
        try:
            async with self._lock:
                while True:
                    now = self._clock()
                    ready = self._next_free(now)
                    if ready <= now:
                        break
                    await self._sleep(ready - now)
                self._stamps.append(self._clock())
                self.total_acquired += 1
        finally:
            self._waiting -= 1
        waited = self._clock() - started
        self.total_waited += waited
        if waited > 1:
            log.debug("Rate limiter: waited %.2fs for a slot", waited)
        return waited

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def penalize(self, seconds: float) -> None:
        """Hold every caller back for `seconds` (server sent a throttle hint)."""
        if seconds <= 0:
            return
        until = self._clock() + seconds
        if until > self._blocked_until:
            self._blocked_until = until
            log.warning("Rate limiter: remote throttled us, pausing %.1fs", seconds)

    def status(self) -> dict:
        now = self._clock()
        in_window = sum(1 for s in self._stamps if now - s < self.window)
        return {
            "queue_length": self._waiting,
            "calls_in_window": in_window,
            "blocked_for": max(0.0, self._blocked_until - now),
            "total_acquired": self.total_acquired,
            "total_waited_seconds": round(self.total_waited, 3),
            "config": {
                "max_calls": self.max_calls,
                "window": self.window,
                "min_interval": self.min_interval,
            },
        }


def limiter_from_settings(settings) -> RateLimiter:
    return RateLimiter(
        max_calls=settings.rate_limit_requests,
        window=settings.rate_limit_window_seconds,
        min_interval=settings.rate_limit_min_interval_seconds,
    )
