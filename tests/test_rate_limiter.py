"""
test_rate_limiter.py — Tests for stocksync/sync/rate_limiter.py

Covers the rolling window, minimum spacing, FIFO ordering of waiters,
throttle penalties and cancellation while queued. A fake monotonic clock
whose sleep() advances time keeps the tests instant and deterministic.

Called by: pytest
Depends on: stocksync/sync/rate_limiter.py
"""

import asyncio

import pytest

from stocksync.sync.rate_limiter import RateLimiter, limiter_from_settings


def _run(coro):
    """Run an async coroutine synchronously in a fresh event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def _limiter(t: FakeTime, **kwargs) -> RateLimiter:
    return RateLimiter(clock=t.clock, sleep=t.sleep, **kwargs)


class TestWindow:
    def test_allows_max_calls_per_window(self):
        t = FakeTime()
        limiter = _limiter(t, max_calls=2, window=1.0)

        async def go():
            stamps = []
            for _ in range(5):
                await limiter.acquire()
                stamps.append(t.now)
            return stamps

        assert _run(go()) == [0.0, 0.0, 1.0, 1.0, 2.0]

    def test_min_interval_spaces_calls(self):
        t = FakeTime()
        limiter = _limiter(t, max_calls=10, window=1.0, min_interval=0.5)

        async def go():
            stamps = []
            for _ in range(3):
                await limiter.acquire()
                stamps.append(t.now)
            return stamps

        assert _run(go()) == [0.0, 0.5, 1.0]

    def test_acquire_reports_wait_time(self):
        t = FakeTime()
        limiter = _limiter(t, max_calls=1, window=2.0)

        async def go():
            return [await limiter.acquire(), await limiter.acquire()]

        assert _run(go()) == [0.0, 2.0]
        assert limiter.status()["total_waited_seconds"] == 2.0

    def test_context_manager_acquires(self):
        t = FakeTime()
        limiter = _limiter(t, max_calls=1, window=1.0)

        async def go():
            async with limiter:
                pass
            async with limiter:
                pass

        _run(go())
        assert limiter.total_acquired == 2
        assert t.now == 1.0

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            RateLimiter(max_calls=0)
        with pytest.raises(ValueError):
            RateLimiter(window=0)


class TestOrdering:
    def test_waiters_served_in_arrival_order(self):
        t = FakeTime()
        limiter = _limiter(t, max_calls=1, window=1.0)
        order = []

        async def worker(n):
            await limiter.acquire()
            order.append((n, t.now))

        async def go():
            await asyncio.gather(*(worker(n) for n in range(4)))

        _run(go())
        assert order == [(0, 0.0), (1, 1.0), (2, 2.0), (3, 3.0)]

    def test_cancelled_waiter_does_not_consume_a_slot(self):
        # Real clock: the waiter is cancelled while genuinely queued
        limiter = RateLimiter(max_calls=1, window=0.2)

        async def go():
            await limiter.acquire()
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(limiter.acquire(), timeout=0.02)
            after_cancel = limiter.status()
            await limiter.acquire()
            return after_cancel

        after_cancel = _run(go())
        assert after_cancel["total_acquired"] == 1
        assert after_cancel["calls_in_window"] == 1
        assert after_cancel["queue_length"] == 0
        assert limiter.total_acquired == 2


class TestPenalize:
    def test_penalty_blocks_next_call(self):
        t = FakeTime()
        limiter = _limiter(t, max_calls=10, window=1.0)

        async def go():
            await limiter.acquire()
            limiter.penalize(3)
            assert limiter.status()["blocked_for"] == 3
            await limiter.acquire()

        _run(go())
        assert t.now == 3.0

    def test_shorter_penalty_does_not_shrink_block(self):
        t = FakeTime()
        limiter = _limiter(t)
        limiter.penalize(5)
        limiter.penalize(1)
        limiter.penalize(0)
        assert limiter.status()["blocked_for"] == 5


def test_limiter_from_settings(test_settings):
    limiter = limiter_from_settings(test_settings)
    assert limiter.max_calls == test_settings.rate_limit_requests
    assert limiter.window == test_settings.rate_limit_window_seconds
    assert limiter.min_interval == test_settings.rate_limit_min_interval_seconds
