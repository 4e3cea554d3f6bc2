"""
tests/test_ratelimit.py -- Unit tests for the fixed-window InMemoryRateLimiter.

A fake clock drives window expiry so no test sleeps.
"""

from __future__ import annotations

import asyncio
import threading

from core.ratelimit import InMemoryRateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_allows_max_attempts_then_denies() -> None:
    limiter = InMemoryRateLimiter(clock=FakeClock())
    results = [limiter.check("k", 5, 60) for _ in range(6)]
    assert results == [True, True, True, True, True, False]


def test_denied_call_does_not_mutate_count() -> None:
    limiter = InMemoryRateLimiter(clock=FakeClock())
    for _ in range(3):
        limiter.check("k", 3, 60)
    reset_at = limiter.get("k").window_reset_at
    assert limiter.check("k", 3, 60) is False
    assert limiter.check("k", 3, 60) is False
    entry = limiter.get("k")
    assert entry.count == 3
    assert entry.window_reset_at == reset_at


def test_new_window_after_expiry() -> None:
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    for _ in range(5):
        limiter.check("k", 5, 60)
    assert limiter.check("k", 5, 60) is False

    # Still inside the window at exactly window_reset_at.
    clock.advance(60)
    assert limiter.check("k", 5, 60) is False

    clock.advance(0.001)
    assert limiter.check("k", 5, 60) is True
    assert limiter.get("k").count == 1


def test_keys_are_independent() -> None:
    limiter = InMemoryRateLimiter(clock=FakeClock())
    for _ in range(2):
        limiter.check("a", 2, 60)
    assert limiter.check("a", 2, 60) is False
    assert limiter.check("b", 2, 60) is True


def test_cleanup_removes_only_expired_entries() -> None:
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    limiter.check("short", 5, 10)
    limiter.check("long", 5, 100)
    clock.advance(50)
    assert limiter.cleanup() == 1
    assert limiter.get("short") is None
    assert limiter.get("long") is not None
    assert len(limiter) == 1


def test_cleanup_on_empty_table_is_noop() -> None:
    limiter = InMemoryRateLimiter(clock=FakeClock())
    assert limiter.cleanup() == 0


def test_sweep_task_starts_and_stops() -> None:
    async def scenario() -> None:
        limiter = InMemoryRateLimiter()
        await limiter.start(3600)
        await limiter.start(3600)  # second start is ignored
        await limiter.stop()
        await limiter.stop()

    asyncio.run(scenario())


def test_concurrent_checks_admit_exactly_max() -> None:
    limiter = InMemoryRateLimiter()
    barrier = threading.Barrier(50)
    results: list[bool] = []
    results_lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        allowed = limiter.check("k", 5, 60)
        with results_lock:
            results.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 50
    assert results.count(True) == 5
    assert limiter.get("k").count == 5
