"""
core/ratelimit.py -- Fixed-window rate limiter keyed by arbitrary strings.

Used by the OTP policy to throttle per (email, purpose) pairs. Per-IP route
limits are handled separately by slowapi (api/limiter.py).

Algorithm (fixed window, O(1) memory per key):
  - first check for a key: count=1, window_reset_at=now+window, allowed
  - now > window_reset_at: start a new window (count=1), allowed
  - count < max_attempts: increment, allowed
  - otherwise: denied, state unchanged

A burst of up to 2*max_attempts is possible across a window boundary. Callers
and tests rely on the exact fixed-window counts, so do not swap in a sliding
log or token bucket without treating it as a behaviour change.

Counters are process-local: several app instances each keep their own table
and throttling is per instance. RateLimiter is the substitution point for a
shared-store implementation with the same check()/cleanup() contract.

Layer rule: core/ is the kernel. No imports from api/, web/, or auth/.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("authgate.ratelimit")


@dataclass
class RateLimitEntry:
    count: int
    window_reset_at: float


class RateLimiter(abc.ABC):
    """Contract shared by every rate limiter backend."""

    @abc.abstractmethod
    def check(self, key: str, max_attempts: int, window_seconds: float) -> bool:
        """Return True (and count the attempt) if allowed, False if denied."""

    @abc.abstractmethod
    def cleanup(self) -> int:
        """Drop expired windows. Returns the number of entries removed."""

    async def start(self, interval_seconds: float) -> None:
        """Begin periodic cleanup. No-op for backends that expire on their own."""

    async def stop(self) -> None:
        """Stop periodic cleanup."""


class InMemoryRateLimiter(RateLimiter):
    """Process-local fixed-window limiter.

    check() holds a lock across its read-modify-write so two concurrent
    requests cannot both observe count < max for the last slot. cleanup()
    takes the same lock and only deletes entries whose window has passed.

    The clock is injectable (seconds, monotonic by default) so tests can move
    time forward deterministically.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def check(self, key: str, max_attempts: int, window_seconds: float) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now > entry.window_reset_at:
                self._entries[key] = RateLimitEntry(count=1, window_reset_at=now + window_seconds)
                return True
            if entry.count < max_attempts:
                entry.count += 1
                return True
            return False

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now > entry.window_reset_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Rate limiter sweep removed %d expired entries", len(expired))
        return len(expired)

    def get(self, key: str) -> Optional[RateLimitEntry]:
        """Return a copy of the live entry for key, if any."""
        with self._lock:
            entry = self._entries.get(key)
            return RateLimitEntry(entry.count, entry.window_reset_at) if entry else None

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def _sweep_loop(self, interval_seconds: float) -> None:
        """Call cleanup() every interval_seconds until cancelled.

        CancelledError from stop() propagates out of asyncio.sleep and unwinds
        the coroutine cleanly.
        """
        while True:
            await asyncio.sleep(interval_seconds)
            self.cleanup()

    async def start(self, interval_seconds: float) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
