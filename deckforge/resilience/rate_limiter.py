"""
Fixed-window rate limiter keyed by (caller, endpoint).

Each key's read-check-increment runs under that key's lock so two concurrent
calls cannot both slip past a just-exceeded ceiling.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from deckforge.errors import RateLimitExceeded


@dataclass(frozen=True)
class RateLimitRule:
    """Ceiling for one endpoint class."""

    max_requests: int
    window_seconds: float = 60.0


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_at: float


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """Counts requests per (caller, endpoint) in fixed windows."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, max_keys: int = 10_000):
        self._clock = clock
        self.max_keys = max_keys
        self._windows: dict[str, _Window] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def make_key(caller: str, endpoint: str) -> str:
        return f"{caller}:{endpoint}"

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _sweep(self, now: float) -> int:
        """Drop expired windows and their idle locks. Returns how many were dropped."""
        dropped = 0
        for key in [k for k, w in self._windows.items() if now >= w.reset_at]:
            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                continue
            del self._windows[key]
            self._locks.pop(key, None)
            dropped += 1
        return dropped

    async def hit(self, caller: str, endpoint: str, rule: RateLimitRule) -> RateLimitDecision:
        """Count one request and report whether it is within the ceiling."""
        if len(self._windows) >= self.max_keys:
            self._sweep(self._clock())
        key = self.make_key(caller, endpoint)
        async with self._lock_for(key):
            now = self._clock()
            window = self._windows.get(key)

            if window is None or now >= window.reset_at:
                window = _Window(count=1, reset_at=now + rule.window_seconds)
                self._windows[key] = window
                return RateLimitDecision(
                    allowed=True,
                    limit=rule.max_requests,
                    remaining=max(0, rule.max_requests - 1),
                    retry_after_seconds=0,
                    reset_at=window.reset_at,
                )

            if window.count >= rule.max_requests:
                retry_after = max(1, math.ceil(window.reset_at - now))
                return RateLimitDecision(
                    allowed=False,
                    limit=rule.max_requests,
                    remaining=0,
                    retry_after_seconds=min(retry_after, math.ceil(rule.window_seconds)),
                    reset_at=window.reset_at,
                )

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                limit=rule.max_requests,
                remaining=rule.max_requests - window.count,
                retry_after_seconds=0,
                reset_at=window.reset_at,
            )

    async def check(self, caller: str, endpoint: str, rule: RateLimitRule) -> RateLimitDecision:
        """
        Count one request, raising when it is over the ceiling.

        Raises:
            RateLimitExceeded: With the seconds until the window resets
        """
        decision = await self.hit(caller, endpoint, rule)
        if not decision.allowed:
            raise RateLimitExceeded(decision.retry_after_seconds, decision.limit)
        return decision

    def reset(self) -> None:
        self._windows.clear()
        self._locks.clear()

    @property
    def tracked_keys(self) -> int:
        return len(self._windows)
