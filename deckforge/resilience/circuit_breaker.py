"""
Circuit breaker keyed per dependency.

States: CLOSED (normal), OPEN (rejecting), HALF_OPEN (one trial call allowed).

Retry tolerates a single call's blip; the breaker stops hammering a dependency
that is already down.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from loguru import logger

from deckforge.errors import CancellationError, CircuitOpenError, ContentError

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitBreakerState:
    """Snapshot of one breaker."""

    key: str
    failures: int = 0
    last_failure: float | None = None
    state: CircuitState = CircuitState.CLOSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "failures": self.failures,
            "last_failure": self.last_failure,
            "state": self.state.value,
        }


def counts_as_failure(error: BaseException) -> bool:
    """Content problems and cancellations say nothing about dependency health."""
    return not isinstance(error, (ContentError, CancellationError, CircuitOpenError))


class CircuitBreaker:
    """Per-dependency breaker; state changes happen under the breaker's lock."""

    def __init__(
        self,
        key: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state = CircuitBreakerState(key=key)
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def failures(self) -> int:
        return self._state.failures

    def _remaining_seconds(self) -> int:
        elapsed = self._clock() - (self._state.last_failure or 0.0)
        return max(1, math.ceil(self.reset_timeout_seconds - elapsed))

    async def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: While open inside the cool-down, or while a
                half-open trial call is already in flight
        """
        async with self._lock:
            state = self._state
            if state.state == CircuitState.CLOSED:
                return

            if state.state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.key, self._remaining_seconds())
                self._trial_in_flight = True
                return

            elapsed = self._clock() - (state.last_failure or 0.0)
            if elapsed < self.reset_timeout_seconds:
                raise CircuitOpenError(self.key, self._remaining_seconds())

            state.state = CircuitState.HALF_OPEN
            self._trial_in_flight = True
            logger.info(f"Circuit {self.key} half-open: allowing one trial call")

    async def record_success(self) -> None:
        async with self._lock:
            if self._state.state != CircuitState.CLOSED:
                logger.info(f"Circuit {self.key} closed after successful trial call")
            self._state.failures = 0
            self._state.state = CircuitState.CLOSED
            self._trial_in_flight = False

    async def record_failure(self) -> None:
        async with self._lock:
            state = self._state
            state.failures += 1
            state.last_failure = self._clock()
            was_half_open = state.state == CircuitState.HALF_OPEN
            self._trial_in_flight = False

            if was_half_open or state.failures >= self.failure_threshold:
                if state.state != CircuitState.OPEN:
                    logger.error(
                        f"Circuit {self.key} OPENED after {state.failures} consecutive failures"
                    )
                state.state = CircuitState.OPEN

    async def release_trial(self) -> None:
        """Give back a half-open trial call slot without judging the dependency."""
        async with self._lock:
            self._trial_in_flight = False

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Execute `fn` under the breaker."""
        await self.before_call()
        try:
            result = await fn()
        except Exception as e:
            if counts_as_failure(e):
                await self.record_failure()
            else:
                await self.release_trial()
            raise
        except BaseException:
            await self.release_trial()
            raise
        await self.record_success()
        return result

    async def reset(self) -> None:
        async with self._lock:
            self._state = CircuitBreakerState(key=self.key)
            self._trial_in_flight = False

    def status(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            key=self._state.key,
            failures=self._state.failures,
            last_failure=self._state.last_failure,
            state=self._state.state,
        )
