"""
Injectable registry for process-wide resilience state.

Owns the circuit breakers (one per logical dependency) and the rate-limiter
windows. Tests build their own registry to isolate state; the API builds one
per application instance.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

from deckforge.resilience.cancellation import CancellationToken
from deckforge.resilience.circuit_breaker import CircuitBreaker
from deckforge.resilience.rate_limiter import FixedWindowRateLimiter, RateLimitRule
from deckforge.resilience.retry import RetryOptions, with_retry_throw

if TYPE_CHECKING:
    from config import Settings

T = TypeVar("T")


class ResilienceRegistry:
    """Breakers and rate-limiter state, keyed and lock-protected."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 60.0,
        rate_limits: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.rate_limits = rate_limits or {
            "generate": RateLimitRule(max_requests=5),
            "status": RateLimitRule(max_requests=60),
        }
        self._clock = clock
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}
        self.rate_limiter = FixedWindowRateLimiter(clock=clock)

    @classmethod
    def from_settings(cls, settings: Settings) -> ResilienceRegistry:
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            reset_timeout_seconds=settings.circuit_reset_seconds,
            rate_limits={
                name: RateLimitRule(max_requests=limit)
                for name, limit in settings.get_rate_limits().items()
            },
        )

    def breaker(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                key,
                failure_threshold=self.failure_threshold,
                reset_timeout_seconds=self.reset_timeout_seconds,
                clock=self._clock,
            )
            self._breakers[key] = breaker
        return breaker

    def rule(self, endpoint_class: str) -> RateLimitRule:
        return self.rate_limits.get(endpoint_class, RateLimitRule(max_requests=60))

    async def call(
        self,
        dependency: str,
        fn: Callable[[], Awaitable[T]],
        options: RetryOptions | None = None,
        *,
        cancel_token: CancellationToken | None = None,
        label: str | None = None,
    ) -> T:
        """
        Call a dependency through its circuit breaker with retries.

        One exhausted retry sequence counts as one breaker failure.

        Raises:
            CircuitOpenError: Without attempting the call, if the breaker is open
        """
        breaker = self.breaker(dependency)
        return await breaker.call(
            lambda: with_retry_throw(
                fn,
                options,
                cancel_token=cancel_token,
                sleep=self._sleep,
                label=label or dependency,
            )
        )

    def breaker_status(self, key: str) -> dict[str, Any] | None:
        breaker = self._breakers.get(key)
        return breaker.status().to_dict() if breaker else None

    async def reset_breaker(self, key: str) -> None:
        breaker = self._breakers.get(key)
        if breaker is not None:
            await breaker.reset()

    def snapshot(self) -> dict[str, Any]:
        return {
            "circuit_breakers": {
                key: breaker.status().to_dict() for key, breaker in self._breakers.items()
            },
            "rate_limits": {
                name: {"max_requests": rule.max_requests, "window_seconds": rule.window_seconds}
                for name, rule in self.rate_limits.items()
            },
        }
