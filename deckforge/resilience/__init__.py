"""
Resilience primitives shared by every LLM-backed stage.

Components:
- retry: with_retry / with_retry_throw with exponential backoff and presets
- circuit_breaker: per-dependency CLOSED/OPEN/HALF_OPEN breaker
- rate_limiter: fixed-window limiter keyed by (caller, endpoint)
- registry: injectable owner of breaker and limiter state
- cancellation: cooperative cancellation token
"""

from __future__ import annotations

from deckforge.resilience.cancellation import CancellationToken
from deckforge.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerState,
    CircuitState,
)
from deckforge.resilience.rate_limiter import (
    FixedWindowRateLimiter,
    RateLimitDecision,
    RateLimitRule,
)
from deckforge.resilience.registry import ResilienceRegistry
from deckforge.resilience.retry import (
    DOCUMENT_FETCH_RETRY,
    EMBEDDING_RETRY,
    GENERATION_RETRY,
    VERIFICATION_RETRY,
    RetryOptions,
    RetryResult,
    calculate_delay_ms,
    extract_retry_after_ms,
    is_retryable_error,
    with_retry,
    with_retry_throw,
)

__all__ = [
    "CancellationToken",
    "CircuitBreaker",
    "CircuitBreakerState",
    "CircuitState",
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "RateLimitRule",
    "ResilienceRegistry",
    "RetryOptions",
    "RetryResult",
    "GENERATION_RETRY",
    "VERIFICATION_RETRY",
    "EMBEDDING_RETRY",
    "DOCUMENT_FETCH_RETRY",
    "calculate_delay_ms",
    "extract_retry_after_ms",
    "is_retryable_error",
    "with_retry",
    "with_retry_throw",
]
