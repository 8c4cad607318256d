"""
Retry with exponential backoff.

Handles transient upstream failures for every pipeline stage:
- HTTP 429/500/502/503/504 (httpx status errors or errors carrying a status code)
- Network errors and per-call timeouts
- Recognized transient messages ("rate limit", "socket hang up", ...)
- Malformed LLM output, retried under its own smaller cap

Delay = initial_delay × multiplier^attempt, clamped to max_delay, optionally
jittered ±25%. A provider-supplied retry-after overrides the computed delay.
"""

from __future__ import annotations

import asyncio
import dataclasses
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import httpx
from loguru import logger

from deckforge.errors import (
    CallTimeout,
    CancellationError,
    ContentError,
    MalformedOutput,
    PersistentDependencyError,
    TransientDependencyError,
)
from deckforge.resilience.cancellation import CancellationToken

T = TypeVar("T")

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

RETRYABLE_MESSAGES = (
    "econnreset",
    "etimedout",
    "econnrefused",
    "enetunreach",
    "fetch failed",
    "socket hang up",
    "too many requests",
    "rate limit",
    "quota exceeded",
    "temporarily unavailable",
    "service unavailable",
    "internal error",
    "bad gateway",
    "gateway timeout",
)

_RETRY_IN_PATTERN = re.compile(r"retry in (\d+(?:\.\d+)?)\s*s", re.IGNORECASE)
_RETRY_DELAY_PATTERN = re.compile(r"retryDelay\"?\s*[:=]\s*\"?(\d+(?:\.\d+)?)s", re.IGNORECASE)


@dataclass
class RetryOptions:
    """Retry policy for one call site."""

    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 60000
    multiplier: float = 2.0
    jitter: bool = True
    retryable_status_codes: tuple[int, ...] = RETRYABLE_STATUS_CODES
    timeout_ms: int | None = 30000
    max_malformed_retries: int = 2
    on_retry: Callable[[int, BaseException, int], None] | None = field(default=None, repr=False)

    def replace(self, **changes: Any) -> RetryOptions:
        return dataclasses.replace(self, **changes)


# Call-site presets
GENERATION_RETRY = RetryOptions(max_retries=5, initial_delay_ms=2000, max_delay_ms=120000)
VERIFICATION_RETRY = RetryOptions(max_retries=3, initial_delay_ms=2000, max_delay_ms=120000)
EMBEDDING_RETRY = RetryOptions(max_retries=3, initial_delay_ms=1000, max_delay_ms=30000)
DOCUMENT_FETCH_RETRY = RetryOptions(
    max_retries=2, initial_delay_ms=500, max_delay_ms=5000, jitter=False
)


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a with_retry call."""

    success: bool
    attempts: int
    total_delay_ms: int
    data: T | None = None
    error: BaseException | None = None


def _status_of(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_retryable_error(error: BaseException, options: RetryOptions | None = None) -> bool:
    """Classify an error as retryable (transient) or not."""
    codes = options.retryable_status_codes if options else RETRYABLE_STATUS_CODES

    if isinstance(error, (CancellationError, PersistentDependencyError)):
        return False
    if isinstance(error, MalformedOutput):
        return True
    if isinstance(error, ContentError):
        return False
    if isinstance(error, TransientDependencyError):
        return error.status_code is None or error.status_code in codes
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, httpx.TransportError):
        return True

    status = _status_of(error)
    if status is not None:
        return status in codes

    message = str(error).lower()
    return any(pattern in message for pattern in RETRYABLE_MESSAGES)


def extract_retry_after_ms(error: BaseException) -> int | None:
    """Pull a provider-supplied retry-after hint out of an error, in milliseconds."""
    retry_after = getattr(error, "retry_after", None)
    if isinstance(retry_after, (int, float)) and retry_after >= 0:
        return int(retry_after * 1000)

    if isinstance(error, httpx.HTTPStatusError):
        header = error.response.headers.get("retry-after")
        if header:
            try:
                return int(float(header) * 1000)
            except ValueError:
                pass

    message = str(error)
    match = _RETRY_DELAY_PATTERN.search(message) or _RETRY_IN_PATTERN.search(message)
    if match:
        return int(float(match.group(1)) * 1000)
    return None


def calculate_delay_ms(
    attempt: int,
    options: RetryOptions,
    retry_after_ms: int | None = None,
) -> int:
    """Backoff delay before retry number `attempt + 1` (attempt is zero-based)."""
    if retry_after_ms is not None:
        return max(0, min(retry_after_ms, options.max_delay_ms))

    delay = options.initial_delay_ms * (options.multiplier ** attempt)
    delay = min(delay, options.max_delay_ms)
    if options.jitter:
        delay = delay * random.uniform(0.75, 1.25)
    return int(min(delay, options.max_delay_ms))


async def _backoff(
    delay_ms: int,
    cancel_token: CancellationToken | None,
    sleep: Callable[[float], Awaitable[Any]] | None,
) -> None:
    seconds = delay_ms / 1000
    if sleep is not None:
        await sleep(seconds)
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
    elif cancel_token is not None:
        await cancel_token.sleep(seconds)
    else:
        await asyncio.sleep(seconds)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    cancel_token: CancellationToken | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    label: str = "operation",
) -> RetryResult[T]:
    """
    Run `fn` with retries on transient failures.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt
        options: Retry policy (defaults to RetryOptions())
        cancel_token: Checked before each attempt and during each backoff sleep
        sleep: Override for the backoff sleep (tests)
        label: Name used in log messages

    Returns:
        RetryResult with data on success, or the last error on failure

    Raises:
        CancellationError: If the token fires before an attempt or mid-sleep
    """
    options = options or RetryOptions()
    timeout = options.timeout_ms / 1000 if options.timeout_ms else None

    attempt = 0
    total_delay_ms = 0
    malformed_failures = 0

    while True:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        try:
            if timeout is not None:
                try:
                    data = await asyncio.wait_for(fn(), timeout=timeout)
                except asyncio.TimeoutError as e:
                    raise CallTimeout(f"{label} timed out after {options.timeout_ms}ms") from e
            else:
                data = await fn()
            return RetryResult(
                success=True,
                attempts=attempt + 1,
                total_delay_ms=total_delay_ms,
                data=data,
            )
        except CancellationError:
            raise
        except Exception as e:  # Classified below; non-retryable errors end the loop
            if isinstance(e, MalformedOutput):
                malformed_failures += 1
                retryable = malformed_failures <= options.max_malformed_retries
            else:
                retryable = is_retryable_error(e, options)

            if not retryable or attempt >= options.max_retries:
                if retryable:
                    logger.warning(f"{label} failed after {attempt + 1} attempts: {e}")
                return RetryResult(
                    success=False,
                    attempts=attempt + 1,
                    total_delay_ms=total_delay_ms,
                    error=e,
                )

            delay_ms = calculate_delay_ms(attempt, options, extract_retry_after_ms(e))
            if options.on_retry is not None:
                options.on_retry(attempt + 1, e, delay_ms)
            logger.warning(
                f"{label} attempt {attempt + 1}/{options.max_retries + 1} failed: "
                f"{str(e)[:120]}. Retrying in {delay_ms}ms..."
            )

            await _backoff(delay_ms, cancel_token, sleep)
            total_delay_ms += delay_ms
            attempt += 1


async def with_retry_throw(
    fn: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    cancel_token: CancellationToken | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    label: str = "operation",
) -> T:
    """
    Same contract as with_retry, but returns the data or raises.

    The raised error carries `attempts` and `total_delay_ms` attributes.
    """
    result = await with_retry(
        fn, options, cancel_token=cancel_token, sleep=sleep, label=label
    )
    if result.success:
        return result.data  # type: ignore[return-value]

    error = result.error
    assert error is not None
    try:
        error.attempts = result.attempts  # type: ignore[attr-defined]
        error.total_delay_ms = result.total_delay_ms  # type: ignore[attr-defined]
    except AttributeError:
        logger.debug(f"Could not attach retry metadata to {type(error).__name__}")
    raise error
