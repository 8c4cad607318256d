"""
Unit tests for retry with exponential backoff.
"""

import asyncio

import httpx
import pytest

from deckforge.errors import (
    CallTimeout,
    CancellationError,
    CircuitOpenError,
    InsufficientContent,
    MalformedOutput,
    TransientDependencyError,
    UpstreamRateLimited,
)
from deckforge.resilience.cancellation import CancellationToken
from deckforge.resilience.retry import (
    GENERATION_RETRY,
    RetryOptions,
    calculate_delay_ms,
    extract_retry_after_ms,
    is_retryable_error,
    with_retry,
    with_retry_throw,
)


def _flaky(errors, result="ok"):
    """Coroutine factory raising each error in turn, then returning `result`."""
    calls = {"n": 0}
    pending = list(errors)

    async def fn():
        calls["n"] += 1
        if pending:
            raise pending.pop(0)
        return result

    return fn, calls


def _http_status_error(status: int, headers=None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://llm.example/v1/chat/completions")
    response = httpx.Response(status, request=request, headers=headers or {})
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestIsRetryableError:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
    def test_retryable_http_statuses(self, status):
        assert is_retryable_error(_http_status_error(status))

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_not_retryable(self, status):
        assert not is_retryable_error(_http_status_error(status))

    def test_transient_messages(self):
        assert is_retryable_error(RuntimeError("socket hang up"))
        assert is_retryable_error(RuntimeError("Rate limit reached for model"))
        assert not is_retryable_error(RuntimeError("invalid api key"))

    def test_network_and_timeout_errors(self):
        assert is_retryable_error(httpx.ConnectError("refused"))
        assert is_retryable_error(asyncio.TimeoutError())
        assert is_retryable_error(CallTimeout("slow"))

    def test_taxonomy(self):
        assert is_retryable_error(TransientDependencyError("503", status_code=503))
        assert not is_retryable_error(CircuitOpenError("llm", 30))
        assert not is_retryable_error(InsufficientContent("no chunks"))
        assert not is_retryable_error(CancellationError("stop"))


class TestDelayCalculation:
    def test_exponential_growth_without_jitter(self):
        options = RetryOptions(initial_delay_ms=1000, multiplier=2.0, max_delay_ms=60000, jitter=False)
        assert [calculate_delay_ms(a, options) for a in range(4)] == [1000, 2000, 4000, 8000]

    def test_clamped_to_max_delay(self):
        options = RetryOptions(initial_delay_ms=1000, multiplier=10.0, max_delay_ms=5000, jitter=False)
        assert calculate_delay_ms(5, options) == 5000

    def test_jitter_never_exceeds_max_delay(self):
        options = RetryOptions(initial_delay_ms=4000, multiplier=2.0, max_delay_ms=5000, jitter=True)
        for attempt in range(6):
            assert 0 < calculate_delay_ms(attempt, options) <= 5000

    def test_retry_after_overrides_computed_delay(self):
        options = RetryOptions(initial_delay_ms=1000, max_delay_ms=60000, jitter=False)
        assert calculate_delay_ms(0, options, retry_after_ms=7000) == 7000
        assert calculate_delay_ms(0, options, retry_after_ms=600000) == 60000

    def test_extract_retry_after(self):
        assert extract_retry_after_ms(UpstreamRateLimited("429", retry_after=3)) == 3000
        assert extract_retry_after_ms(_http_status_error(429, {"retry-after": "2"})) == 2000
        assert extract_retry_after_ms(RuntimeError("Quota exceeded. Please retry in 12.5s")) == 12500
        assert extract_retry_after_ms(RuntimeError("boom")) is None


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self, recording_sleep):
        fn, calls = _flaky([])
        result = await with_retry(fn, RetryOptions(max_retries=3), sleep=recording_sleep)

        assert result.success
        assert result.data == "ok"
        assert result.attempts == 1
        assert calls["n"] == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, recording_sleep):
        fn, calls = _flaky([_http_status_error(503), _http_status_error(502)])
        options = RetryOptions(max_retries=3, initial_delay_ms=100, jitter=False)
        result = await with_retry(fn, options, sleep=recording_sleep)

        assert result.success
        assert result.attempts == 3
        assert result.total_delay_ms == 100 + 200
        assert recording_sleep.delays == [0.1, 0.2]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_retries", [0, 1, 2, 5])
    async def test_attempts_bounded_and_delays_clamped(self, recording_sleep, max_retries):
        errors = [_http_status_error(500) for _ in range(max_retries + 5)]
        fn, calls = _flaky(errors)
        options = RetryOptions(max_retries=max_retries, initial_delay_ms=400, max_delay_ms=1000)
        result = await with_retry(fn, options, sleep=recording_sleep)

        assert not result.success
        assert calls["n"] == max_retries + 1
        assert result.attempts == max_retries + 1
        assert all(d <= 1.0 for d in recording_sleep.delays)

    @pytest.mark.asyncio
    async def test_non_retryable_error_stops_immediately(self, recording_sleep):
        fn, calls = _flaky([_http_status_error(401)])
        result = await with_retry(fn, RetryOptions(max_retries=5), sleep=recording_sleep)

        assert not result.success
        assert calls["n"] == 1
        assert isinstance(result.error, httpx.HTTPStatusError)

    @pytest.mark.asyncio
    async def test_malformed_output_uses_separate_cap(self, recording_sleep):
        errors = [MalformedOutput("bad json") for _ in range(10)]
        fn, calls = _flaky(errors)
        options = RetryOptions(max_retries=5, max_malformed_retries=2, initial_delay_ms=10)
        result = await with_retry(fn, options, sleep=recording_sleep)

        assert not result.success
        assert calls["n"] == 3
        assert isinstance(result.error, MalformedOutput)

    @pytest.mark.asyncio
    async def test_per_call_timeout_is_retryable(self, recording_sleep):
        calls = {"n": 0}

        async def slow_then_fast():
            calls["n"] += 1
            if calls["n"] == 1:
                await asyncio.sleep(1)
            return "done"

        options = RetryOptions(max_retries=2, timeout_ms=20, initial_delay_ms=10)
        result = await with_retry(slow_then_fast, options, sleep=recording_sleep)

        assert result.success
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_on_retry_callback(self, recording_sleep):
        seen = []
        fn, _ = _flaky([_http_status_error(429)])
        options = RetryOptions(
            max_retries=2,
            initial_delay_ms=50,
            jitter=False,
            on_retry=lambda attempt, error, delay: seen.append((attempt, delay)),
        )
        await with_retry(fn, options, sleep=recording_sleep)
        assert seen == [(1, 50)]

    @pytest.mark.asyncio
    async def test_cancelled_before_first_attempt(self):
        token = CancellationToken()
        token.cancel("job cancelled")
        fn, calls = _flaky([])

        with pytest.raises(CancellationError):
            await with_retry(fn, RetryOptions(), cancel_token=token)
        assert calls["n"] == 0

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_sleep(self):
        token = CancellationToken()
        fn, calls = _flaky([_http_status_error(503) for _ in range(5)])
        options = RetryOptions(max_retries=5, initial_delay_ms=10000, jitter=False)

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel("stop")

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(CancellationError):
            await asyncio.wait_for(with_retry(fn, options, cancel_token=token), timeout=2)
        await canceller
        assert calls["n"] == 1


class TestWithRetryThrow:
    @pytest.mark.asyncio
    async def test_returns_data(self, recording_sleep):
        fn, _ = _flaky([_http_status_error(503)], result={"cards": []})
        data = await with_retry_throw(fn, RetryOptions(initial_delay_ms=1), sleep=recording_sleep)
        assert data == {"cards": []}

    @pytest.mark.asyncio
    async def test_raises_with_metadata(self, recording_sleep):
        fn, _ = _flaky([TransientDependencyError("down", status_code=503) for _ in range(4)])
        options = RetryOptions(max_retries=2, initial_delay_ms=100, jitter=False)

        with pytest.raises(TransientDependencyError) as exc_info:
            await with_retry_throw(fn, options, sleep=recording_sleep)

        assert exc_info.value.attempts == 3
        assert exc_info.value.total_delay_ms == 300

    def test_generation_preset(self):
        assert GENERATION_RETRY.max_retries == 5
