"""
Unit tests for the circuit breaker and resilience registry.
"""

import pytest

from deckforge.errors import CircuitOpenError, MalformedOutput, TransientDependencyError
from deckforge.resilience.circuit_breaker import CircuitBreaker, CircuitState
from deckforge.resilience.registry import ResilienceRegistry
from deckforge.resilience.retry import RetryOptions


async def _fail():
    raise TransientDependencyError("upstream down", status_code=503)


async def _ok():
    return "ok"


@pytest.fixture
def breaker(fake_clock):
    return CircuitBreaker("llm", failure_threshold=3, reset_timeout_seconds=60, clock=fake_clock)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_exactly_at_threshold(self, breaker):
        for n in range(1, 3):
            with pytest.raises(TransientDependencyError):
                await breaker.call(_fail)
            assert breaker.state == CircuitState.CLOSED
            assert breaker.failures == n

        with pytest.raises(TransientDependencyError):
            await breaker.call(_fail)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_without_calling(self, breaker):
        for _ in range(3):
            with pytest.raises(TransientDependencyError):
                await breaker.call(_fail)

        attempted = []

        async def tracked():
            attempted.append(1)
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(tracked)

        assert attempted == []
        assert exc_info.value.retry_after_seconds == 60
        assert exc_info.value.http_status == 503

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        for _ in range(2):
            with pytest.raises(TransientDependencyError):
                await breaker.call(_fail)
        await breaker.call(_ok)
        assert breaker.failures == 0

        for _ in range(2):
            with pytest.raises(TransientDependencyError):
                await breaker.call(_fail)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_allows_exactly_one_trial_call(self, breaker, fake_clock):
        for _ in range(3):
            with pytest.raises(TransientDependencyError):
                await breaker.call(_fail)
        fake_clock.advance(61)

        await breaker.before_call()
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.before_call()

        await breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_trial_call_reopens(self, breaker, fake_clock):
        for _ in range(3):
            with pytest.raises(TransientDependencyError):
                await breaker.call(_fail)
        fake_clock.advance(61)

        with pytest.raises(TransientDependencyError):
            await breaker.call(_fail)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)

    @pytest.mark.asyncio
    async def test_remaining_cooldown_reported(self, breaker, fake_clock):
        for _ in range(3):
            with pytest.raises(TransientDependencyError):
                await breaker.call(_fail)
        fake_clock.advance(45)

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call(_ok)
        assert exc_info.value.retry_after_seconds == 15

    @pytest.mark.asyncio
    async def test_content_errors_do_not_trip(self, breaker):
        async def malformed():
            raise MalformedOutput("not json")

        for _ in range(5):
            with pytest.raises(MalformedOutput):
                await breaker.call(malformed)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failures == 0

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        for _ in range(3):
            with pytest.raises(TransientDependencyError):
                await breaker.call(_fail)
        await breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.call(_ok) == "ok"


class TestResilienceRegistry:
    @pytest.mark.asyncio
    async def test_one_exhausted_retry_sequence_is_one_failure(self, fake_clock, recording_sleep):
        registry = ResilienceRegistry(
            failure_threshold=2, reset_timeout_seconds=30, clock=fake_clock, sleep=recording_sleep
        )
        options = RetryOptions(max_retries=3, initial_delay_ms=1)

        with pytest.raises(TransientDependencyError):
            await registry.call("llm", _fail, options)
        assert registry.breaker("llm").failures == 1
        assert len(recording_sleep.delays) == 3

        with pytest.raises(TransientDependencyError):
            await registry.call("llm", _fail, options)
        with pytest.raises(CircuitOpenError):
            await registry.call("llm", _ok, options)

    @pytest.mark.asyncio
    async def test_breakers_are_isolated_per_dependency(self, fake_clock, recording_sleep):
        registry = ResilienceRegistry(failure_threshold=1, clock=fake_clock, sleep=recording_sleep)
        options = RetryOptions(max_retries=0)

        with pytest.raises(TransientDependencyError):
            await registry.call("llm", _fail, options)
        assert await registry.call("content_fetcher", _ok, options) == "ok"

        snapshot = registry.snapshot()
        assert snapshot["circuit_breakers"]["llm"]["state"] == "open"
        assert snapshot["circuit_breakers"]["content_fetcher"]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_reset_breaker(self, fake_clock, recording_sleep):
        registry = ResilienceRegistry(failure_threshold=1, clock=fake_clock, sleep=recording_sleep)
        with pytest.raises(TransientDependencyError):
            await registry.call("llm", _fail, RetryOptions(max_retries=0))
        await registry.reset_breaker("llm")
        assert registry.breaker_status("llm")["state"] == "closed"
        assert registry.breaker_status("unknown") is None

    def test_separate_registries_do_not_share_state(self):
        a = ResilienceRegistry()
        b = ResilienceRegistry()
        assert a.breaker("llm") is not b.breaker("llm")
        assert a.breaker("llm") is a.breaker("llm")
