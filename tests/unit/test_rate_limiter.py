"""
Unit tests for the fixed-window rate limiter.
"""

import asyncio

import pytest

from deckforge.errors import RateLimitExceeded
from deckforge.resilience.rate_limiter import FixedWindowRateLimiter, RateLimitRule

GENERATE = RateLimitRule(max_requests=5, window_seconds=60)


@pytest.fixture
def limiter(fake_clock):
    return FixedWindowRateLimiter(clock=fake_clock)


class TestFixedWindowRateLimiter:
    @pytest.mark.asyncio
    async def test_sixth_call_rejected(self, limiter):
        for i in range(5):
            decision = await limiter.hit("alice", "generate", GENERATE)
            assert decision.allowed
            assert decision.remaining == 4 - i

        decision = await limiter.hit("alice", "generate", GENERATE)
        assert not decision.allowed
        assert 0 < decision.retry_after_seconds <= 60

    @pytest.mark.asyncio
    async def test_retry_after_counts_down(self, limiter, fake_clock):
        for _ in range(5):
            await limiter.hit("alice", "generate", GENERATE)
        fake_clock.advance(42)

        decision = await limiter.hit("alice", "generate", GENERATE)
        assert not decision.allowed
        assert decision.retry_after_seconds == 18

    @pytest.mark.asyncio
    async def test_window_resets(self, limiter, fake_clock):
        for _ in range(5):
            await limiter.hit("alice", "generate", GENERATE)
        fake_clock.advance(60)

        decision = await limiter.hit("alice", "generate", GENERATE)
        assert decision.allowed
        assert decision.remaining == 4

    @pytest.mark.asyncio
    async def test_keys_are_per_caller_and_endpoint(self, limiter):
        for _ in range(5):
            await limiter.hit("alice", "generate", GENERATE)

        assert (await limiter.hit("bob", "generate", GENERATE)).allowed
        assert (await limiter.hit("alice", "status", RateLimitRule(max_requests=60))).allowed

    @pytest.mark.asyncio
    async def test_check_raises(self, limiter):
        for _ in range(5):
            await limiter.check("alice", "generate", GENERATE)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.check("alice", "generate", GENERATE)

        error = exc_info.value
        assert error.http_status == 429
        assert error.details["retryAfter"] == error.retry_after_seconds
        assert error.retry_after_seconds <= 60

    @pytest.mark.asyncio
    async def test_concurrent_hits_never_exceed_ceiling(self, limiter):
        decisions = await asyncio.gather(
            *(limiter.hit("alice", "generate", GENERATE) for _ in range(20))
        )
        assert sum(1 for d in decisions if d.allowed) == 5

    @pytest.mark.asyncio
    async def test_reset_clears_windows(self, limiter):
        for _ in range(5):
            await limiter.hit("alice", "generate", GENERATE)
        limiter.reset()
        assert (await limiter.hit("alice", "generate", GENERATE)).allowed

    @pytest.mark.asyncio
    async def test_expired_windows_are_swept(self, fake_clock):
        limiter = FixedWindowRateLimiter(clock=fake_clock, max_keys=3)
        for caller in ("alice", "bob", "carol"):
            await limiter.hit(caller, "status", GENERATE)
        assert limiter.tracked_keys == 3

        fake_clock.advance(61)
        await limiter.hit("dave", "status", GENERATE)

        assert limiter.tracked_keys == 1
        assert (await limiter.hit("dave", "status", GENERATE)).remaining == 3

    @pytest.mark.asyncio
    async def test_live_windows_survive_sweep(self, fake_clock):
        limiter = FixedWindowRateLimiter(clock=fake_clock, max_keys=2)
        for _ in range(5):
            await limiter.hit("alice", "generate", GENERATE)
        await limiter.hit("bob", "generate", GENERATE)

        await limiter.hit("carol", "generate", GENERATE)

        assert limiter.tracked_keys == 3
        assert not (await limiter.hit("alice", "generate", GENERATE)).allowed
