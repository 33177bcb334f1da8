"""Tests for the sliding-window rate limiter and its failure policy."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from passgate.service.errors import ServiceUnavailableError
from passgate.service.rate_limit import RateLimiter


@pytest.fixture
def limiter(clock):
    return RateLimiter(None, clock=clock)


def _broken_cache(exc: Exception) -> MagicMock:
    cache = MagicMock()
    cache.check_sliding_window = AsyncMock(side_effect=exc)
    return cache


class TestSlidingWindow:
    """Local window behaviour."""

    async def test_limit_then_block(self, limiter):
        remaining = []
        for _ in range(3):
            decision = await limiter.check("credential:recipient:a", 3, 60, fail_open=False)
            assert decision.allowed
            remaining.append(decision.remaining)
        assert remaining == [2, 1, 0]

        blocked = await limiter.check("credential:recipient:a", 3, 60, fail_open=False)
        assert not blocked.allowed
        assert blocked.remaining == 0
        assert blocked.reset_in_seconds == 60

    async def test_window_reopens_after_expiry(self, limiter, clock):
        for _ in range(3):
            await limiter.check("k", 3, 60, fail_open=False)
        clock.advance(seconds=30)
        assert not (await limiter.check("k", 3, 60, fail_open=False)).allowed
        clock.advance(seconds=31)
        assert (await limiter.check("k", 3, 60, fail_open=False)).allowed

    async def test_window_slides_per_event(self, limiter, clock):
        await limiter.check("k", 2, 60, fail_open=False)
        clock.advance(seconds=30)
        await limiter.check("k", 2, 60, fail_open=False)
        clock.advance(seconds=31)
        # First event has left the window, second is still inside
        decision = await limiter.check("k", 2, 60, fail_open=False)
        assert decision.allowed
        assert decision.remaining == 0

    async def test_rejected_requests_do_not_extend_lockout(self, limiter, clock):
        await limiter.check("k", 1, 60, fail_open=False)
        for _ in range(5):
            clock.advance(seconds=10)
            assert not (await limiter.check("k", 1, 60, fail_open=False)).allowed
        clock.advance(seconds=11)
        assert (await limiter.check("k", 1, 60, fail_open=False)).allowed

    async def test_keys_are_independent(self, limiter):
        await limiter.check("a", 1, 60, fail_open=False)
        assert not (await limiter.check("a", 1, 60, fail_open=False)).allowed
        assert (await limiter.check("b", 1, 60, fail_open=False)).allowed

    async def test_invalid_window_uses_default(self, limiter):
        decision = await limiter.check("k", 1, 0, fail_open=False)
        assert decision.allowed
        blocked = await limiter.check("k", 1, -5, fail_open=False)
        assert not blocked.allowed
        assert blocked.reset_in_seconds == 60

    async def test_non_positive_limit_disables(self, limiter):
        for _ in range(5):
            assert (await limiter.check("k", 0, 60, fail_open=False)).allowed


class TestBackendFailure:
    """Fail-open and fail-closed call sites."""

    async def test_fail_open_allows(self, clock):
        limiter = RateLimiter(_broken_cache(ConnectionError("down")), clock=clock)
        decision = await limiter.check("verify:ip:1.2.3.4", 5, 60, fail_open=True)
        assert decision.allowed

    async def test_fail_closed_raises(self, clock):
        limiter = RateLimiter(_broken_cache(ConnectionError("down")), clock=clock)
        with pytest.raises(ServiceUnavailableError):
            await limiter.check("credential:ip:1.2.3.4", 5, 60, fail_open=False)

    async def test_slow_backend_counts_as_failure(self, clock):
        async def _hang(*args, **kwargs):
            await asyncio.sleep(5)

        cache = MagicMock()
        cache.check_sliding_window = _hang
        limiter = RateLimiter(cache, clock=clock, timeout_seconds=0.01)
        with pytest.raises(ServiceUnavailableError):
            await limiter.check("credential:ip:1.2.3.4", 5, 60, fail_open=False)

    async def test_backend_result_is_reported(self, clock):
        cache = MagicMock()
        cache.check_sliding_window = AsyncMock(return_value=(False, 5, 42))
        limiter = RateLimiter(cache, clock=clock)
        decision = await limiter.check("k", 5, 60, fail_open=False)
        assert not decision.allowed
        assert decision.remaining == 0
        assert decision.reset_in_seconds == 42
        args, kwargs = cache.check_sliding_window.call_args
        assert args == ("k", 5, 60)
        assert kwargs["now"] == clock().timestamp()
