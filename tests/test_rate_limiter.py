"""Tests for the sliding-window rate limiter."""

import pytest

from voyagr_chat.api.rate_limiter import RateLimiter, RateLimitExceeded


class FakeClock:
    def __init__(self):
        self.current = 0.0

    def __call__(self):
        return self.current


@pytest.mark.asyncio
async def test_requests_within_limit_pass():
    limiter = RateLimiter(rate_limit=3, time_window=60, clock=FakeClock())

    remaining = [await limiter.check_rate_limit("client") for _ in range(3)]

    assert remaining == [2, 1, 0]


@pytest.mark.asyncio
async def test_request_over_limit_reports_retry_after():
    clock = FakeClock()
    limiter = RateLimiter(rate_limit=2, time_window=60, clock=clock)
    await limiter.check_rate_limit("client")
    clock.current = 10
    await limiter.check_rate_limit("client")

    clock.current = 20
    with pytest.raises(RateLimitExceeded) as exc_info:
        await limiter.check_rate_limit("client")

    assert exc_info.value.retry_after == pytest.approx(40)


@pytest.mark.asyncio
async def test_window_slides():
    clock = FakeClock()
    limiter = RateLimiter(rate_limit=2, time_window=60, clock=clock)
    await limiter.check_rate_limit("client")
    clock.current = 30
    await limiter.check_rate_limit("client")

    clock.current = 61
    assert await limiter.check_rate_limit("client") == 0
    with pytest.raises(RateLimitExceeded):
        await limiter.check_rate_limit("client")


@pytest.mark.asyncio
async def test_keys_are_independent():
    limiter = RateLimiter(rate_limit=1, time_window=60, clock=FakeClock())
    await limiter.check_rate_limit("a")

    assert await limiter.check_rate_limit("b") == 0
    assert await limiter.get_remaining_requests("a") == 0
    assert await limiter.get_remaining_requests("unseen") == 1


@pytest.mark.asyncio
async def test_reset_and_cleanup_lifecycle():
    limiter = RateLimiter(rate_limit=1, time_window=60, clock=FakeClock())
    await limiter.start()
    await limiter.check_rate_limit("a")

    await limiter.reset()

    assert await limiter.check_rate_limit("a") == 0
    await limiter.stop()
    await limiter.stop()
