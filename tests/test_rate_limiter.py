"""Fixed and sliding window rate limiting."""

import asyncio


async def test_fixed_window_allows_max_then_denies(rate_limiter):
    first = await rate_limiter.check_rate_limit("user-1:swap", max_requests=2, window_ms=60_000)
    second = await rate_limiter.check_rate_limit("user-1:swap", max_requests=2, window_ms=60_000)
    third = await rate_limiter.check_rate_limit("user-1:swap", max_requests=2, window_ms=60_000)

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert not third.allowed
    assert third.remaining == 0
    assert 0 < third.retry_after_ms <= 60_000


async def test_keys_are_independent(rate_limiter):
    await rate_limiter.check_rate_limit("a", max_requests=1, window_ms=60_000)
    assert not (await rate_limiter.check_rate_limit("a", max_requests=1, window_ms=60_000)).allowed
    assert (await rate_limiter.check_rate_limit("b", max_requests=1, window_ms=60_000)).allowed


async def test_window_expiry_resets_budget(rate_limiter):
    await rate_limiter.check_rate_limit("k", max_requests=1, window_ms=50)
    await asyncio.sleep(0.1)
    assert (await rate_limiter.check_rate_limit("k", max_requests=1, window_ms=50)).allowed


async def test_status_and_reset(rate_limiter):
    await rate_limiter.check_rate_limit("k", max_requests=3, window_ms=60_000)

    status = await rate_limiter.get_status("k", max_requests=3)
    assert status.count == 1
    assert status.remaining == 2
    assert status.reset_time is not None

    await rate_limiter.reset("k")
    status = await rate_limiter.get_status("k", max_requests=3)
    assert status.count == 0
    assert status.reset_time is None


async def test_sliding_window(rate_limiter):
    for expected_remaining in (1, 0):
        result = await rate_limiter.check_sliding_window("s", max_requests=2, window_ms=60_000)
        assert result.allowed
        assert result.remaining == expected_remaining

    denied = await rate_limiter.check_sliding_window("s", max_requests=2, window_ms=60_000)
    assert not denied.allowed
    assert denied.retry_after_ms <= 60_000


async def test_fails_open_on_store_error(rate_limiter):
    class Broken:
        def pipeline(self, *args, **kwargs):
            raise ConnectionError("down")

    rate_limiter.cache.redis = Broken()

    result = await rate_limiter.check_rate_limit("k", max_requests=2, window_ms=1000)
    assert result.allowed
    assert result.remaining == 2
    assert (await rate_limiter.check_sliding_window("k", max_requests=2)).allowed
