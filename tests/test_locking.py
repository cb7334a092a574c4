"""Distributed lock on Redis."""

import asyncio

import pytest

from flowrunner.services.locking import LockNotAcquiredError


async def test_second_acquire_is_refused_until_release(lock):
    first = await lock.acquire("swap:wallet-1", ttl_seconds=5)
    second = await lock.acquire("swap:wallet-1", ttl_seconds=5)

    assert first.acquired
    assert not second.acquired
    assert second.error == "Lock is held by another process"
    assert await lock.is_locked("swap:wallet-1")

    assert await lock.release("swap:wallet-1", first.lock_value)
    assert not await lock.is_locked("swap:wallet-1")
    assert (await lock.acquire("swap:wallet-1", ttl_seconds=5)).acquired


async def test_concurrent_acquires_grant_one_holder(lock):
    results = await asyncio.gather(*(
        lock.acquire("swap:wallet-2", ttl_seconds=5, retry_attempts=0) for _ in range(5)
    ))

    holders = [r for r in results if r.acquired]
    assert len(holders) == 1
    assert await lock.release("swap:wallet-2", holders[0].lock_value)


async def test_release_with_foreign_value_keeps_lock(lock):
    held = await lock.acquire("k", ttl_seconds=5)

    assert not await lock.release("k", "someone-else")
    assert await lock.is_locked("k")
    assert await lock.release("k", held.lock_value)


async def test_lock_values_are_unique(lock):
    first = await lock.acquire("a")
    second = await lock.acquire("b")
    assert first.lock_value != second.lock_value


async def test_retry_gives_up_after_attempts(lock):
    await lock.acquire("busy", ttl_seconds=5)
    result = await lock.acquire("busy", retry_attempts=2, retry_delay_ms=5)
    assert not result.acquired


async def test_hold_releases_on_exit_and_raises_when_busy(lock):
    async with lock.hold("timeblock:tb-1") as value:
        assert value
        assert await lock.is_locked("timeblock:tb-1")
        with pytest.raises(LockNotAcquiredError) as exc:
            async with lock.hold("timeblock:tb-1"):
                pass
        assert exc.value.key == "timeblock:tb-1"

    assert not await lock.is_locked("timeblock:tb-1")


async def test_with_lock_returns_result_or_busy(lock):
    async def work():
        return 42

    assert await lock.with_lock("job", work) == (True, 42)

    await lock.acquire("job", ttl_seconds=5)
    acquired, error = await lock.with_lock("job", work)
    assert not acquired
    assert error == "Lock is held by another process"


async def test_with_lock_releases_when_fn_raises(lock):
    async def boom():
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        await lock.with_lock("job", boom)
    assert not await lock.is_locked("job")


async def test_store_error_reports_not_acquired(lock):
    lock.cache.redis = _Broken()

    result = await lock.acquire("k")

    assert not result.acquired
    assert result.error == "connection lost"
    assert not await lock.release("k", "v")


class _Broken:
    async def set(self, *args, **kwargs):
        raise ConnectionError("connection lost")

    async def eval(self, *args, **kwargs):
        raise ConnectionError("connection lost")
