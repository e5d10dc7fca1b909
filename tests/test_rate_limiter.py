import asyncio
import time

import pytest

from papertrader.core.rate_limiter import RateLimiterRegistry, TokenBucketRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_try_acquire_refills_continuously() -> None:
    clock = FakeClock()
    limiter = TokenBucketRateLimiter("svc", max_tokens=2, window_seconds=1.0, clock=clock)

    assert limiter.try_acquire()
    assert limiter.try_acquire()
    assert not limiter.try_acquire()

    clock.now = 0.25
    assert not limiter.try_acquire()

    clock.now = 0.5
    assert limiter.try_acquire()


def test_full_window_refills_to_capacity() -> None:
    clock = FakeClock()
    limiter = TokenBucketRateLimiter("svc", max_tokens=3, window_seconds=1.0, clock=clock)
    for _ in range(3):
        assert limiter.try_acquire()

    clock.now = 5.0
    limiter.refill()
    assert limiter.tokens == 3.0


def test_third_call_waits_one_refill_interval_in_order() -> None:
    async def _run() -> None:
        limiter = TokenBucketRateLimiter("svc", max_tokens=2, window_seconds=1.0)
        order = []
        started = time.monotonic()

        async def _call(i: int) -> float:
            await limiter.acquire()
            order.append(i)
            return time.monotonic() - started

        elapsed = await asyncio.gather(*(_call(i) for i in range(3)))
        await limiter.aclose()

        assert order == [0, 1, 2]
        assert elapsed[0] < 0.1
        assert elapsed[1] < 0.1
        assert 0.4 <= elapsed[2] < 0.75
        assert limiter.queued_requests == 1
        assert limiter.total_requests == 3

    asyncio.run(_run())


def test_aclose_cancels_waiters() -> None:
    async def _run() -> None:
        limiter = TokenBucketRateLimiter("svc", max_tokens=1, window_seconds=60.0)
        await limiter.acquire()

        waiter = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        assert limiter.queue_length == 1

        await limiter.aclose()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert limiter.queue_length == 0

    asyncio.run(_run())


def test_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        TokenBucketRateLimiter("svc", max_tokens=0)
    with pytest.raises(ValueError):
        TokenBucketRateLimiter("svc", window_seconds=0)


def test_registry_returns_one_limiter_per_name() -> None:
    registry = RateLimiterRegistry()
    a = registry.get("twelve_data", max_tokens=7, window_seconds=60.0)
    b = registry.get("twelve_data")

    assert a is b
    assert a.max_tokens == 7
    assert registry.find("gemini") is None
    assert [s["name"] for s in registry.status()] == ["twelve_data"]
