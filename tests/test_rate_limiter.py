import asyncio

import pytest

from vendor_ingestion.pipeline_config import RateLimitSpec
from vendor_ingestion.rate_limiter import RateLimiter


def test_concurrency_never_exceeds_max_concurrent():
    async def scenario():
        limiter = RateLimiter(max_concurrent=2, max_requests_per_window=1000, window_seconds=60)
        observed = []

        async def work(i):
            async with limiter.acquire(f"city-{i}") as permit:
                observed.append(permit.in_flight)
                await asyncio.sleep(0.01)

        await asyncio.gather(*(work(i) for i in range(10)))
        return limiter, observed

    limiter, observed = asyncio.run(scenario())

    assert max(observed) <= 2
    assert limiter.peak_in_flight == 2
    assert limiter.total_granted == 10
    assert limiter.in_flight == 0


def test_window_limits_grants_per_trailing_window():
    async def scenario():
        limiter = RateLimiter(max_concurrent=10, max_requests_per_window=2, window_seconds=0.05)
        granted = []

        async def work(i):
            async with limiter.acquire(f"city-{i}") as permit:
                granted.append(permit.granted_at)

        await asyncio.gather(*(work(i) for i in range(6)))
        return granted

    granted = sorted(asyncio.run(scenario()))

    assert len(granted) == 6
    for i in range(2, len(granted)):
        assert granted[i] - granted[i - 2] >= 0.05


def test_permit_released_when_body_raises():
    async def scenario():
        limiter = RateLimiter(max_concurrent=1, max_requests_per_window=10, window_seconds=60)
        with pytest.raises(RuntimeError):
            async with limiter.acquire("a"):
                raise RuntimeError("request blew up")

        async with limiter.acquire("b") as permit:
            assert permit.in_flight == 1
        return limiter

    assert asyncio.run(scenario()).in_flight == 0


def test_permit_released_when_holder_is_cancelled():
    async def scenario():
        limiter = RateLimiter(max_concurrent=1, max_requests_per_window=10, window_seconds=60)
        entered = asyncio.Event()

        async def holder():
            async with limiter.acquire("a"):
                entered.set()
                await asyncio.sleep(3600)

        task = asyncio.create_task(holder())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        async with limiter.acquire("b"):
            pass
        return limiter

    limiter = asyncio.run(asyncio.wait_for(scenario(), timeout=5))
    assert limiter.in_flight == 0
    assert limiter.total_granted == 2


def test_from_spec():
    limiter = RateLimiter.from_spec(RateLimitSpec(max_concurrent=3, max_requests_per_window=9, window_seconds=1.5))

    assert (limiter.max_concurrent, limiter.max_requests_per_window, limiter.window_seconds) == (3, 9, 1.5)


@pytest.mark.parametrize("kwargs", [
    {"max_concurrent": 0, "max_requests_per_window": 1, "window_seconds": 1},
    {"max_concurrent": 1, "max_requests_per_window": 0, "window_seconds": 1},
    {"max_concurrent": 1, "max_requests_per_window": 1, "window_seconds": 0},
])
def test_rejects_non_positive_bounds(kwargs):
    with pytest.raises(ValueError):
        RateLimiter(**kwargs)
