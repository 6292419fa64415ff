import asyncio

import pytest

from serial_story.errors import RateLimitError
from serial_story.kv_storage import InMemoryKVStorage
from serial_story.rate_limiter import SlidingWindowRateLimiter


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def make_limiter(clock, kv=None, limit=5, window_s=60):
    kv = kv or InMemoryKVStorage(clock=clock)
    return SlidingWindowRateLimiter(kv, "workflow-start", limit, window_s, clock=clock)


def test_sixth_call_in_window_is_rejected():
    clock = Clock(6000.0)
    limiter = make_limiter(clock)

    async def scenario():
        for _ in range(5):
            await limiter.hit("user-1")
        with pytest.raises(RateLimitError) as exc:
            await limiter.hit("user-1")
        return exc.value

    error = asyncio.run(scenario())
    assert error.status_code == 429
    assert error.code == "RATE_LIMIT_EXCEEDED"
    assert int(error.headers["Retry-After"]) >= 1


def test_limits_are_per_user():
    clock = Clock(6000.0)
    limiter = make_limiter(clock)

    async def scenario():
        for _ in range(5):
            await limiter.hit("user-1")
        await limiter.hit("user-2")

    asyncio.run(scenario())


def test_previous_window_counts_while_it_overlaps():
    clock = Clock(6000.0)
    limiter = make_limiter(clock)

    async def scenario():
        for _ in range(5):
            await limiter.hit("user-1")
        # 6 s into the next window: 90% of the previous burst still counts
        clock.now = 6066.0
        with pytest.raises(RateLimitError):
            await limiter.hit("user-1")
        # two windows later the burst has fully slid out
        clock.now = 6190.0
        await limiter.hit("user-1")

    asyncio.run(scenario())


def test_instances_share_the_counter_through_the_store():
    clock = Clock(6000.0)
    kv = InMemoryKVStorage(clock=clock)
    first = make_limiter(clock, kv=kv)
    second = make_limiter(clock, kv=kv)

    async def scenario():
        for _ in range(3):
            await first.hit("user-1")
        await second.hit("user-1")
        await second.hit("user-1")
        with pytest.raises(RateLimitError):
            await first.hit("user-1")

    asyncio.run(scenario())


def test_rejected_calls_do_not_extend_the_lockout():
    clock = Clock(6000.0)
    limiter = make_limiter(clock)

    async def scenario():
        for _ in range(5):
            await limiter.hit("user-1")
        for _ in range(10):
            with pytest.raises(RateLimitError):
                await limiter.hit("user-1")
        # halfway into the next window only half of the accepted burst remains
        clock.now = 6090.0
        await limiter.hit("user-1")
        await limiter.hit("user-1")
        with pytest.raises(RateLimitError):
            await limiter.hit("user-1")

    asyncio.run(scenario())
