"""Shared fixtures: a controllable clock and fresh stores per test."""

from datetime import datetime, timedelta, timezone

import fakeredis
import fakeredis.aioredis
import pytest
import pytest_asyncio

from turnstile.core.backends.memory import InMemoryBackend
from turnstile.core.backends.redis import RedisBackend

T0 = datetime(2020, 3, 25, 10, 15, 30, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock. Time only moves when a test calls `advance`."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> InMemoryBackend:
    """Create a fresh in-memory backend sharing the test clock."""
    return InMemoryBackend(clock=clock)


@pytest_asyncio.fixture
async def redis_client():
    """
    fakeredis client on a private server.

    An explicit FakeServer keeps tests from sharing keys.
    """
    client = fakeredis.aioredis.FakeRedis(
        server=fakeredis.FakeServer(),
        decode_responses=True,
    )
    yield client
    await client.aclose()


@pytest.fixture
def redis_backend(redis_client) -> RedisBackend:
    return RedisBackend(redis_client)


@pytest.fixture
def clock_factory():
    """For tests that need several independent clocks."""
    return FakeClock
