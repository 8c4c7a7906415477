"""
Unit tests for Sliding Window rate limiting strategy.

These tests verify the correctness of the Sliding Window algorithm
without any external dependencies (using InMemoryBackend and a fake
clock), plus a few end-to-end checks on fakeredis.

Test categories:
- Basic allow/deny behavior
- Window expiration behavior
- Store contents (denials never write, idle keys expire)
- Key isolation (different users don't affect each other)
- Failure handling

Run tests:
    pytest tests/unit/test_sliding_window.py -v
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from turnstile.core.backends.base import StorageBackend
from turnstile.core.backends.memory import InMemoryBackend
from turnstile.core.clock import to_millis
from turnstile.core.errors import BackendError, StoreError
from turnstile.core.strategies.base import Request, State
from turnstile.core.strategies.sliding_window import SlidingWindowStrategy

MINUTE = timedelta(minutes=1)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def strategy(backend: InMemoryBackend, clock) -> SlidingWindowStrategy:
    """Create a Sliding Window strategy with the test backend."""
    return SlidingWindowStrategy(backend, clock=clock)


def stub_backend(in_window: int = 0, batch=None, batch_error=None) -> MagicMock:
    backend = MagicMock(spec=StorageBackend)
    backend.zcount.return_value = in_window

    pipe = MagicMock()
    for command in ("zremrangebyscore", "zadd", "zcount", "pexpire"):
        getattr(pipe, command).return_value = pipe
    pipe.execute = AsyncMock(return_value=batch, side_effect=batch_error)
    backend.pipeline.return_value = pipe
    return backend


async def stored(backend: InMemoryBackend, key: str) -> int:
    return await backend.zcount(f"turnstile:sw:{key}", "-inf", "+inf")


# =============================================================================
# Basic Behavior Tests
# =============================================================================


class TestBasicBehavior:
    """Tests for fundamental allow/deny functionality."""

    @pytest.mark.asyncio
    async def test_first_request_is_allowed(self, strategy) -> None:
        result = await strategy.run(Request(key="user:1", limit=10, duration=MINUTE))

        assert result.is_allowed
        assert result.state == State.ALLOW
        assert result.total_requests == 1

    @pytest.mark.asyncio
    async def test_limit_then_deny(self, strategy, backend) -> None:
        request = Request(key="some-user", limit=100, duration=MINUTE)

        for ordinal in range(1, 101):
            result = await strategy.run(request)
            assert result.is_allowed, f"Request {ordinal} should be allowed"
            assert result.total_requests == ordinal

        result = await strategy.run(request)

        assert result.state == State.DENY
        assert result.total_requests == 100
        assert await stored(backend, "some-user") == 100

    @pytest.mark.asyncio
    async def test_zero_limit_denies_without_writing(self, strategy, backend) -> None:
        result = await strategy.run(Request(key="user:zero", limit=0, duration=MINUTE))

        assert result.state == State.DENY
        assert result.total_requests == 0
        assert backend.keys() == []

    @pytest.mark.asyncio
    async def test_expires_at_is_one_window_ahead(self, strategy, clock) -> None:
        request = Request(key="user:exp", limit=1, duration=MINUTE)

        allowed = await strategy.run(request)
        denied = await strategy.run(request)

        assert allowed.expires_at == clock() + MINUTE
        assert denied.expires_at == clock() + MINUTE


# =============================================================================
# Window Expiration Tests
# =============================================================================


class TestWindowExpiration:
    @pytest.mark.asyncio
    async def test_allowed_again_once_window_has_passed(self, strategy, clock) -> None:
        request = Request(key="some-user", limit=100, duration=MINUTE)
        for _ in range(100):
            await strategy.run(request)

        results = []
        for _ in range(61):
            clock.advance(seconds=1)
            results.append(await strategy.run(request))

        # T0 entries still count up to and including T0 + 60s
        assert all(r.state == State.DENY for r in results[:-1])
        assert results[-1].state == State.ALLOW
        assert results[-1].total_requests == 1

    @pytest.mark.asyncio
    async def test_spread_requests_roll_off_one_by_one(self, strategy, clock) -> None:
        limit = 10
        request = Request(key="user:spread", limit=limit, duration=timedelta(seconds=10))

        for _ in range(limit):
            assert (await strategy.run(request)).is_allowed
            clock.advance(seconds=1)

        # exactly one window after the first request it still counts
        assert not (await strategy.run(request)).is_allowed

        clock.advance(milliseconds=500)
        result = await strategy.run(request)

        assert result.is_allowed
        # the nine in-window entries plus this one, not the lifetime total
        assert result.total_requests == limit

    @pytest.mark.asyncio
    async def test_partial_window_expiration(self, strategy, clock) -> None:
        """Only expired requests should be removed from window."""
        request = Request(key="user:8", limit=3, duration=timedelta(seconds=2))

        await strategy.run(request)
        clock.advance(seconds=1.1)
        await strategy.run(request)
        await strategy.run(request)

        assert not (await strategy.run(request)).is_allowed

        # first request expires, second and third do not
        clock.advance(seconds=1.0)
        result = await strategy.run(request)

        assert result.is_allowed
        assert result.total_requests == 3

    @pytest.mark.asyncio
    async def test_idle_key_expires(self, strategy, backend, clock) -> None:
        await strategy.run(Request(key="user:idle", limit=5, duration=MINUTE))

        assert await backend.pttl("turnstile:sw:user:idle") == 61_000

        clock.advance(seconds=61)
        assert backend.keys() == ["turnstile:sw:user:idle"]

        clock.advance(milliseconds=1)
        assert backend.keys() == []

    @pytest.mark.asyncio
    async def test_entry_at_window_start_still_counts(self, strategy, clock) -> None:
        request = Request(key="user:edge", limit=1, duration=MINUTE)
        assert (await strategy.run(request)).is_allowed

        clock.advance(seconds=60)
        result = await strategy.run(request)

        assert result.state == State.DENY
        assert result.total_requests == 1

        clock.advance(milliseconds=1)
        assert (await strategy.run(request)).is_allowed


# =============================================================================
# Store Contents
# =============================================================================


class TestStoreContents:
    @pytest.mark.asyncio
    async def test_denials_do_not_mutate_the_set(self, strategy, backend) -> None:
        request = Request(key="user:flood", limit=3, duration=MINUTE)
        for _ in range(3):
            await strategy.run(request)

        for _ in range(50):
            result = await strategy.run(request)
            assert result.state == State.DENY
            assert result.total_requests == 3

        assert await stored(backend, "user:flood") == 3

    @pytest.mark.asyncio
    async def test_scores_are_epoch_milliseconds(self, strategy, backend, clock) -> None:
        await strategy.run(Request(key="user:ms", limit=5, duration=MINUTE))

        at_now = to_millis(clock())
        assert await backend.zcount("turnstile:sw:user:ms", at_now, at_now) == 1

    @pytest.mark.asyncio
    async def test_same_instant_requests_are_all_recorded(self, strategy, backend) -> None:
        request = Request(key="user:burst", limit=10, duration=MINUTE)

        for _ in range(7):
            await strategy.run(request)

        assert await stored(backend, "user:burst") == 7

    @pytest.mark.asyncio
    async def test_counted_entries_never_exceed_admitted(self, strategy, backend, clock) -> None:
        request = Request(key="user:mix", limit=4, duration=timedelta(seconds=5))
        admitted_at = []

        for step in range(30):
            result = await strategy.run(request)
            if result.is_allowed:
                admitted_at.append(clock())

            window_start = clock() - request.duration
            admitted_in_window = sum(1 for t in admitted_at if t >= window_start)
            counted = await backend.zcount(
                "turnstile:sw:user:mix", to_millis(window_start), to_millis(clock())
            )
            assert counted <= admitted_in_window

            clock.advance(milliseconds=700 if step % 3 else 100)

    @pytest.mark.asyncio
    async def test_repeated_runs_are_deterministic(self, clock_factory) -> None:
        script = [
            (0, "a", 2, 10), (0, "a", 2, 10), (1, "a", 2, 10), (1, "b", 1, 10),
            (5, "b", 1, 10), (11, "a", 2, 10), (12, "b", 1, 10), (12, "a", 2, 10),
        ]

        async def play():
            clock = clock_factory()
            strategy = SlidingWindowStrategy(InMemoryBackend(clock=clock), clock=clock)
            start = clock()
            results = []
            for offset, key, limit, seconds in script:
                clock.now = start + timedelta(seconds=offset)
                results.append(
                    await strategy.run(
                        Request(key=key, limit=limit, duration=timedelta(seconds=seconds))
                    )
                )
            return results

        assert await play() == await play()


# =============================================================================
# Key Isolation Tests
# =============================================================================


class TestKeyIsolation:
    @pytest.mark.asyncio
    async def test_different_keys_have_independent_limits(self, strategy) -> None:
        for _ in range(2):
            await strategy.run(Request(key="user:A", limit=2, duration=MINUTE))

        result_a = await strategy.run(Request(key="user:A", limit=2, duration=MINUTE))
        assert not result_a.is_allowed

        result_b = await strategy.run(Request(key="user:B", limit=2, duration=MINUTE))
        assert result_b.is_allowed
        assert result_b.total_requests == 1

    @pytest.mark.asyncio
    async def test_special_characters_in_key(self, strategy) -> None:
        special_keys = [
            "user:email@example.com",
            "ip:192.168.1.1",
            "api:key-with-dashes",
            "user:名前",  # Unicode
        ]

        for key in special_keys:
            result = await strategy.run(Request(key=key, limit=5, duration=MINUTE))
            assert result.is_allowed, f"Key '{key}' should be allowed"


# =============================================================================
# Failure Handling
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_post_write_count_decides(self, clock) -> None:
        """Another instance slipped in between the pre-check and the write."""
        backend = stub_backend(in_window=2, batch=[0, 1, 4, True])
        strategy = SlidingWindowStrategy(backend, clock=clock)

        result = await strategy.run(Request(key="user:race", limit=3, duration=MINUTE))

        assert result.state == State.DENY
        assert result.total_requests == 4

    @pytest.mark.asyncio
    async def test_batch_removes_strictly_older_entries(self, clock) -> None:
        backend = stub_backend(batch=[0, 1, 1, True])
        strategy = SlidingWindowStrategy(backend, clock=clock)

        await strategy.run(Request(key="user:gc", limit=3, duration=MINUTE))

        pipe = backend.pipeline.return_value
        window_start = to_millis(clock() - MINUTE)
        backend.zcount.assert_awaited_once_with("turnstile:sw:user:gc", window_start, "+inf")
        pipe.zremrangebyscore.assert_called_once_with(
            "turnstile:sw:user:gc", "-inf", f"({window_start}"
        )
        pipe.pexpire.assert_called_once_with("turnstile:sw:user:gc", 61_000)

    @pytest.mark.asyncio
    async def test_pre_check_failure_raises_store_error(self, clock) -> None:
        backend = stub_backend()
        backend.zcount.side_effect = BackendError("connection reset")
        strategy = SlidingWindowStrategy(backend, clock=clock)

        with pytest.raises(StoreError) as exc_info:
            await strategy.run(Request(key="user:down", limit=3, duration=MINUTE))

        assert exc_info.value.key == "user:down"
        backend.pipeline.assert_not_called()

    @pytest.mark.asyncio
    async def test_batch_failure_raises_store_error(self, clock) -> None:
        backend = stub_backend(batch_error=BackendError("broken pipe"))
        strategy = SlidingWindowStrategy(backend, clock=clock)

        with pytest.raises(StoreError):
            await strategy.run(Request(key="user:pipe", limit=3, duration=MINUTE))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failed", [0, 1, 2, 3])
    async def test_any_failed_command_raises_store_error(self, clock, failed) -> None:
        batch = [0, 1, 1, True]
        batch[failed] = BackendError("OOM command not allowed")
        strategy = SlidingWindowStrategy(stub_backend(batch=batch), clock=clock)

        with pytest.raises(StoreError):
            await strategy.run(Request(key="user:partial", limit=3, duration=MINUTE))


# =============================================================================
# Against Redis (fakeredis)
# =============================================================================


class TestWithRedis:
    @pytest.mark.asyncio
    async def test_limit_enforced(self, redis_backend, redis_client) -> None:
        strategy = SlidingWindowStrategy(redis_backend)
        request = Request(key="user:redis", limit=3, duration=MINUTE)

        results = [await strategy.run(request) for _ in range(5)]

        assert [r.state for r in results] == [State.ALLOW] * 3 + [State.DENY] * 2
        assert [r.total_requests for r in results] == [1, 2, 3, 3, 3]
        assert await redis_client.zcard("turnstile:sw:user:redis") == 3
        assert 0 < await redis_client.pttl("turnstile:sw:user:redis") <= 61_000

    @pytest.mark.asyncio
    async def test_stale_entries_are_removed(self, redis_backend, redis_client) -> None:
        strategy = SlidingWindowStrategy(redis_backend)
        await redis_client.zadd("turnstile:sw:user:old", {"stale-1": 1000, "stale-2": 2000})

        result = await strategy.run(Request(key="user:old", limit=3, duration=MINUTE))

        assert result.total_requests == 1
        assert await redis_client.zscore("turnstile:sw:user:old", "stale-1") is None
