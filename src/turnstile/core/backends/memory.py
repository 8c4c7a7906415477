"""
In-memory storage backend for testing and development.

This backend stores all data in Python dictionaries, making it:
- Fast: No network calls, no serialization
- Simple: No external dependencies
- Deterministic: Expiry is computed from an injectable clock, so tests
  can jump past a window instead of sleeping through it

WARNING: Not suitable for production!
- No persistence (data lost on restart)
- No distribution (single process only, limits are not shared)

Use RedisBackend for production deployments.
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from turnstile.core.backends.base import (
    KEY_DOES_NOT_EXIST,
    KEY_WITHOUT_EXPIRY,
    Pipeline,
    ScoreBound,
    StorageBackend,
)
from turnstile.core.clock import Clock, utc_now
from turnstile.core.errors import BackendError

WRONGTYPE = "WRONGTYPE Operation against a key holding the wrong kind of value"


def _parse_bound(bound: ScoreBound) -> tuple[float, bool]:
    """
    Parse a Redis style score bound.

    Returns:
        (value, exclusive)
    """
    if isinstance(bound, str) and bound.startswith("("):
        return float(bound[1:]), True
    return float(bound), False


def _in_range(score: float, min_score: ScoreBound, max_score: ScoreBound) -> bool:
    low, low_exclusive = _parse_bound(min_score)
    high, high_exclusive = _parse_bound(max_score)

    above = score > low if low_exclusive else score >= low
    below = score < high if high_exclusive else score <= high
    return above and below


class InMemoryPipeline(Pipeline):
    """
    Queues calls against an InMemoryBackend and replays them in order.

    Like a Redis pipeline, a failing command does not stop the rest.
    """

    def __init__(self, backend: "InMemoryBackend") -> None:
        self._backend = backend
        self._commands: list[Callable[[], Awaitable[Any]]] = []

    def incr(self, key: str) -> "InMemoryPipeline":
        self._commands.append(lambda: self._backend.incr(key))
        return self

    def pttl(self, key: str) -> "InMemoryPipeline":
        self._commands.append(lambda: self._backend.pttl(key))
        return self

    def pexpire(self, key: str, milliseconds: int) -> "InMemoryPipeline":
        self._commands.append(lambda: self._backend.pexpire(key, milliseconds))
        return self

    def zadd(self, key: str, score: float, member: str) -> "InMemoryPipeline":
        self._commands.append(lambda: self._backend.zadd(key, score, member))
        return self

    def zremrangebyscore(
        self, key: str, min_score: ScoreBound, max_score: ScoreBound
    ) -> "InMemoryPipeline":
        self._commands.append(
            lambda: self._backend.zremrangebyscore(key, min_score, max_score)
        )
        return self

    def zcount(
        self, key: str, min_score: ScoreBound, max_score: ScoreBound
    ) -> "InMemoryPipeline":
        self._commands.append(lambda: self._backend.zcount(key, min_score, max_score))
        return self

    async def execute(self) -> list[Any]:
        commands, self._commands = self._commands, []
        results: list[Any] = []
        for command in commands:
            try:
                results.append(await command())
            except BackendError as exc:
                results.append(exc)
        return results


class InMemoryBackend(StorageBackend):
    """
    In-memory implementation of StorageBackend.

    Stores counters and sorted sets in dictionaries with lazy TTL checking.
    Designed for unit tests and local development only.

    Example:
        >>> backend = InMemoryBackend()
        >>> await backend.incr("key")
        1
        >>> await backend.pexpire("key", 60_000)
        True

    Thread Safety:
        This implementation is NOT thread-safe. None of its methods await,
        so under asyncio each command runs without interleaving, like a
        single Redis command does.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock

        # Counters: key -> integer value
        self._counters: dict[str, int] = {}

        # Sorted sets: key -> {member: score}
        self._sorted_sets: dict[str, dict[str, float]] = {}

        # Expiration times: key -> instant when the key expires
        self._expiry: dict[str, datetime] = {}

    def _exists(self, key: str) -> bool:
        return key in self._counters or key in self._sorted_sets

    def _cleanup_if_expired(self, key: str) -> bool:
        """
        Remove key if expired.

        Returns:
            True if key was expired and removed, False otherwise.
        """
        expires_at = self._expiry.get(key)
        if expires_at is not None and self._clock() > expires_at:
            self._drop(key)
            return True
        return False

    def _drop(self, key: str) -> None:
        self._counters.pop(key, None)
        self._sorted_sets.pop(key, None)
        self._expiry.pop(key, None)

    def _sorted_set(self, key: str, create: bool = False) -> dict[str, float] | None:
        self._cleanup_if_expired(key)
        if key in self._counters:
            raise BackendError(WRONGTYPE)
        if create:
            return self._sorted_sets.setdefault(key, {})
        return self._sorted_sets.get(key)

    # =========================================================================
    # Counter Operations
    # =========================================================================

    async def incr(self, key: str) -> int:
        self._cleanup_if_expired(key)
        if key in self._sorted_sets:
            raise BackendError(WRONGTYPE)

        value = self._counters.get(key, 0) + 1
        self._counters[key] = value
        return value

    async def pttl(self, key: str) -> int:
        self._cleanup_if_expired(key)
        if not self._exists(key):
            return KEY_DOES_NOT_EXIST

        expires_at = self._expiry.get(key)
        if expires_at is None:
            return KEY_WITHOUT_EXPIRY

        remaining = expires_at - self._clock()
        return max(0, round(remaining / timedelta(milliseconds=1)))

    async def pexpire(self, key: str, milliseconds: int) -> bool:
        self._cleanup_if_expired(key)
        if not self._exists(key):
            return False

        if milliseconds <= 0:
            self._drop(key)
        else:
            self._expiry[key] = self._clock() + timedelta(milliseconds=milliseconds)
        return True

    # =========================================================================
    # Sorted Set Operations
    # =========================================================================

    async def zadd(self, key: str, score: float, member: str) -> int:
        members = self._sorted_set(key, create=True)
        added = 0 if member in members else 1
        members[member] = float(score)
        return added

    async def zremrangebyscore(
        self, key: str, min_score: ScoreBound, max_score: ScoreBound
    ) -> int:
        members = self._sorted_set(key)
        if not members:
            return 0

        doomed = [m for m, s in members.items() if _in_range(s, min_score, max_score)]
        for member in doomed:
            del members[member]

        # Redis deletes a sorted set once it is empty
        if not members:
            self._drop(key)
        return len(doomed)

    async def zcount(
        self, key: str, min_score: ScoreBound, max_score: ScoreBound
    ) -> int:
        members = self._sorted_set(key)
        if not members:
            return 0
        return sum(1 for s in members.values() if _in_range(s, min_score, max_score))

    def pipeline(self) -> InMemoryPipeline:
        return InMemoryPipeline(self)

    # =========================================================================
    # Utility Methods (not part of interface, useful for testing)
    # =========================================================================

    def clear(self) -> None:
        """Clear all stored data."""
        self._counters.clear()
        self._sorted_sets.clear()
        self._expiry.clear()

    def keys(self) -> list[str]:
        """Get all non-expired keys."""
        all_keys = list(self._counters) + list(self._sorted_sets)
        return [k for k in all_keys if not self._cleanup_if_expired(k)]
