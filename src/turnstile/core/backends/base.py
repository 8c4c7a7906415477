"""
Abstract base classes for storage backends.

This module defines the contract the shared counter store must follow.
Separating storage from algorithms allows:
- Testing with an in-memory backend and a fake clock (no Redis needed)
- Running the same strategies against Redis in production

The interface mirrors the handful of Redis commands the strategies need:
counters with millisecond TTLs (Fixed Window) and sorted sets with
score-range operations (Sliding Window), plus non-transactional pipelines.

Score bounds follow Redis range syntax: a number, "-inf", "+inf", or a
"(" prefix for an exclusive bound, e.g. "(1699900000000".
"""

from abc import ABC, abstractmethod
from typing import Any

# Redis PTTL sentinels
KEY_DOES_NOT_EXIST = -2
KEY_WITHOUT_EXPIRY = -1

SCORE_MIN = "-inf"
SCORE_MAX = "+inf"

ScoreBound = float | int | str


class Pipeline(ABC):
    """
    A batch of independent commands sent to the store in one round trip.

    Commands are queued by calling the methods below (each returns the
    pipeline so calls can be chained) and run by `execute`.

    This is NOT a transaction: commands may succeed or fail individually
    and other clients can interleave between them.
    """

    @abstractmethod
    def incr(self, key: str) -> "Pipeline":
        pass

    @abstractmethod
    def pttl(self, key: str) -> "Pipeline":
        pass

    @abstractmethod
    def pexpire(self, key: str, milliseconds: int) -> "Pipeline":
        pass

    @abstractmethod
    def zadd(self, key: str, score: float, member: str) -> "Pipeline":
        pass

    @abstractmethod
    def zremrangebyscore(
        self,
        key: str,
        min_score: ScoreBound,
        max_score: ScoreBound,
    ) -> "Pipeline":
        pass

    @abstractmethod
    def zcount(
        self,
        key: str,
        min_score: ScoreBound,
        max_score: ScoreBound,
    ) -> "Pipeline":
        pass

    @abstractmethod
    async def execute(self) -> list[Any]:
        """
        Run every queued command.

        Returns:
            One entry per queued command, in order. A command that failed
            is reported in place as a BackendError instance.

        Raises:
            BackendError: If the round trip as a whole failed.
        """
        pass


class StorageBackend(ABC):
    """
    Abstract base class for rate limit state storage.

    Implementations must handle:
    - Integer counters with millisecond TTLs (for Fixed Window)
    - Sorted sets with score-based operations (for Sliding Window)
    - Non-transactional command batches

    Every I/O method raises BackendError when the store fails.

    Available implementations:
    - InMemoryBackend: For testing and development (single process)
    - RedisBackend: For production (shared by every instance)

    Example:
        >>> backend = InMemoryBackend(clock=fake_clock)  # for testing
        >>> strategy = FixedWindowStrategy(backend, clock=fake_clock)

        >>> backend = RedisBackend(redis_client)  # for production
        >>> strategy = FixedWindowStrategy(backend)
    """

    # =========================================================================
    # Counter Operations (used by Fixed Window)
    # =========================================================================

    @abstractmethod
    async def incr(self, key: str) -> int:
        """
        Atomically increment a counter by one.

        A missing key is created at 0 first, without an expiry.

        Returns:
            The counter value after the increment.
        """
        pass

    @abstractmethod
    async def pttl(self, key: str) -> int:
        """
        Remaining time to live of a key.

        Returns:
            Milliseconds left, KEY_WITHOUT_EXPIRY (-1) if the key exists but
            never expires, or KEY_DOES_NOT_EXIST (-2).
        """
        pass

    @abstractmethod
    async def pexpire(self, key: str, milliseconds: int) -> bool:
        """
        Set a timeout on a key.

        After the timeout, the key is automatically deleted. Works for
        counters and sorted sets alike.

        Returns:
            True if the timeout was set, False if the key does not exist.
        """
        pass

    # =========================================================================
    # Sorted Set Operations (used by Sliding Window)
    # =========================================================================

    @abstractmethod
    async def zadd(self, key: str, score: float, member: str) -> int:
        """
        Add a member to a sorted set with a score.

        If member already exists, its score is updated.

        Returns:
            Number of new members added (0 on update).

        Example:
            >>> await backend.zadd("turnstile:sw:user:123", 1699900000000, token)
        """
        pass

    @abstractmethod
    async def zremrangebyscore(
        self,
        key: str,
        min_score: ScoreBound,
        max_score: ScoreBound,
    ) -> int:
        """
        Remove members with scores in the given range.

        Used to clean up requests that fell out of the sliding window.

        Returns:
            Number of members removed.

        Example:
            >>> # Remove everything strictly older than window_start
            >>> await backend.zremrangebyscore(key, "-inf", f"({window_start}")
        """
        pass

    @abstractmethod
    async def zcount(
        self,
        key: str,
        min_score: ScoreBound,
        max_score: ScoreBound,
    ) -> int:
        """
        Count members with scores in the given range.

        Returns:
            Number of matching members, or 0 if the key doesn't exist.

        Example:
            >>> in_window = await backend.zcount(key, window_start, "+inf")
        """
        pass

    # =========================================================================
    # Batching
    # =========================================================================

    @abstractmethod
    def pipeline(self) -> Pipeline:
        """Start a new non-transactional command batch."""
        pass
