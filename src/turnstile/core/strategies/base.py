"""
Abstract base classes for rate limiting strategies.

This module defines the contract that all rate limiting algorithms must follow.
Using the Strategy Pattern allows swapping algorithms without changing the
client code: callers build a Request, hand it to whichever strategy they were
configured with and act on the Result.

Consistency:
    Strategies issue several independent store commands per call. They are
    not atomic as a whole, so concurrent calls for the same key can
    interleave and overshoot the limit by up to the number of calls in
    flight when the limit is crossed. Nothing is cached in-process; every
    decision comes from the shared store.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum

from turnstile.core.backends.base import StorageBackend
from turnstile.core.clock import Clock, utc_now
from turnstile.core.errors import BackendError, StoreError


class State(StrEnum):
    """
    Possible outcomes of a rate limit check.

    ALLOW: Request is within limits and should proceed.
    DENY: Request exceeds limits and should be rejected (HTTP 429).
    """

    ALLOW = "Allow"
    DENY = "Deny"


@dataclass(frozen=True)
class Request:
    """
    A single rate limit check.

    Attributes:
        key: Identifier of the client making calls, e.g. "user:123" or an
             API key. Must be the same for every call of the same client.
        limit: Maximum number of requests admitted over `duration`.
               A limit of 0 denies everything.
        duration: Length of the window.

    Example:
        >>> Request(key="user:123", limit=100, duration=timedelta(minutes=1))
    """

    key: str
    limit: int
    duration: timedelta


@dataclass(frozen=True)
class Result:
    """
    Immutable response from a rate limit check.

    Everything an HTTP layer needs to build its headers is derivable from
    this object alone.

    Attributes:
        state: Whether the request is ALLOWed or DENYed.
        total_requests: Requests attributed to the key in the current window,
                        including this one when it was recorded.
        expires_at: When the current window is expected to roll over.
    """

    state: State
    total_requests: int
    expires_at: datetime

    @property
    def is_allowed(self) -> bool:
        """Convenience property to check if request should proceed."""
        return self.state == State.ALLOW


class RateLimitStrategy(ABC):
    """
    Abstract base class for rate limiting algorithms.

    Subclasses get the backend, the clock and the store timeout wired in
    and implement `run`.

    Args:
        backend: Shared counter store.
        clock: Source of the current instant. Tests inject a fake one.
        timeout: Deadline in seconds for all store calls of one `run`.
                 None waits forever.
        key_prefix: Namespace for keys written to the store.
    """

    # Short tag added to store keys so strategies never share a key
    key_tag: str = ""

    def __init__(
        self,
        backend: StorageBackend,
        *,
        clock: Clock = utc_now,
        timeout: float | None = None,
        key_prefix: str = "turnstile",
    ) -> None:
        self.backend = backend
        self.clock = clock
        self.timeout = timeout
        self.key_prefix = key_prefix

    def store_key(self, key: str) -> str:
        return f"{self.key_prefix}:{self.key_tag}:{key}"

    @asynccontextmanager
    async def store_calls(self, key: str) -> AsyncIterator[None]:
        """
        Guard a sequence of store calls made on behalf of `key`.

        Backend failures and an expired deadline both surface as StoreError.
        Cancellation is left alone and propagates as CancelledError.
        """
        try:
            async with asyncio.timeout(self.timeout):
                yield
        except TimeoutError as exc:
            raise StoreError("timed out waiting for the store", key=key) from exc
        except BackendError as exc:
            raise StoreError(f"store command failed: {exc}", key=key) from exc

    @abstractmethod
    async def run(self, request: Request) -> Result:
        """
        Check if a request should be allowed and record it.

        This method is called for every incoming request that needs
        rate limiting. It must be fast and handle concurrent calls.

        Args:
            request: Key, limit and window of this check.

        Returns:
            Result with the decision and metadata.

        Raises:
            StoreError: If the store could not be reached or a command
                failed. No Result is produced in that case and nothing is
                retried; whether to fail open or closed is the caller's call.
        """
        pass
