"""
Error types raised by the rate limiting core.

Two layers:
- BackendError: the store itself failed (connection, timeout, bad command).
  Raised by StorageBackend implementations, knows nothing about clients.
- StoreError: a strategy could not reach a decision for a client key.
  Always chains the underlying cause and carries the caller's key.

Strategies never retry. Whether a StoreError means "reject" or "let it
through" is up to the caller (see RateLimitMiddleware.fail_open).
"""


class RateLimiterError(Exception):
    """Base class for every error raised by turnstile."""


class BackendError(RateLimiterError):
    """The shared store was unreachable or rejected a command."""


class StoreError(RateLimiterError):
    """
    A rate limit check failed because of the shared store.

    Attributes:
        key: The client key the check was running for.
    """

    def __init__(self, message: str, *, key: str) -> None:
        super().__init__(f"{message} (key={key!r})")
        self.key = key
