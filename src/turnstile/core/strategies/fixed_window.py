from datetime import timedelta

import structlog

from turnstile.core.backends.base import KEY_DOES_NOT_EXIST, KEY_WITHOUT_EXPIRY
from turnstile.core.clock import duration_millis
from turnstile.core.errors import StoreError
from turnstile.core.strategies.base import RateLimitStrategy, Request, Result, State

logger = structlog.get_logger(__name__)


class FixedWindowStrategy(RateLimitStrategy):
    """
    Fixed Window counter.

    One integer counter per key that expires after the window duration.
    Cheap (one round trip in the common case) but bursty: once the key
    expires a client can burn through its whole limit again at once, and
    twice the limit can get through around a window boundary.

    The increment and the expiry are separate commands, so every call
    checks the TTL and re-arms it when it is missing. A crash between the
    two must not leave a counter that never expires.
    """

    key_tag = "fw"

    async def run(self, request: Request) -> Result:
        key = self.store_key(request.key)
        window_ms = duration_millis(request.duration)

        async with self.store_calls(request.key):
            # Not a transaction, only saves a round trip
            incr_result, ttl_result = (
                await self.backend.pipeline().incr(key).pttl(key).execute()
            )

            if isinstance(incr_result, Exception):
                raise StoreError(
                    f"failed to increment counter: {incr_result}", key=request.key
                ) from incr_result

            # A failed TTL read counts as "no TTL": re-arm rather than risk a
            # key that never expires.
            if isinstance(ttl_result, Exception) or ttl_result in (
                KEY_WITHOUT_EXPIRY,
                KEY_DOES_NOT_EXIST,
            ):
                if ttl_result == KEY_WITHOUT_EXPIRY and incr_result > 1:
                    logger.warning(
                        "fixed_window_expiry_rearmed",
                        key=request.key,
                        total_requests=incr_result,
                    )
                await self.backend.pexpire(key, window_ms)
                ttl_ms = window_ms
            else:
                ttl_ms = ttl_result

        total_requests = int(incr_result)
        expires_at = self.clock() + timedelta(milliseconds=ttl_ms)

        if total_requests > request.limit:
            return Result(
                state=State.DENY,
                total_requests=total_requests,
                expires_at=expires_at,
            )

        return Result(
            state=State.ALLOW,
            total_requests=total_requests,
            expires_at=expires_at,
        )
