import uuid
from datetime import timedelta

import structlog

from turnstile.core.backends.base import SCORE_MAX, SCORE_MIN
from turnstile.core.clock import duration_millis, to_millis
from turnstile.core.errors import StoreError
from turnstile.core.strategies.base import RateLimitStrategy, Request, Result, State

logger = structlog.get_logger(__name__)

EXPIRY_MARGIN = timedelta(seconds=1)


class SlidingWindowStrategy(RateLimitStrategy):
    """
    Sliding Window Log algorithm.

    Every admitted request is stored as a unique member of a sorted set,
    scored with its time in milliseconds. Entries older than the window are
    dropped on each call, so the window rolls forward continuously: with
    100 requests per 5 minutes spread evenly, the first minute's requests
    stop counting once the sixth minute starts.

    Precise and resistant to bursts, but stores one entry per request.

    A client that is already over the limit is denied with a read-only
    count and nothing is written, so a saturated client cannot grow its
    set without bound. The set also gets an expiry of one window plus
    EXPIRY_MARGIN on every write; an idle key disappears on its own once
    all its entries are stale. The margin absorbs drift between the store
    clock and ours, so a set is never dropped while its newest entry is
    still inside our window.
    """

    key_tag = "sw"

    async def run(self, request: Request) -> Result:
        key = self.store_key(request.key)
        now = self.clock()
        expires_at = now + request.duration
        window_start = to_millis(now - request.duration)

        async with self.store_calls(request.key):
            in_window = await self.backend.zcount(key, window_start, SCORE_MAX)
            if in_window >= request.limit:
                logger.debug(
                    "sliding_window_short_circuit_deny",
                    key=request.key,
                    total_requests=in_window,
                )
                return Result(
                    state=State.DENY,
                    total_requests=in_window,
                    expires_at=expires_at,
                )

            token = str(uuid.uuid4())
            pipe = (
                self.backend.pipeline()
                .zremrangebyscore(key, SCORE_MIN, f"({window_start}")
                .zadd(key, to_millis(now), token)
                .zcount(key, SCORE_MIN, SCORE_MAX)
                .pexpire(key, duration_millis(request.duration + EXPIRY_MARGIN))
            )
            removed, added, count, expired = await pipe.execute()

            for action, outcome in (
                ("remove expired entries", removed),
                ("add request", added),
                ("count requests", count),
                ("set expiry", expired),
            ):
                if isinstance(outcome, Exception):
                    raise StoreError(
                        f"failed to {action}: {outcome}", key=request.key
                    ) from outcome

        total_requests = int(count)

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
