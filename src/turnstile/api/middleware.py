from datetime import timedelta

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp
import structlog

from turnstile.core.errors import RateLimiterError, StoreError
from turnstile.core.strategies.base import Request as RateLimitRequest, State

logger = structlog.get_logger()

RATE_LIMITING_TOTAL_REQUESTS = "Rate-Limiting-Total-Requests"
RATE_LIMITING_STATE = "Rate-Limiting-State"
RATE_LIMITING_EXPIRES_AT = "Rate-Limiting-Expires-At"


class KeyExtractionError(RateLimiterError):
    """The request carries nothing we can rate limit on."""


class HeaderExtractor:
    """
    Builds the rate limit key from request headers.

    The stripped values of every configured header are joined with "-".
    Use headers that are unique per client (API key, account id, ...).
    Only headers are read, never the body.
    """

    def __init__(self, *headers: str) -> None:
        self.headers = headers

    def extract(self, request: Request) -> str:
        values = []
        for name in self.headers:
            value = request.headers.get(name, "").strip()
            if not value:
                raise KeyExtractionError(f"the header {name} must have a value set")
            values.append(value)
        return "-".join(values)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limits every request before it reaches the wrapped app.

    The strategy is read from `app.state.strategy`, which the lifespan sets
    once the store connection is up. Rate limit headers are sent on both
    allowed and denied responses.

    Store failures are the caller's policy decision, not the strategy's:
    with `fail_open` the request goes through unlimited, otherwise it is
    answered with a 500.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        limit: int,
        duration: timedelta,
        extractor: HeaderExtractor,
        fail_open: bool = False,
        exempt_paths: tuple[str, ...] = (),
    ):
        super().__init__(app)
        self.limit = limit
        self.duration = duration
        self.extractor = extractor
        self.fail_open = fail_open
        self.exempt_paths = exempt_paths

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:

        if request.url.path in self.exempt_paths:
            return await call_next(request)

        strategy = getattr(request.app.state, "strategy", None)

        if not strategy:
            logger.warning("middleware_uninitialized_skipping")
            return await call_next(request)

        try:
            client_id = self.extractor.extract(request)
        except KeyExtractionError as exc:
            logger.info("rate_limit_key_missing", reason=str(exc))
            return JSONResponse(
                status_code=400,
                content={
                    "error": "rate_limit_key_missing",
                    "message": f"failed to collect rate limiting key from request: {exc}",
                },
            )

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            client_id=client_id,
            path=request.url.path,
            method=request.method
        )

        try:
            result = await strategy.run(
                RateLimitRequest(key=client_id, limit=self.limit, duration=self.duration)
            )
        except StoreError as exc:
            if self.fail_open:
                logger.warning("rate_limit_store_failed_open", error=str(exc))
                return await call_next(request)

            logger.error("rate_limit_store_failed", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "rate_limit_unavailable",
                    "message": f"failed to run rate limiting for request: {exc}",
                },
            )

        logger.info(
            "rate_limit_check",
            state=result.state,
            total_requests=result.total_requests,
            limit=self.limit,
        )

        headers = {
            RATE_LIMITING_TOTAL_REQUESTS: str(result.total_requests),
            RATE_LIMITING_STATE: str(result.state),
            RATE_LIMITING_EXPIRES_AT: result.expires_at.isoformat(timespec="seconds"),
        }

        if result.state == State.DENY:
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limit_exceeded",
                    "message": "you have sent too many requests to this service, slow down please",
                    "expires_at": headers[RATE_LIMITING_EXPIRES_AT],
                },
                headers=headers,
            )

        response = await call_next(request)

        for key, value in headers.items():
            response.headers[key] = value

        return response
