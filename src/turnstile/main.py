"""
Application factory for the turnstile service.

There is no module-level app, since building one needs REDIS_URL. Serve it
with uvicorn's factory mode, which calls create_app() at startup:

    REDIS_URL=redis://localhost:6379/0 uvicorn --factory turnstile.main:create_app
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator

from fastapi import FastAPI
from redis.asyncio import from_url
import structlog

from turnstile.config import Settings, get_settings
from turnstile.api.middleware import HeaderExtractor, RateLimitMiddleware
from turnstile.api.routes import router
from turnstile.core.backends.redis import RedisBackend
from turnstile.core.logging import setup_logging
from turnstile.core.strategies.factory import build_strategy

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifecycle manager.
    Handles Redis connection startup and graceful shutdown.
    """
    settings: Settings = app.state.settings
    setup_logging()

    # 1. Initialize Infrastructure
    redis_client = from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True
    )

    # 2. Initialize Core Logic (Dependency Injection)
    backend = RedisBackend(redis_client)
    app.state.strategy = build_strategy(settings, backend)

    logger.info("turnstile_started", strategy=settings.rate_limit_strategy.value)
    yield

    # 3. Cleanup
    await redis_client.aclose()
    logger.info("turnstile_stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        lifespan=lifespan
    )
    app.state.settings = settings

    app.add_middleware(
        RateLimitMiddleware,
        limit=settings.rate_limit_default,
        duration=timedelta(seconds=settings.rate_limit_window),
        extractor=HeaderExtractor(*settings.rate_limit_key_headers),
        fail_open=settings.rate_limit_fail_open,
        exempt_paths=("/health",),
    )
    app.include_router(router)
    return app
