"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events that build the notification engine components, and the
v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.dealdesk.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.dealdesk.api.v1.router import router as v1_router
from src.dealdesk.config import Settings, get_settings
from src.dealdesk.core.database import close_db, get_session, init_db
from src.dealdesk.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.dealdesk.core.redis import close_redis, get_redis_pool
from src.dealdesk.core.tasks import cancel_detached
from src.dealdesk.notifications.ledger import (
    ReadMarkerLedger,
    RestReadMarkerLedger,
    SqlReadMarkerLedger,
)
from src.dealdesk.notifications.store import ReadStateStore
from src.dealdesk.ratelimit.client import RateLimitClient
from src.dealdesk.ratelimit.decider import RateLimitDecider
from src.dealdesk.realtime.feed import RedisRealtimeFeed


def build_ledger(settings: Settings) -> ReadMarkerLedger:
    """REST ledger when a hosted backend is configured, local Postgres otherwise."""
    if settings.BACKEND_URL:
        return RestReadMarkerLedger(settings.BACKEND_URL, settings.BACKEND_SERVICE_KEY)
    return SqlReadMarkerLedger(session_factory=get_session)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build engine components on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    ledger = build_ledger(settings)
    if isinstance(ledger, SqlReadMarkerLedger):
        await init_db()
    app.state.read_state_store = ReadStateStore(ledger)
    log.info("notifications.read_state_initialized", ledger=type(ledger).__name__)

    redis_client = get_redis_pool()
    app.state.realtime_feed = RedisRealtimeFeed(redis_client)
    app.state.rate_limit_decider = RateLimitDecider(
        redis_client,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        block_seconds=settings.RATE_LIMIT_BLOCK_SECONDS,
        bot_block_seconds=settings.RATE_LIMIT_BOT_BLOCK_SECONDS,
    )

    rate_limit_url = settings.get_rate_limit_url()
    app.state.rate_limit_client = (
        RateLimitClient(
            rate_limit_url,
            api_key=settings.BACKEND_SERVICE_KEY,
            timeout=settings.RATE_LIMIT_TIMEOUT,
        )
        if rate_limit_url
        else None
    )
    log.info("app.started", environment=settings.ENVIRONMENT.value)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    await cancel_detached()

    await app.state.realtime_feed.close()
    await close_redis()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="DealDesk Notifications API",
        version="0.1.0",
        description="Deal freshness alerts, notification read state, and rate limiting",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
