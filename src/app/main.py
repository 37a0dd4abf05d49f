"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, lifespan
events for database initialization and Kommo service wiring, and the API
router.

The lifespan builds every long-lived object exactly once and places it on
``app.state``: the shared httpx client, the Kommo rate limiter, OAuth client,
token store, REST client and the sync engine.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import httpx
import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.platform.crm.kommo import KommoClient, KommoOAuthClient
from src.app.platform.crm.rate_limit import SlidingWindowRateLimiter
from src.app.platform.crm.sync import KommoSyncEngine
from src.app.platform.crm.tokens import KommoTokenStore
from src.app.platform.notifications import NotificationService
from src.app.platform.repository import PlatformRepository


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and Kommo services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    repository = PlatformRepository(session_factory=get_session)
    http_client = httpx.AsyncClient()

    rate_limiter = SlidingWindowRateLimiter(
        max_requests=settings.KOMMO_RATE_LIMIT,
        window_seconds=settings.KOMMO_RATE_WINDOW_SECONDS,
    )
    oauth = KommoOAuthClient(
        http=http_client,
        client_id=settings.KOMMO_CLIENT_ID,
        client_secret=settings.KOMMO_CLIENT_SECRET,
        redirect_uri=settings.KOMMO_REDIRECT_URI,
        timeout=settings.KOMMO_REQUEST_TIMEOUT,
    )
    token_store = KommoTokenStore(
        repository=repository.kommo_tokens,
        oauth=oauth,
        default_api_domain=settings.KOMMO_DEFAULT_API_DOMAIN,
    )
    kommo_client = KommoClient(
        http=http_client,
        token_store=token_store,
        rate_limiter=rate_limiter,
        timeout=settings.KOMMO_REQUEST_TIMEOUT,
        max_attempts=settings.KOMMO_MAX_RETRIES,
    )

    app.state.platform_repository = repository
    app.state.http_client = http_client
    app.state.kommo_oauth = oauth
    app.state.kommo_token_store = token_store
    app.state.kommo_client = kommo_client
    app.state.kommo_sync_engine = KommoSyncEngine(
        repository=repository,
        client=kommo_client,
        notifications=NotificationService(repository.notifications),
        batch_delay=settings.KOMMO_SYNC_BATCH_DELAY,
    )
    log.info(
        "app.kommo_services_initialized",
        rate_limit=settings.KOMMO_RATE_LIMIT,
        rate_window_s=settings.KOMMO_RATE_WINDOW_SECONDS,
        oauth_configured=bool(settings.KOMMO_CLIENT_ID),
    )

    yield

    await http_client.aclose()
    await close_db()
    log.info("app.shutdown_complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="AI Agent Platform API",
        version="0.1.0",
        description="Conversational AI agents connected to the Kommo CRM",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside the API router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
