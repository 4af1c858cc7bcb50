"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events for database and service initialization, and the v1 API
router. Background work (event consumption, retries, daily resets) runs in
``src.crm.worker``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.crm.config import get_settings
from src.crm.core.database import close_db, get_session, init_db
from src.crm.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.crm.core.redis import close_redis, get_redis_pool
from src.crm.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.crm.api.v1.router import router as v1_router
from src.crm.webhooks.services import build_services


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, Sentry and services; close on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    services = build_services(get_session, get_redis_pool(), settings)
    app.state.services = services
    app.state.webhook_repository = services.webhook_repository
    app.state.inbound_repository = services.inbound_repository
    app.state.log_store = services.log_store
    app.state.dispatcher = services.dispatcher
    app.state.ingestor = services.ingestor
    app.state.conversion_service = services.conversion_service
    app.state.event_bus = services.event_bus
    app.state.dead_letter_queue = services.dead_letter_queue
    log.info("app.services_initialized", environment=settings.ENVIRONMENT.value)

    yield

    try:
        await services.close()
    except Exception:
        log.warning("app.services_close_failed", exc_info=True)

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Webhooks API",
        version="0.1.0",
        description="Outbound deal event webhooks and inbound lead ingestion",
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
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)

    # Outermost: records Prometheus metrics for all requests
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health at the root, the rest under /api/v1)
    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
