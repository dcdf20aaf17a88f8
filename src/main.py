"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Initialize database engine and session factory
4. Start the webhook delivery scheduler (if enabled)
5. Register middleware (CORS, request id) and routers

Shutdown order:
1. Stop the delivery scheduler (in-flight pass finishes)
2. Close DB connection pool
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.router import api_v1_router, public_router
from src.config import get_settings
from src.core.events import DELIVERIES_ENQUEUED, DomainEvent, get_event_bus
from src.database import close_db, get_session_factory, init_db
from src.infra.background_worker import DeliveryScheduler
from src.services.webhook_delivery import DeliveryWorker
from src.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    log.info(
        "app.starting",
        environment=settings.environment,
        db_url=settings.database_url.split("@")[-1],
    )

    init_db(settings)

    scheduler: DeliveryScheduler | None = None
    if settings.webhook_worker_enabled:
        worker = DeliveryWorker.from_settings(settings, get_session_factory())
        scheduler = DeliveryScheduler(
            worker,
            interval_seconds=settings.webhook_poll_interval_seconds,
            retention_days=settings.webhook_delivery_retention_days,
            stale_after_seconds=settings.webhook_stale_delivery_seconds,
        )
        await scheduler.start()

        def _wake_scheduler(event: DomainEvent) -> None:
            scheduler.trigger()

        get_event_bus().subscribe(DELIVERIES_ENQUEUED, _wake_scheduler)
    app.state.delivery_scheduler = scheduler

    log.info("app.ready", delivery_scheduler=scheduler is not None)
    yield

    if scheduler is not None:
        get_event_bus().unsubscribe(DELIVERIES_ENQUEUED, _wake_scheduler)
        await scheduler.shutdown()

    await close_db()
    log.info("app.shutdown")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="FeedbackFlow Webhook Service",
        description=(
            "Webhook registration, event fan-out and reliable, signed delivery "
            "for the FeedbackFlow platform."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    # In dev mode, allow all origins for easier development
    cors_origins = ["*"] if settings.is_dev else settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.is_prod,
        allow_methods=["*"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
    )

    # Unique request ID for log correlation and payload correlationId
    app.add_middleware(RequestIdMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(public_router)
    app.include_router(api_v1_router)

    # ------------------------------------------------------------------ #
    # Global exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


# Module-level app instance for uvicorn
app = create_app()
