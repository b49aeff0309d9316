# ==== FEISHU RELAY MAIN APPLICATION MODULE ==== #

"""
Main FastAPI application for the Feishu relay.

This module wires the resilience components into one RelayService during
the application lifespan, registers routes and middleware, and maps the
relay error hierarchy onto HTTP responses.
"""

import math
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from relay.errors import RateLimitExceeded, RelayError
from relay.integrations.feishu.client import FeishuClient
from relay.middleware.correlation import CorrelationMiddleware
from relay.observability.logging import get_logger, init_logging
from relay.observability.metrics import init_metrics, metrics_router
from relay.observability.tracing import init_tracing
from relay.resilience import (
    AdmissionController,
    CredentialCache,
    DispatchQueue,
    ResourceJanitor,
)
from relay.routes import health, messages
from relay.services.relay_service import RelayService
from relay.services.uploads import UploadStore
from relay.settings import Settings, get_settings


logger = get_logger(__name__)

VERSION = "0.1.0"


# ==== SERVICE CONSTRUCTION ==== #


def build_relay_service(settings: Settings, client: Optional[FeishuClient] = None) -> RelayService:
    """
    Instantiate the resilience components once for the process.

    Args:
        settings (Settings): Relay configuration
        client (Optional[FeishuClient]): Pre-built client (tests), else one is
            created from settings

    Returns:
        RelayService: Orchestrator owning all components
    """
    client = client or FeishuClient(
        base_url=settings.FEISHU_BASE_URL,
        app_id=settings.APP_ID,
        app_secret=settings.APP_SECRET,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )
    return RelayService(
        client=client,
        credentials=CredentialCache(
            client,
            safety_margin_seconds=settings.TOKEN_SAFETY_MARGIN_SECONDS,
        ),
        admission=AdmissionController(
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
            window_ms=settings.RATE_LIMIT_WINDOW_MS,
        ),
        queue=DispatchQueue(
            batch_size=settings.DISPATCH_BATCH_SIZE,
            pacing_ms=settings.DISPATCH_PACING_MS,
            task_timeout_seconds=settings.DISPATCH_TASK_TIMEOUT_SECONDS,
        ),
        janitor=ResourceJanitor(
            settings.UPLOAD_DIR,
            ttl_seconds=settings.UPLOAD_TTL_MS / 1000,
            interval_seconds=settings.janitor_interval_seconds,
        ),
        uploads=UploadStore(
            settings.UPLOAD_DIR,
            max_bytes=settings.MAX_UPLOAD_BYTES,
            allowed_extensions=settings.ALLOWED_IMAGE_EXTENSIONS,
        ),
        open_chat_id=settings.OPEN_CHAT_ID,
    )


# ==== APPLICATION LIFECYCLE MANAGEMENT ==== #


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Start the background workers on startup and drain them on shutdown.

    Shutdown order: stop accepting and drain the dispatch queue, let the
    janitor finish any sweep in progress, then close the HTTP client.
    """
    settings: Settings = app.state.settings

    # --► STARTUP SEQUENCE
    init_logging(settings.LOG_LEVEL, settings.LOG_DIR)
    init_tracing(settings.SERVICE_NAME, environment=settings.APP_ENV, version=app.version)

    relay = build_relay_service(settings, app.state.feishu_client)
    app.state.relay = relay

    await relay.queue.start()
    await relay.janitor.start()
    await relay.credentials.warm()
    logger.info("Feishu relay started", environment=settings.APP_ENV)

    yield

    # --► SHUTDOWN SEQUENCE
    await relay.queue.stop(drain=True, timeout=settings.DISPATCH_SHUTDOWN_TIMEOUT_SECONDS)
    await relay.janitor.stop()
    await relay.client.aclose()
    logger.info("Feishu relay stopped")


# ==== APPLICATION FACTORY ==== #


def create_app(
    settings: Optional[Settings] = None,
    feishu_client: Optional[FeishuClient] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings (Optional[Settings]): Configuration, defaults to the global
            settings instance
        feishu_client (Optional[FeishuClient]): Client override for tests

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()
    dev_docs = not settings.is_production

    app = FastAPI(
        title="Feishu Relay",
        description="Relays client messages and images into a Feishu chat",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if dev_docs else None,
        redoc_url="/redoc" if dev_docs else None,
    )
    app.state.settings = settings
    app.state.feishu_client = feishu_client

    init_metrics(app)

    # --► MIDDLEWARE (last added runs outermost)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id", "Retry-After"],
    )
    app.add_middleware(CorrelationMiddleware)

    app.include_router(metrics_router, tags=["monitoring"])
    app.include_router(health.router)
    app.include_router(messages.router)

    _register_exception_handlers(app)

    FastAPIInstrumentor.instrument_app(app)

    return app


# ==== EXCEPTION HANDLERS ==== #


def _register_exception_handlers(app: FastAPI) -> None:
    """Map relay errors, request validation errors and crashes to JSON."""

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", None)
        if exc.http_status >= 500:
            logger.error(
                f"{type(exc).__name__}: {exc.message}",
                error_code=exc.code,
                path=request.url.path,
            )
        else:
            logger.warning(
                f"{type(exc).__name__}: {exc.message}",
                error_code=exc.code,
                path=request.url.path,
            )

        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after)))}

        return JSONResponse(
            status_code=exc.http_status,
            content=exc.to_response(correlation_id),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError,
    ) -> JSONResponse:
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": "Invalid request data",
                "code": "VALIDATION_ERROR",
                "correlation_id": getattr(request.state, "correlation_id", None),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all, never leaks internal details."""
        correlation_id = getattr(request.state, "correlation_id", "unknown")
        logger.exception(
            f"Unhandled exception on {request.url.path}: {exc}",
            correlation_id=correlation_id,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred",
                "correlation_id": correlation_id,
                "code": "INTERNAL_ERROR",
            },
        )


# ==== APPLICATION INSTANCE ==== #


# Create application instance for deployment
app = create_app()
