"""Notification delivery FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from notify_reliability import __version__
from notify_reliability.api import router as api_router
from notify_reliability.core.config import Settings, settings
from notify_reliability.core.deps import build_delivery_service
from notify_reliability.core.logging import configure_logging
from notify_reliability.services.delivery.errors import (
    DeliveryNotFoundError,
    RuleValidationError,
    UnknownChannelError,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the delivery service on startup and shut it down on exit."""
    config: Settings = app.state.settings

    logger.info(
        "Starting notification delivery service",
        environment=config.environment,
        storage_backend=config.storage_backend,
    )
    if getattr(app.state, "delivery_service", None) is None:
        app.state.delivery_service = await build_delivery_service(config)
    await app.state.delivery_service.start()

    yield

    logger.info("Shutting down notification delivery service")
    await app.state.delivery_service.shutdown()


def create_app(config: Settings | None = None) -> FastAPI:
    """Build the FastAPI application."""
    config = config or settings
    configure_logging(config.log_level)

    app = FastAPI(
        title=config.app_name,
        description="Notification delivery tracking, circuit breakers and retry scheduling",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )
    app.state.settings = config
    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(DeliveryNotFoundError)
    async def not_found_handler(request: Request, exc: DeliveryNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(UnknownChannelError)
    async def unknown_channel_handler(request: Request, exc: UnknownChannelError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RuleValidationError)
    async def rule_validation_handler(request: Request, exc: RuleValidationError):
        logger.warning(
            "Rejected delivery rule update",
            path=str(request.url.path),
            errors=exc.errors,
        )
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc), "errors": exc.errors},
        )

    if config.metrics_enabled:
        from notify_reliability.core.metrics import expose_metrics, setup_metrics

        instrumentator = setup_metrics(app)
        expose_metrics(app, instrumentator)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint for Kubernetes probes."""
        return {"status": "healthy", "version": __version__}

    return app


fastapi_app = create_app()
