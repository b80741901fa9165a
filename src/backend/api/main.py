"""
FastAPI server for the insight resolution core.

This module handles application setup, lifespan management, and middleware configuration.
Route handlers are organized in the routers/ package.

The core components are built once per process:
- CoreClients: model router, catalogs, SQL generator/executor, audit sink, funnel storage
- InsightServices: classifier, template matcher, funnel engine, orchestrator, refiner
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from api.errors import register_error_handlers
from api.monitoring import configure_observability, is_observability_enabled
from api.routers import funnels_router, insights_router
from config.settings import Settings, get_settings
from dotenv import load_dotenv
from entities.workflow import InsightServices, create_core_clients, create_insight_services
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

load_dotenv()

# Configure logging - use force=True to prevent duplicate handlers
logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, force=True)

# Reduce noise from Azure SDK and other libraries
logging.getLogger("azure").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
# Reduce agent_framework verbosity (it logs all message content at INFO level)
logging.getLogger("agent_framework").setLevel(logging.WARNING)

# Paths that are always accessible regardless of auth configuration
_ALWAYS_PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}


class _FailClosedMiddleware(BaseHTTPMiddleware):
    """Return 503 on all non-health endpoints when anonymous access is not allowed."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:  # noqa: PLR6301
        if request.url.path in _ALWAYS_PUBLIC_PATHS:
            return await call_next(request)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "detail": "Authentication is not configured. "
                "Set ALLOW_ANONYMOUS=true for development or serve the API "
                "behind an authenticating gateway."
            },
        )


@asynccontextmanager
async def lifespan(application: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan handler.

    Builds the insight services on startup (unless they were injected)
    and flushes pending audit events on shutdown.
    """
    settings: Settings = application.state.settings
    logger.info("Insight API starting")

    if is_observability_enabled(settings):
        logger.info("OpenTelemetry observability is ENABLED")
    else:
        logger.info(
            "OpenTelemetry observability is disabled (set ENABLE_INSTRUMENTATION=true to enable)"
        )

    if settings.allow_anonymous:
        logger.warning("=" * 60)
        logger.warning("WARNING: Running with ALLOW_ANONYMOUS=true")
        logger.warning("All endpoints accept unauthenticated requests.")
        logger.warning("DO NOT use this setting in production.")
        logger.warning("=" * 60)
    else:
        logger.warning("=" * 60)
        logger.warning("WARNING: Anonymous access is disabled!")
        logger.warning("Non-health endpoints will return 503.")
        logger.warning("Set ALLOW_ANONYMOUS=true for local development.")
        logger.warning("=" * 60)

    if application.state.services is None:
        clients = create_core_clients(settings)
        application.state.services = create_insight_services(settings, clients)

    yield

    services: InsightServices | None = application.state.services
    if services is not None:
        await services.audit.drain()
    logger.info("Application shutdown complete")


def create_app(settings: Settings, services: InsightServices | None = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Application configuration.
        services: Prebuilt services; built from *settings* at startup when omitted.

    Returns:
        The configured application.
    """
    configure_observability(settings)

    application = FastAPI(title="Insight Resolution API", lifespan=lifespan)
    application.state.settings = settings
    application.state.services = services

    if not settings.allow_anonymous:
        application.add_middleware(_FailClosedMiddleware)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(application)
    application.include_router(insights_router)
    application.include_router(funnels_router)

    @application.get("/health")
    async def health_check() -> dict[str, object]:
        """Health check endpoint."""
        services_ready = getattr(application.state, "services", None) is not None
        return {"status": "healthy", "services_ready": services_ready}

    return application


app = create_app(get_settings())


if __name__ == "__main__":
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=True)  # noqa: S104
