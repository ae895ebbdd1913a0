"""
Evacuation Roster Console - Main FastAPI Application

Serves live roster views of evacuation-center events: change-driven refresh,
sorted and paginated rosters, duplicate-registration dialogs and the
end-of-operation lifecycle.
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from core.config import get_settings
from api.health import router as health_router
from api.roster_views import router as roster_views_router, get_view_registry, error_response
from services.error_handler import ConsoleError


# Get settings early to configure logging appropriately
settings = get_settings()

# Configure structured logging based on environment
if settings.DEBUG:
    # Development: Use human-readable console output with more detail
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stdout
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.dev.ConsoleRenderer(colors=True)
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)

else:
    # Production: Use JSON output for structured logging
    logging.basicConfig(level=logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("Starting Evacuation Roster Console API",
                debug_mode=settings.DEBUG,
                host=settings.HOST,
                port=settings.PORT)

    if settings.DEBUG:
        logger.info("Configuration loaded",
                    allowed_origins=settings.allowed_origins_list,
                    evac_api=settings.EVAC_API_BASE_URL,
                    realtime_configured=bool(settings.REALTIME_URL),
                    quiet_period_ms=settings.REFRESH_QUIET_PERIOD_MS)

    yield

    # Views own live subscriptions and timers; none may outlive the app.
    await get_view_registry().close_all()
    logger.info("Shutting down Evacuation Roster Console API")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Evacuation Roster Console",
        description="Live roster synchronization and operation lifecycle for evacuation centers",
        version="1.0.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    logger.info("Registering API routes")
    app.include_router(health_router, prefix="/api", tags=["health"])
    app.include_router(roster_views_router)

    @app.exception_handler(ConsoleError)
    async def console_error_handler(request, exc: ConsoleError):
        """Taxonomy errors raised outside an endpoint body (e.g. missing credential)."""
        return error_response(exc, operation=f"{request.method} {request.url.path}")

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Global exception handler with structured logging."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            client_ip=request.client.host if request.client else "unknown"
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if settings.DEBUG else "An unexpected error occurred"
            }
        )

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "Evacuation Roster Console",
            "version": "1.0.0",
            "status": "operational",
            "features": [
                "live_roster_refresh",
                "duplicate_registration_guard",
                "operation_lifecycle",
                "roster_sort_and_pagination"
            ]
        }

    return app


# Create the application instance
app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info" if settings.DEBUG else "warning",
        access_log=True
    )
