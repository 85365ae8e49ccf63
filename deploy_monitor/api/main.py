"""
Deploy Monitor - FastAPI Application
====================================

Main application factory with all routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deploy_monitor.api import alerts, analytics, runs, webhooks
from deploy_monitor.core.config import Settings, get_settings
from deploy_monitor.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from deploy_monitor.core.nerve_center import websocket_endpoint
from deploy_monitor.core.schemas import ErrorResponse, HealthResponse
from deploy_monitor.core.service import MonitoringService

logger = structlog.get_logger()


def configure_logging(settings: Settings) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _error(status_code: int, error: str, detail: str, code: str, errors: Optional[list[str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error=error,
            detail=detail,
            code=code,
            errors=errors or [],
        ).model_dump(),
    )


# ==========================================================================
# App Factory
# ==========================================================================

def create_app(
    settings: Optional[Settings] = None,
    service: Optional[MonitoringService] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Overrides the environment settings
        service: Pre-built monitoring service, mostly for tests

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()
    service = service or MonitoringService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the monitoring service and stop it on shutdown."""
        logger.info("Starting Deploy Monitor", version=settings.APP_VERSION)
        await service.start()

        yield

        logger.info("Shutting down Deploy Monitor")
        await service.stop()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Deployment pipeline monitoring and alerting",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.service = service

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, "Not Found", str(exc), "NOT_FOUND")

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
        if isinstance(exc, InvalidTransitionError):
            return _error(status.HTTP_409_CONFLICT, "Conflict", exc.message, "INVALID_TRANSITION", exc.errors)
        return _error(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation Error",
            exc.message,
            "VALIDATION_ERROR",
            exc.errors,
        )

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Storage failure", path=request.url.path, method=request.method, error=str(exc))
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Storage Unavailable", str(exc), "STORAGE_ERROR")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error", detail, "INTERNAL_ERROR")

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Application, database and monitoring timer status."""
        database_ok = await service.store.ping()
        return HealthResponse(
            status="healthy" if database_ok else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database="connected" if database_ok else "unavailable",
            monitoring=service.orchestrator.is_monitoring,
            connected_clients=len(service.broadcaster.connections),
        )

    app.include_router(runs.router, prefix=settings.API_V1_PREFIX)
    app.include_router(webhooks.router, prefix=settings.API_V1_PREFIX)
    app.include_router(alerts.router, prefix=settings.API_V1_PREFIX)
    app.include_router(analytics.router, prefix=settings.API_V1_PREFIX)

    @app.get(f"{settings.API_V1_PREFIX}/status", tags=["Health"], summary="Service status")
    async def service_status() -> dict:
        return service.status()

    # ==========================================================================
    # WebSocket Endpoints
    # ==========================================================================

    @app.websocket(f"{settings.API_V1_PREFIX}/ws")
    async def monitor_websocket(websocket: WebSocket):
        """Real-time event stream for dashboards."""
        await websocket_endpoint(websocket, service.broadcaster)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
            "websocket": f"{settings.API_V1_PREFIX}/ws",
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

configure_logging(get_settings())
app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "deploy_monitor.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().is_development,
        log_level="info",
    )
