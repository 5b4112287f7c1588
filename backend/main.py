"""
ASGI entry point for the case lifecycle service.

The lifespan validates settings, connects MongoDB when it backs the
repositories and installs the lifecycle service used by the routes. Run
locally with ``uvicorn backend.main:app --reload``.
"""

import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.api.deps import is_lifecycle_service_initialized, set_lifecycle_service
from backend.app.api.middleware.error_handler import setup_error_handlers
from backend.app.api.middleware.logging import RequestContextMiddleware
from backend.app.api.routes import lifecycle
from backend.app.core.database import close_databases, get_database_manager, init_databases
from backend.app.core.exceptions import ConfigurationError
from backend.app.services.lifecycle_service import create_lifecycle_service
from backend.app.utils.logging import get_logger, initialize_logging_from_settings
from backend.config.settings import get_settings

# before any module-level logger emits
initialize_logging_from_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup checks and shutdown cleanup."""
    settings = get_settings()
    logger.info(
        "=== Case Lifecycle Service Starting Up ===",
        environment=settings.environment,
        repository_backend=settings.lifecycle.repository_backend
    )

    try:
        errors = settings.validate_configuration()
        if errors:
            raise ConfigurationError(
                f"Invalid configuration: {errors}",
                config_section=", ".join(sorted(errors))
            )

        if settings.lifecycle.repository_backend == "mongodb":
            await init_databases()

        if not is_lifecycle_service_initialized():
            set_lifecycle_service(create_lifecycle_service(settings))

        logger.info("=== Case Lifecycle Service Started Successfully ===")
        yield

    except Exception as e:
        logger.error("Lifecycle service failed to start", error=str(e), traceback=traceback.format_exc())
        raise

    finally:
        logger.info("=== Case Lifecycle Service Shutting Down ===")
        set_lifecycle_service(None)
        await close_databases()
        logger.info("=== Case Lifecycle Service Shutdown Complete ===")


def create_application() -> FastAPI:
    """Build the FastAPI app with middleware, routes and error handlers."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Lifecycle state machine for legal case management",
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan
    )

    configure_middleware(app)
    configure_routes(app)
    setup_error_handlers(app)

    return app


def configure_middleware(app: FastAPI) -> None:
    """CORS for the practice-management frontend plus request correlation."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"]
    )

    # added last so it wraps everything else
    app.add_middleware(RequestContextMiddleware)

    logger.info("Middleware configuration completed")


def configure_routes(app: FastAPI) -> None:
    """Mount the lifecycle router and the system endpoints."""

    @app.get("/health", tags=["system"], include_in_schema=False)
    async def health_check():
        """Report the lifecycle service and, for the mongodb backend, the database."""
        settings = get_settings()
        services = {
            "lifecycle_service": "healthy" if is_lifecycle_service_initialized() else "not_initialized",
        }
        if settings.lifecycle.repository_backend == "mongodb":
            services["database"] = (await get_database_manager().health_check())["status"]

        healthy = all(state == "healthy" for state in services.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "services": services,
            }
        )

    @app.get("/", tags=["system"], include_in_schema=False)
    async def root():
        """Service name, version and where to find the docs."""
        settings = get_settings()
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs_url": "/docs",
            "health_url": "/health"
        }

    app.include_router(
        lifecycle.router,
        prefix="/api/v1/cases",
        tags=["lifecycle"]
    )

    logger.info("Routes configuration completed")


app = create_application()


# Development server entry point
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting Case Lifecycle development server...")
    uvicorn.run(
        "backend.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["backend/app", "backend/config"],
        access_log=True
    )
