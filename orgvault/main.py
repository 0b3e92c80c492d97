"""FastAPI application entry point with lifespan management.

@module main
@description Application setup: routes, middleware, lifespan and error mapping.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orgvault.config import get_settings
from orgvault.database import close_db, init_db
from orgvault.exceptions import EncryptedDataAccessError, OrganizationInactiveError
from orgvault.middleware.metrics import MetricsMiddleware, get_metrics_response
from orgvault.routers import encryption, health

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown."""
    # Startup
    logger.info("Starting orgvault...")

    # Verify database connectivity (migrations handled by Alembic)
    logger.info("Verifying database connection...")
    await init_db()

    logger.info(
        f"orgvault started (kms_mode={settings.KMS_MODE_ENABLED}, "
        f"dual_write={settings.KMS_DUAL_WRITE})"
    )

    yield

    # Shutdown
    logger.info("Shutting down orgvault...")

    from orgvault.dependencies import get_gateway

    if get_gateway.cache_info().currsize:
        await get_gateway().kms_client.close()

    await close_db()

    logger.info("orgvault shut down successfully")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Organization-scoped encryption for sensitive records",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Encryption", "description": "Migration status and batch control."},
        {"name": "health", "description": "Liveness and readiness probes."},
    ],
)

app.add_middleware(MetricsMiddleware)

# Include API routers
app.include_router(encryption.router, prefix=settings.API_V1_PREFIX, tags=["Encryption"])
app.include_router(health.router)


@app.exception_handler(EncryptedDataAccessError)
async def encrypted_data_access_handler(request: Request, exc: EncryptedDataAccessError) -> JSONResponse:
    """Never leak KMS or key details to callers."""
    return JSONResponse(
        status_code=503,
        content={"detail": "Could not access encrypted data"},
    )


@app.exception_handler(OrganizationInactiveError)
async def organization_inactive_handler(request: Request, exc: OrganizationInactiveError) -> JSONResponse:
    logger.warning(f"Rejected write for organization {exc.org_id}: {exc}")
    return JSONResponse(
        status_code=409,
        content={"detail": "Organization is inactive"},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled exception: {type(exc).__name__}")

    if settings.DEBUG:
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": type(exc).__name__},
        )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


@app.get("/metrics", tags=["monitoring"])
async def metrics_endpoint():
    """Prometheus metrics scrape target."""
    return get_metrics_response()
