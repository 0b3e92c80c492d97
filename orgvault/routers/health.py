"""Health and readiness endpoints."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from orgvault.database import check_db_health
from orgvault.dependencies import GatewayDep, SettingsDep
from orgvault.schemas.encryption import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(settings: SettingsDep):
    """Basic health check endpoint."""
    return {"status": "healthy", "version": settings.APP_VERSION}


@router.get("/health/ready", response_model=HealthResponse)
async def readiness_check(settings: SettingsDep, gateway: GatewayDep):
    """
    Readiness check - verifies the database and, in KMS mode, the KMS.

    The KMS probe round-trips a fixed value under ``KMS_HEALTHCHECK_ORG_ID``;
    it is skipped when no probe organization is configured.
    """
    checks = {"database": await check_db_health()}
    if gateway.config.kms_enabled and settings.KMS_HEALTHCHECK_ORG_ID:
        checks["kms"] = await gateway.kms_client.check_connection(
            settings.KMS_HEALTHCHECK_ORG_ID
        )

    failing = [name for name, ok in checks.items() if not ok]
    if not failing:
        return HealthResponse(status="ready", checks=checks)

    return JSONResponse(
        status_code=503,
        content=HealthResponse(status="not ready", checks=checks, failing=failing).model_dump(),
    )
