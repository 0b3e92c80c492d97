"""Encryption migration status and control endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from orgvault.dependencies import DbSessionDep, GatewayDep
from orgvault.schemas.encryption import (
    EncryptionModeResponse,
    MigrationEnqueuedResponse,
    MigrationRequest,
    MigrationStatusResponse,
)
from orgvault.services import records
from orgvault.services.key_context import is_valid_org_id
from orgvault.tasks.migration import migrate_legacy_batch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/encryption")


@router.get("/status", response_model=MigrationStatusResponse)
async def migration_status(
    db: DbSessionDep,
    gateway: GatewayDep,
    org_id: Optional[str] = Query(None, description="Restrict counts to one organization"),
):
    """Record counts per encryption method and the active encryption mode."""
    if org_id is not None and not is_valid_org_id(org_id):
        raise HTTPException(status_code=400, detail="Invalid organization id")

    counts = await records.get_migration_status(db, org_id)
    total = counts["total"]
    return MigrationStatusResponse(
        mode=EncryptionModeResponse(
            kms_enabled=gateway.config.kms_enabled,
            dual_write=gateway.config.dual_write,
        ),
        legacy=counts["legacy"],
        kms=counts["kms"],
        total=total,
        kms_with_legacy_copy=counts["kms_with_legacy_copy"],
        percent_migrated=round(counts["kms"] * 100.0 / total, 2) if total else 100.0,
    )


@router.post(
    "/migrations",
    response_model=MigrationEnqueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_migration(request: MigrationRequest):
    """Enqueue one migration batch on the Celery worker."""
    if request.org_id is not None and not is_valid_org_id(request.org_id):
        raise HTTPException(status_code=400, detail="Invalid organization id")

    task = migrate_legacy_batch.delay(
        offset=request.offset,
        limit=request.limit,
        dry_run=request.dry_run,
        org_id=request.org_id,
    )
    logger.info(
        f"Enqueued migration batch {task.id}: offset={request.offset} "
        f"limit={request.limit} dry_run={request.dry_run}"
    )
    return MigrationEnqueuedResponse(task_id=str(task.id), request=request)
