"""Pydantic schemas for the encryption status and migration endpoints."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class EncryptionModeResponse(BaseModel):
    kms_enabled: bool
    dual_write: bool


class MigrationStatusResponse(BaseModel):
    """Record counts per encryption method."""

    mode: EncryptionModeResponse
    legacy: int
    kms: int
    total: int
    kms_with_legacy_copy: int = Field(
        ..., description="Migrated records whose legacy ciphertext has not been cleaned up"
    )
    percent_migrated: float


class MigrationRequest(BaseModel):
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=100, ge=1, le=1000)
    dry_run: bool = False
    org_id: Optional[str] = None


class MigrationEnqueuedResponse(BaseModel):
    task_id: str
    request: MigrationRequest


class HealthResponse(BaseModel):
    status: str
    checks: Dict[str, bool]
    failing: List[str] = Field(default_factory=list)
