"""Audit log model for immutable encryption event tracking."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Float, Index, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from orgvault.database import Base


class AuditAction(str, Enum):
    """Types of auditable actions."""

    # Gateway operations
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"

    # Migration
    MIGRATE = "migrate"
    LEGACY_CLEANUP = "legacy_cleanup"

    # Record lifecycle
    RECORD_DELETED = "record_deleted"
    RECORD_REASSIGNED = "record_reassigned"


class AuditOutcome(str, Enum):
    """Result of an audited operation."""

    SUCCESS = "success"
    FALLBACK = "fallback"
    FAILURE = "failure"
    KEY_MISMATCH = "key_mismatch"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


class AuditSeverity(str, Enum):
    """Severity levels for audit events."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditLog(Base):
    """
    Immutable audit log entry.

    One row per encrypt/decrypt/migrate operation. Never holds plaintext,
    ciphertext or key material.
    """

    __tablename__ = "audit_logs"

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Organization scoping
    org_id: Mapped[Optional[str]] = mapped_column(
        String(80),
        nullable=True,
        index=True,
        comment="Organization whose key was used",
    )

    # Event classification
    action: Mapped[AuditAction] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )
    outcome: Mapped[AuditOutcome] = mapped_column(
        String(20),
        nullable=False,
    )
    severity: Mapped[AuditSeverity] = mapped_column(
        String(20),
        default=AuditSeverity.INFO,
        nullable=False,
        index=True,
    )

    # Key context
    subject_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    data_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    record_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    method: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="Encryption method used: legacy or kms",
    )
    duration_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Event details
    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    details: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
        comment="Additional event-specific details",
    )

    # Timestamp (immutable)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_audit_logs_org_action", "org_id", "action"),
        Index("ix_audit_logs_severity_time", "severity", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, outcome={self.outcome})>"
