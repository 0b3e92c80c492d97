"""Encrypted record model for sensitive data (medical notes, OAuth tokens)."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from orgvault.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EncryptionMethod(str, Enum):
    """Which ciphertext column is authoritative for a record."""

    LEGACY = "legacy"
    KMS = "kms"


class EncryptedRecord(Base):
    """
    Encrypted record.

    ``encrypted_content`` holds the legacy single-secret ciphertext and
    ``vault_encrypted_content`` the org-scoped KMS ciphertext. During the
    migration both may be populated; ``encryption_method`` says which one is
    authoritative. ``org_id`` never changes after creation: moving a record to
    another organization means re-encrypting it into a new row.
    """

    __tablename__ = "encrypted_records"

    # Primary key
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Owning organization (immutable)
    org_id: Mapped[str] = mapped_column(
        String(80),
        nullable=False,
        index=True,
        comment="Organization whose key protects this record",
    )
    subject_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="User or entity that created the record",
    )
    data_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Key context data type bound into the KMS ciphertext",
    )

    # Ciphertexts
    encrypted_content: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Legacy AES-256-GCM ciphertext, base64(nonce || ciphertext || tag)",
    )
    vault_encrypted_content: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Opaque org-scoped KMS ciphertext",
    )
    # Optional JSON metadata, encrypted alongside the content under the same method
    encrypted_metadata: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Legacy ciphertext of the record metadata JSON",
    )
    vault_encrypted_metadata: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Org-scoped KMS ciphertext of the record metadata JSON",
    )
    encryption_method: Mapped[str] = mapped_column(
        String(20),
        default=EncryptionMethod.LEGACY.value,
        server_default=EncryptionMethod.LEGACY.value,
        nullable=False,
        comment="Authoritative ciphertext: 'legacy' or 'kms'",
    )

    # Monotonic content version, bumped on every content change
    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_encrypted_records_method_created", "encryption_method", "created_at"),
        Index("ix_encrypted_records_org_method", "org_id", "encryption_method"),
    )

    def __repr__(self) -> str:
        return (
            f"<EncryptedRecord(id={self.id}, org_id={self.org_id}, "
            f"method={self.encryption_method}, version={self.version})>"
        )
