"""Organization model: the tenant that owns encryption keys."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from orgvault.database import Base


class Organization(Base):
    """
    Tenant organization.

    The primary key is the KMS provider's organization id (``org_...``), so
    every encrypted record and audit log can reference it directly.
    """

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(
        String(80),
        primary_key=True,
        comment="KMS organization id, e.g. org_01H1234567890",
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_organizations_active", "is_active", "deleted_at"),
    )

    @property
    def accepts_writes(self) -> bool:
        return self.is_active and self.deleted_at is None

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name={self.name}, active={self.is_active})>"
