"""Initial schema: organizations, encrypted records, audit logs.

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(80), nullable=False, comment="KMS organization id, e.g. org_01H1234567890"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_organizations_active", "organizations", ["is_active", "deleted_at"])

    op.create_table(
        "encrypted_records",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("org_id", sa.String(80), nullable=False, comment="Organization whose key protects this record"),
        sa.Column("subject_id", sa.String(100), nullable=False, comment="User or entity that created the record"),
        sa.Column("data_type", sa.String(50), nullable=False, comment="Key context data type bound into the KMS ciphertext"),
        sa.Column(
            "encrypted_content",
            sa.Text(),
            nullable=True,
            comment="Legacy AES-256-GCM ciphertext, base64(nonce || ciphertext || tag)",
        ),
        sa.Column("vault_encrypted_content", sa.Text(), nullable=True, comment="Opaque org-scoped KMS ciphertext"),
        sa.Column(
            "encryption_method",
            sa.String(20),
            nullable=False,
            server_default="legacy",
            comment="Authoritative ciphertext: 'legacy' or 'kms'",
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_encrypted_records_org_id", "encrypted_records", ["org_id"])
    op.create_index("ix_encrypted_records_method_created", "encrypted_records", ["encryption_method", "created_at"])
    op.create_index("ix_encrypted_records_org_method", "encrypted_records", ["org_id", "encryption_method"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("org_id", sa.String(80), nullable=True, comment="Organization whose key was used"),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("severity", sa.String(20), nullable=False, server_default="info"),
        sa.Column("subject_id", sa.String(100), nullable=True),
        sa.Column("data_type", sa.String(50), nullable=True),
        sa.Column("record_id", sa.String(64), nullable=True),
        sa.Column("method", sa.String(20), nullable=True, comment="Encryption method used: legacy or kms"),
        sa.Column("duration_ms", sa.Float(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False, comment="Additional event-specific details"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_org_id", "audit_logs", ["org_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_severity", "audit_logs", ["severity"])
    op.create_index("ix_audit_logs_record_id", "audit_logs", ["record_id"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])
    op.create_index("ix_audit_logs_org_action", "audit_logs", ["org_id", "action"])
    op.create_index("ix_audit_logs_severity_time", "audit_logs", ["severity", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_severity_time", table_name="audit_logs")
    op.drop_index("ix_audit_logs_org_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_created_at", table_name="audit_logs")
    op.drop_index("ix_audit_logs_record_id", table_name="audit_logs")
    op.drop_index("ix_audit_logs_severity", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_org_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_encrypted_records_org_method", table_name="encrypted_records")
    op.drop_index("ix_encrypted_records_method_created", table_name="encrypted_records")
    op.drop_index("ix_encrypted_records_org_id", table_name="encrypted_records")
    op.drop_table("encrypted_records")

    op.drop_index("ix_organizations_active", table_name="organizations")
    op.drop_table("organizations")
