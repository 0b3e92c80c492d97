"""Add encrypted record metadata columns.

Revision ID: 002
Revises: 001
Create Date: 2026-10-02 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "encrypted_records",
        sa.Column(
            "encrypted_metadata",
            sa.Text(),
            nullable=True,
            comment="Legacy ciphertext of the record metadata JSON",
        ),
    )
    op.add_column(
        "encrypted_records",
        sa.Column(
            "vault_encrypted_metadata",
            sa.Text(),
            nullable=True,
            comment="Org-scoped KMS ciphertext of the record metadata JSON",
        ),
    )


def downgrade() -> None:
    op.drop_column("encrypted_records", "vault_encrypted_metadata")
    op.drop_column("encrypted_records", "encrypted_metadata")
