"""Keep the hash of lapsed invitation tokens.

Revision ID: 20261018_01
Revises: 20261018_00
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "20261018_01"
down_revision: str | None = "20261018_00"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column(
        "access_records",
        sa.Column("expired_token_hash", sa.String(length=64), nullable=True),
    )
    op.create_index("ix_access_records_expired_token_hash", "access_records", ["expired_token_hash"])


def downgrade() -> None:
    op.drop_index("ix_access_records_expired_token_hash", table_name="access_records")
    op.drop_column("access_records", "expired_token_hash")
