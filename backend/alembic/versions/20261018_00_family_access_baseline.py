"""Family access baseline: identities, access records and audit log.

Revision ID: 20261018_00
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "20261018_00"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "identities",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=20), server_default="patient", nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("linked_patient_ids", sa.JSON(), nullable=False),
        sa.Column("family_member_ids", sa.JSON(), nullable=False),
        sa.Column("primary_patient_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_identities_email"),
    )
    op.create_index("ix_identities_email", "identities", ["email"])

    op.create_table(
        "access_records",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("family_member_id", sa.Integer(), nullable=True),
        sa.Column("family_member_email", sa.String(length=255), nullable=False),
        sa.Column("family_member_name", sa.String(length=255), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("can_view", sa.Boolean(), nullable=False),
        sa.Column("can_create", sa.Boolean(), nullable=False),
        sa.Column("can_edit", sa.Boolean(), nullable=False),
        sa.Column("can_delete", sa.Boolean(), nullable=False),
        sa.Column("can_claim_responsibility", sa.Boolean(), nullable=False),
        sa.Column("can_manage_family", sa.Boolean(), nullable=False),
        sa.Column("can_view_medical_details", sa.Boolean(), nullable=False),
        sa.Column("can_receive_notifications", sa.Boolean(), nullable=False),
        sa.Column("access_level", sa.String(length=20), server_default="limited", nullable=False),
        sa.Column("event_types_allowed", sa.JSON(), nullable=False),
        sa.Column("emergency_access", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("emergency_access_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("invitation_token_hash", sa.String(length=64), nullable=True),
        sa.Column("invitation_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_token_hash", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=20), server_default="pending", nullable=False),
        sa.Column("invited_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_access_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.Integer(), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        sa.Column("repair_reason", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["patient_id"], ["identities.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["family_member_id"], ["identities.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["created_by"], ["identities.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["revoked_by"], ["identities.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invitation_token_hash"),
    )
    op.create_index("ix_access_records_patient_id", "access_records", ["patient_id"])
    op.create_index("ix_access_records_family_member_id", "access_records", ["family_member_id"])
    op.create_index("ix_access_records_accepted_token_hash", "access_records", ["accepted_token_hash"])
    op.create_index("ix_access_records_patient_status", "access_records", ["patient_id", "status"])
    op.create_index(
        "uq_access_records_live_pair",
        "access_records",
        ["patient_id", "family_member_email"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'active') AND emergency_access = false"),
    )

    op.create_table(
        "access_audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("access_id", sa.String(length=36), nullable=True),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.String(length=64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["actor_id"], ["identities.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["patient_id"], ["identities.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_access_audit_log_actor_id", "access_audit_log", ["actor_id"])
    op.create_index("ix_access_audit_log_patient_id", "access_audit_log", ["patient_id"])
    op.create_index("ix_access_audit_log_created_at", "access_audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_table("access_audit_log")
    op.drop_index("uq_access_records_live_pair", table_name="access_records")
    op.drop_table("access_records")
    op.drop_table("identities")
