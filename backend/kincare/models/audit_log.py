"""Append-only audit trail for permission-relevant actions."""

from enum import StrEnum

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from kincare.models.base import Base, TimestampMixin


class AuditAction(StrEnum):
    invite_created = "invite_created"
    invite_resent = "invite_resent"
    invite_accepted = "invite_accepted"
    invite_declined = "invite_declined"
    invite_expired = "invite_expired"
    permissions_changed = "permissions_changed"
    access_suspended = "access_suspended"
    access_reactivated = "access_reactivated"
    access_revoked = "access_revoked"
    emergency_access_granted = "emergency_access_granted"
    emergency_access_expired = "emergency_access_expired"
    emergency_override_used = "emergency_override_used"
    permission_denied = "permission_denied"
    index_rebuilt = "index_rebuilt"
    relationship_repaired = "relationship_repaired"


class AuditLogEntry(Base, TimestampMixin):
    """Immutable audit entry. Rows are inserted, never updated or deleted."""

    __tablename__ = "access_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    actor_id: Mapped[int | None] = mapped_column(
        ForeignKey("identities.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
        comment="Null for system actions such as the expiry sweep",
    )
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("identities.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    access_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (Index("ix_access_audit_log_created_at", "created_at"),)

    def __repr__(self) -> str:
        return f"<AuditLogEntry(id={self.id}, action={self.action}, patient_id={self.patient_id})>"
