"""Access record: one directed relationship from a patient to a family member."""

import re
import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from kincare.models.base import Base, TimestampMixin

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class AccessStatus(StrEnum):
    pending = "pending"
    active = "active"
    suspended = "suspended"
    revoked = "revoked"
    expired = "expired"


LIVE_STATUSES = (AccessStatus.pending, AccessStatus.active)
TERMINAL_STATUSES = (AccessStatus.revoked, AccessStatus.expired)


class AccessLevel(StrEnum):
    full = "full"
    limited = "limited"
    emergency_only = "emergency_only"


class Capability(StrEnum):
    """Closed set of permission flags carried by every access record.

    Values double as the column names on ``AccessRecord``. The camelCase
    spelling (``canView``) is accepted on lookup.
    """

    can_view = "can_view"
    can_create = "can_create"
    can_edit = "can_edit"
    can_delete = "can_delete"
    can_claim_responsibility = "can_claim_responsibility"
    can_manage_family = "can_manage_family"
    can_view_medical_details = "can_view_medical_details"
    can_receive_notifications = "can_receive_notifications"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            snake = _CAMEL_BOUNDARY.sub("_", value.strip()).lower()
            for member in cls:
                if member.value == snake:
                    return member
        return None


def new_access_id() -> str:
    return str(uuid.uuid4())


class AccessRecord(Base, TimestampMixin):
    """Authoritative row for a patient -> family member relationship."""

    __tablename__ = "access_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_access_id)
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("identities.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    family_member_id: Mapped[int | None] = mapped_column(
        ForeignKey("identities.id", ondelete="SET NULL"),
        index=True,
        nullable=True,
        comment="Null until the invitation is accepted",
    )
    family_member_email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Invitee email, lower-cased",
    )
    family_member_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[int | None] = mapped_column(
        ForeignKey("identities.id", ondelete="SET NULL"),
        nullable=True,
        comment="Patient or delegated manager who created the record",
    )

    can_view: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_create: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_edit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_claim_responsibility: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_manage_family: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_view_medical_details: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_receive_notifications: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    access_level: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AccessLevel.limited.value,
        server_default="limited",
        comment="Advisory preset: full, limited, emergency_only",
    )
    event_types_allowed: Mapped[list[str]] = mapped_column(
        JSON,
        nullable=False,
        default=list,
        comment="Category allow-list; only honoured for limited access",
    )

    emergency_access: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    emergency_access_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    invitation_token_hash: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True, comment="SHA-256 of the pending invitation token"
    )
    invitation_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    accepted_token_hash: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True, comment="Hash of the consumed invitation token"
    )
    expired_token_hash: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True, comment="Hash of an invitation token that lapsed unused"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AccessStatus.pending.value,
        server_default="pending",
    )

    invited_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_access_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[int | None] = mapped_column(
        ForeignKey("identities.id", ondelete="SET NULL"),
        nullable=True,
    )
    revocation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    repair_reason: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Set when a maintenance repair relinked this record"
    )

    __table_args__ = (
        Index("ix_access_records_patient_status", "patient_id", "status"),
        Index(
            "uq_access_records_live_pair",
            "patient_id",
            "family_member_email",
            unique=True,
            postgresql_where=text(
                "status IN ('pending', 'active') AND emergency_access = false"
            ),
        ),
    )

    def has_capability(self, capability: Capability | str) -> bool:
        return bool(getattr(self, Capability(capability).value))

    def permission_flags(self) -> dict[str, bool]:
        return {capability.value: self.has_capability(capability) for capability in Capability}

    def granted_capabilities(self) -> list[Capability]:
        return [capability for capability in Capability if self.has_capability(capability)]

    def emergency_expired(self, now: datetime) -> bool:
        return bool(
            self.emergency_access
            and self.emergency_access_expires_at is not None
            and self.emergency_access_expires_at <= now
        )

    def invitation_expired(self, now: datetime) -> bool:
        return bool(
            self.status == AccessStatus.pending
            and self.invitation_expires_at is not None
            and self.invitation_expires_at <= now
        )

    def is_live(self, now: datetime) -> bool:
        """Active and, for emergency grants, not yet past its window."""
        return self.status == AccessStatus.active and not self.emergency_expired(now)

    def __repr__(self) -> str:
        return (
            f"<AccessRecord(id={self.id}, patient_id={self.patient_id}, "
            f"family_member_id={self.family_member_id}, status={self.status})>"
        )
