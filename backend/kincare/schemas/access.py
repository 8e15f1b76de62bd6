"""Pydantic schemas for the family access API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from kincare.models import AccessLevel, AccessRecord


class Permissions(BaseModel):
    """The full, closed set of capability flags."""

    can_view: bool = False
    can_create: bool = False
    can_edit: bool = False
    can_delete: bool = False
    can_claim_responsibility: bool = False
    can_manage_family: bool = False
    can_view_medical_details: bool = False
    can_receive_notifications: bool = False


class PermissionOverrides(BaseModel):
    """Explicit flags applied on top of a preset; omitted flags are left alone."""

    model_config = ConfigDict(extra="forbid")

    can_view: bool | None = None
    can_create: bool | None = None
    can_edit: bool | None = None
    can_delete: bool | None = None
    can_claim_responsibility: bool | None = None
    can_manage_family: bool | None = None
    can_view_medical_details: bool | None = None
    can_receive_notifications: bool | None = None


# ----- Requests -----


class InvitationCreate(BaseModel):
    """Invite a family member by email."""

    patient_id: int | None = Field(
        None, description="Patient to share; defaults to the caller"
    )
    email: EmailStr
    name: str | None = Field(None, max_length=255)
    access_level: AccessLevel = AccessLevel.limited
    permissions: PermissionOverrides | None = None
    event_types_allowed: list[str] | None = Field(
        None, description="Category allow-list, limited access only"
    )


class InvitationTokenRequest(BaseModel):
    token: str = Field(..., min_length=8, max_length=128)


class InvitationDecline(InvitationTokenRequest):
    reason: str | None = Field(None, max_length=500)


class PermissionUpdate(BaseModel):
    access_level: AccessLevel | None = None
    permissions: PermissionOverrides | None = None
    event_types_allowed: list[str] | None = None


class StatusChange(BaseModel):
    reason: str | None = Field(None, max_length=500)


class EmergencyAccessGrant(BaseModel):
    member_id: int
    duration_hours: int | None = Field(None, ge=1, description="Defaults to the configured window")


# ----- Responses -----


class AccessRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    patient_id: int
    family_member_id: int | None = None
    family_member_email: str
    family_member_name: str | None = None
    permissions: Permissions
    access_level: str
    event_types_allowed: list[str] = []
    emergency_access: bool = False
    emergency_access_expires_at: datetime | None = None
    invitation_expires_at: datetime | None = None
    status: str
    invited_at: datetime
    accepted_at: datetime | None = None
    last_access_at: datetime | None = None
    revoked_at: datetime | None = None
    revoked_by: int | None = None
    revocation_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, record: AccessRecord) -> "AccessRecordResponse":
        return cls.model_validate(
            {
                **{
                    key: getattr(record, key)
                    for key in cls.model_fields
                    if key != "permissions"
                },
                "event_types_allowed": list(record.event_types_allowed or []),
                "permissions": record.permission_flags(),
            }
        )


class InvitationCreatedResponse(BaseModel):
    record: AccessRecordResponse
    invitation_token: str
    invitation_url: str


class InvitationPreviewResponse(BaseModel):
    access_id: str
    patient_name: str
    patient_email: str
    family_member_email: str
    family_member_name: str | None = None
    access_level: str
    permissions: Permissions
    event_types_allowed: list[str] = []
    status: str
    invitation_expires_at: datetime | None = None


class CapabilityCheckResponse(BaseModel):
    patient_id: int
    capability: str
    allowed: bool
    reason: str
    access_id: str | None = None


class ActivePatientResponse(BaseModel):
    patient_id: int
    source: str
    candidates: list[int] = []


class AuditLogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_id: int | None = None
    patient_id: int
    access_id: str | None = None
    action: str
    reason: str | None = None
    metadata: dict[str, Any] | None = Field(None, validation_alias="metadata_")
    created_at: datetime | None = None


class IndexReportResponse(BaseModel):
    identity_id: int
    drift: bool
    repaired: bool
    diff: dict[str, Any] = {}
    linked_patient_ids: list[int] = []
    family_member_ids: list[int] = []
    primary_patient_id: int | None = None


class SweepResponse(BaseModel):
    expired_invitations: int
    expired_emergency_grants: int
    total: int


class ConsistencyIssueResponse(BaseModel):
    kind: str
    identity_id: int | None = None
    access_id: str | None = None
    details: dict[str, Any] = {}


class ConsistencyReportResponse(BaseModel):
    consistent: bool
    checked_identities: int
    checked_records: int
    issues: list[ConsistencyIssueResponse] = []


class RepairResponse(BaseModel):
    identity_id: int
    relinked_access_ids: list[str] = []
    reports: list[IndexReportResponse] = []
