import pytest
from pydantic import ValidationError

from kincare.models import AccessRecord, AccessStatus, AuditLogEntry, utcnow
from kincare.schemas import (
    AccessRecordResponse,
    AuditLogEntryResponse,
    EmergencyAccessGrant,
    InvitationCreate,
    InvitationTokenRequest,
    PermissionUpdate,
)
from kincare.services.family_access.permissions import preset_flags


def test_invitation_defaults_to_limited():
    body = InvitationCreate(email="fam@example.com")

    assert body.access_level == "limited"
    assert body.patient_id is None
    assert body.permissions is None


def test_invitation_rejects_bad_email_and_unknown_flag():
    with pytest.raises(ValidationError):
        InvitationCreate(email="nope")
    with pytest.raises(ValidationError):
        InvitationCreate(email="fam@example.com", permissions={"can_fly": True})


def test_permission_update_keeps_omitted_flags_unset():
    body = PermissionUpdate(permissions={"can_edit": True})

    assert body.permissions.model_dump(exclude_none=True) == {"can_edit": True}


def test_token_and_emergency_bounds():
    with pytest.raises(ValidationError):
        InvitationTokenRequest(token="short")
    with pytest.raises(ValidationError):
        EmergencyAccessGrant(member_id=2, duration_hours=0)


def test_access_record_response_nests_permissions():
    now = utcnow()
    record = AccessRecord(
        id="rec-1",
        patient_id=1,
        family_member_id=2,
        family_member_email="fam@example.com",
        access_level="full",
        event_types_allowed=None,
        emergency_access=False,
        status=AccessStatus.active.value,
        invited_at=now,
        invitation_token_hash="secret-hash",
        **preset_flags("full"),
    )

    response = AccessRecordResponse.from_record(record)
    payload = response.model_dump()

    assert payload["permissions"]["can_manage_family"] is True
    assert payload["event_types_allowed"] == []
    assert "invitation_token_hash" not in payload


def test_audit_entry_response_reads_metadata():
    entry = AuditLogEntry(
        id=1,
        patient_id=1,
        actor_id=2,
        action="permission_denied",
        reason="no_relationship",
        metadata_={"capability": "can_view"},
        created_at=utcnow(),
    )

    response = AuditLogEntryResponse.model_validate(entry)

    assert response.metadata == {"capability": "can_view"}
