"""Family access API: invitations, relationships, capability checks and emergency access."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from kincare.api.deps import (
    CurrentIdentity,
    Manager,
    get_maintenance_service,
    get_patient_selector,
)
from kincare.api.gate import AccessContext, require_any
from kincare.models import Capability
from kincare.schemas import (
    AccessRecordResponse,
    ActivePatientResponse,
    AuditLogEntryResponse,
    CapabilityCheckResponse,
    EmergencyAccessGrant,
    IndexReportResponse,
    InvitationCreate,
    InvitationCreatedResponse,
    InvitationDecline,
    InvitationPreviewResponse,
    InvitationTokenRequest,
    PermissionUpdate,
    StatusChange,
)
from kincare.services.family_access import (
    IndexReport,
    MaintenanceService,
    PatientSelector,
    category_is,
)
from kincare.services.family_access.resolver import as_capability

router = APIRouter(prefix="/family-access", tags=["Family Access"])


def _records(records) -> list[AccessRecordResponse]:
    return [AccessRecordResponse.from_record(record) for record in records]


def index_report_response(report: IndexReport) -> IndexReportResponse:
    current = report.expected if report.repaired or not report.drift else report.stored
    return IndexReportResponse(
        identity_id=report.identity_id,
        drift=report.drift,
        repaired=report.repaired,
        diff=report.diff(),
        linked_patient_ids=current.get("linked_patient_ids", []),
        family_member_ids=current.get("family_member_ids", []),
        primary_patient_id=current.get("primary_patient_id"),
    )


# ----- Invitations -----


@router.post(
    "/invitations",
    response_model=InvitationCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_invitation(
    body: InvitationCreate,
    identity: CurrentIdentity,
    manager: Manager,
):
    """Invite a family member. Allowed for the patient or a holder of can_manage_family."""
    issued = await manager.invite(
        patient_id=body.patient_id or identity.id,
        actor_id=identity.id,
        email=body.email,
        name=body.name,
        permissions=body.permissions.model_dump() if body.permissions else None,
        access_level=body.access_level,
        event_types_allowed=body.event_types_allowed,
    )
    return InvitationCreatedResponse(
        record=AccessRecordResponse.from_record(issued.record),
        invitation_token=issued.token,
        invitation_url=issued.url,
    )


@router.get("/invitations", response_model=list[AccessRecordResponse])
async def list_my_invitations(identity: CurrentIdentity, manager: Manager):
    """Pending invitations addressed to the caller's email."""
    return _records(await manager.pending_for(identity))


@router.get("/invitations/{token}", response_model=InvitationPreviewResponse)
async def preview_invitation(token: str, manager: Manager):
    """Public preview of an invitation before signing in or accepting."""
    preview = await manager.preview(token)
    record = preview.record
    return InvitationPreviewResponse(
        access_id=record.id,
        patient_name=preview.patient_name,
        patient_email=preview.patient_email,
        family_member_email=record.family_member_email,
        family_member_name=record.family_member_name,
        access_level=record.access_level,
        permissions=record.permission_flags(),
        event_types_allowed=list(record.event_types_allowed or []),
        status=record.status,
        invitation_expires_at=record.invitation_expires_at,
    )


@router.post("/invitations/accept", response_model=AccessRecordResponse)
async def accept_invitation(
    body: InvitationTokenRequest,
    identity: CurrentIdentity,
    manager: Manager,
):
    record = await manager.accept(body.token, identity.id)
    return AccessRecordResponse.from_record(record)


@router.post("/invitations/decline", response_model=AccessRecordResponse)
async def decline_invitation(
    body: InvitationDecline,
    identity: CurrentIdentity,
    manager: Manager,
):
    record = await manager.decline(body.token, identity.id, body.reason)
    return AccessRecordResponse.from_record(record)


# ----- Relationships -----


@router.get("/me/patients", response_model=list[AccessRecordResponse])
async def list_my_patients(identity: CurrentIdentity, manager: Manager):
    """Active relationships where the caller is the family member."""
    return _records(await manager.list_for_member(identity.id))


@router.get("/me/active-patient", response_model=ActivePatientResponse)
async def get_active_patient(
    identity: CurrentIdentity,
    selector: Annotated[PatientSelector, Depends(get_patient_selector)],
    patient_id: int | None = Query(None, description="Explicit selection"),
):
    selection = await selector.select(identity, patient_id)
    return ActivePatientResponse(
        patient_id=selection.patient_id,
        source=selection.source,
        candidates=selection.candidates,
    )


@router.post("/me/rebuild-index", response_model=IndexReportResponse)
async def rebuild_my_index(
    identity: CurrentIdentity,
    maintenance: Annotated[MaintenanceService, Depends(get_maintenance_service)],
):
    report = await maintenance.rebuild_index(identity.id, actor_id=identity.id)
    return index_report_response(report)


@router.get("/patients/{patient_id}/members", response_model=list[AccessRecordResponse])
async def list_patient_members(patient_id: int, identity: CurrentIdentity, manager: Manager):
    """All relationships of a patient, pending first."""
    return _records(await manager.list_for_patient(patient_id, identity.id))


@router.get("/patients/{patient_id}/audit", response_model=list[AuditLogEntryResponse])
async def list_patient_audit(
    patient_id: int,
    identity: CurrentIdentity,
    manager: Manager,
    limit: int = Query(50, ge=1, le=500),
):
    entries = await manager.audit_trail(patient_id, identity.id, limit)
    return [AuditLogEntryResponse.model_validate(entry) for entry in entries]


@router.get("/patients/{patient_id}/check/{capability}", response_model=CapabilityCheckResponse)
async def check_capability(
    patient_id: int,
    capability: str,
    identity: CurrentIdentity,
    manager: Manager,
    category: str | None = Query(None, description="Event category of the data in question"),
):
    """Answer "may I do X on patient Y"; a denial is a normal response, not an error."""
    decision = await manager.resolver.resolve(
        identity.id,
        patient_id,
        as_capability(capability),
        category_is(category) if category else None,
    )
    return CapabilityCheckResponse(
        patient_id=patient_id,
        capability=decision.capability.value,
        allowed=decision.allow,
        reason=decision.reason.value,
        access_id=decision.record.id if decision.record is not None else None,
    )


@router.get("/patients/{patient_id}/access", response_model=CapabilityCheckResponse)
async def get_my_access(
    context: Annotated[AccessContext, Depends(require_any(Capability.can_view))],
):
    """Effective access of the caller on a patient they can view."""
    record = context.record
    return CapabilityCheckResponse(
        patient_id=context.patient_id,
        capability=context.decision.capability.value,
        allowed=True,
        reason=context.decision.reason.value,
        access_id=record.id if record is not None else None,
    )


@router.post(
    "/patients/{patient_id}/emergency-access",
    response_model=AccessRecordResponse,
    status_code=status.HTTP_201_CREATED,
)
async def grant_emergency_access(
    patient_id: int,
    body: EmergencyAccessGrant,
    identity: CurrentIdentity,
    manager: Manager,
):
    record = await manager.grant_emergency_access(
        patient_id=patient_id,
        actor_id=identity.id,
        member_id=body.member_id,
        duration_hours=body.duration_hours,
    )
    return AccessRecordResponse.from_record(record)


@router.patch("/{access_id}", response_model=AccessRecordResponse)
async def update_permissions(
    access_id: str,
    body: PermissionUpdate,
    identity: CurrentIdentity,
    manager: Manager,
):
    record = await manager.update_permissions(
        access_id,
        identity.id,
        access_level=body.access_level,
        permissions=body.permissions.model_dump(exclude_none=True) if body.permissions else None,
        event_types_allowed=body.event_types_allowed,
    )
    return AccessRecordResponse.from_record(record)


@router.post("/{access_id}/resend", response_model=InvitationCreatedResponse)
async def resend_invitation(access_id: str, identity: CurrentIdentity, manager: Manager):
    issued = await manager.resend(access_id, identity.id)
    return InvitationCreatedResponse(
        record=AccessRecordResponse.from_record(issued.record),
        invitation_token=issued.token,
        invitation_url=issued.url,
    )


@router.post("/{access_id}/suspend", response_model=AccessRecordResponse)
async def suspend_access(
    access_id: str,
    identity: CurrentIdentity,
    manager: Manager,
    body: StatusChange | None = None,
):
    record = await manager.suspend(access_id, identity.id, body.reason if body else None)
    return AccessRecordResponse.from_record(record)


@router.post("/{access_id}/reactivate", response_model=AccessRecordResponse)
async def reactivate_access(access_id: str, identity: CurrentIdentity, manager: Manager):
    record = await manager.reactivate(access_id, identity.id)
    return AccessRecordResponse.from_record(record)


@router.post("/{access_id}/revoke", response_model=AccessRecordResponse)
async def revoke_access(
    access_id: str,
    identity: CurrentIdentity,
    manager: Manager,
    body: StatusChange | None = None,
):
    """Revoke a relationship; the family member may also revoke their own access."""
    record = await manager.revoke(access_id, identity.id, body.reason if body else None)
    return AccessRecordResponse.from_record(record)
