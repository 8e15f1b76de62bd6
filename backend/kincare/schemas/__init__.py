from kincare.schemas.access import (
    AccessRecordResponse,
    ActivePatientResponse,
    AuditLogEntryResponse,
    CapabilityCheckResponse,
    ConsistencyIssueResponse,
    ConsistencyReportResponse,
    EmergencyAccessGrant,
    IndexReportResponse,
    InvitationCreate,
    InvitationCreatedResponse,
    InvitationDecline,
    InvitationPreviewResponse,
    InvitationTokenRequest,
    PermissionOverrides,
    Permissions,
    PermissionUpdate,
    RepairResponse,
    StatusChange,
    SweepResponse,
)

__all__ = [
    "Permissions",
    "PermissionOverrides",
    "InvitationCreate",
    "InvitationTokenRequest",
    "InvitationDecline",
    "PermissionUpdate",
    "StatusChange",
    "EmergencyAccessGrant",
    "AccessRecordResponse",
    "InvitationCreatedResponse",
    "InvitationPreviewResponse",
    "CapabilityCheckResponse",
    "ActivePatientResponse",
    "AuditLogEntryResponse",
    "IndexReportResponse",
    "SweepResponse",
    "ConsistencyIssueResponse",
    "ConsistencyReportResponse",
    "RepairResponse",
]
