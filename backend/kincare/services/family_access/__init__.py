"""Family access control: invitations, permissions and the membership index."""

from kincare.services.family_access.audit import (
    AuditLogger,
    AuditLogStore,
    InMemoryAuditLogStore,
    SQLAuditLogStore,
)
from kincare.services.family_access.errors import (
    AlreadyAccepted,
    ConcurrentModification,
    DuplicateRelationship,
    FamilyAccessError,
    IdentityNotFound,
    IndexDrift,
    InvalidTransition,
    NotAuthorized,
    PatientSelectionRequired,
    RecordNotFound,
    SelfInvitation,
    TokenExpired,
    TokenNotFound,
    ValidationError,
)
from kincare.services.family_access.identities import (
    IdentityStore,
    InMemoryIdentityStore,
    SQLIdentityStore,
)
from kincare.services.family_access.index_sync import IndexReport, IndexSynchronizer
from kincare.services.family_access.lifecycle import (
    FamilyAccessManager,
    InvitationPreview,
    IssuedInvitation,
    SweepResult,
)
from kincare.services.family_access.maintenance import (
    ConsistencyIssue,
    ConsistencyReport,
    MaintenanceService,
    RepairResult,
)
from kincare.services.family_access.notifications import (
    EmailNotificationSender,
    NotificationSender,
    StatusEvent,
)
from kincare.services.family_access.resolver import (
    Decision,
    DecisionReason,
    PermissionResolver,
    category_is,
)
from kincare.services.family_access.selection import PatientSelection, PatientSelector
from kincare.services.family_access.store import (
    AccessRecordStore,
    InMemoryAccessRecordStore,
    SQLAccessRecordStore,
)

__all__ = [
    # Errors
    "FamilyAccessError",
    "NotAuthorized",
    "DuplicateRelationship",
    "SelfInvitation",
    "TokenNotFound",
    "TokenExpired",
    "AlreadyAccepted",
    "RecordNotFound",
    "IdentityNotFound",
    "IndexDrift",
    "ConcurrentModification",
    "InvalidTransition",
    "ValidationError",
    "PatientSelectionRequired",
    # Stores
    "AccessRecordStore",
    "SQLAccessRecordStore",
    "InMemoryAccessRecordStore",
    "IdentityStore",
    "SQLIdentityStore",
    "InMemoryIdentityStore",
    "AuditLogStore",
    "SQLAuditLogStore",
    "InMemoryAuditLogStore",
    "AuditLogger",
    # Components
    "IndexSynchronizer",
    "IndexReport",
    "PermissionResolver",
    "Decision",
    "DecisionReason",
    "category_is",
    "PatientSelector",
    "PatientSelection",
    "FamilyAccessManager",
    "IssuedInvitation",
    "InvitationPreview",
    "SweepResult",
    "MaintenanceService",
    "ConsistencyIssue",
    "ConsistencyReport",
    "RepairResult",
    "NotificationSender",
    "EmailNotificationSender",
    "StatusEvent",
]
