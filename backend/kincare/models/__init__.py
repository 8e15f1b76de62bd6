from kincare.models.access_record import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    AccessLevel,
    AccessRecord,
    AccessStatus,
    Capability,
    new_access_id,
)
from kincare.models.audit_log import AuditAction, AuditLogEntry
from kincare.models.base import Base, TimestampMixin, clone_model, model_to_dict, utcnow
from kincare.models.identity import Identity, IdentityRole

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "clone_model",
    "model_to_dict",
    "utcnow",
    # Identities
    "Identity",
    "IdentityRole",
    # Access records
    "AccessRecord",
    "AccessStatus",
    "AccessLevel",
    "Capability",
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
    "new_access_id",
    # Audit
    "AuditLogEntry",
    "AuditAction",
]
