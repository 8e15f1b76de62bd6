"""Error kinds raised by the family access core.

Every error carries a stable ``code`` that clients can switch on and the
HTTP status the API layer maps it to.
"""

from __future__ import annotations

from typing import Any


class FamilyAccessError(Exception):
    code = "family_access_error"
    status_code = 400
    default_message = "Family access operation failed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotAuthorized(FamilyAccessError):
    code = "not_authorized"
    status_code = 403
    default_message = "You do not have permission to perform this action"


class DuplicateRelationship(FamilyAccessError):
    code = "duplicate_relationship"
    status_code = 409
    default_message = "A pending or active relationship already exists for this email"


class SelfInvitation(FamilyAccessError):
    code = "self_invitation"
    status_code = 400
    default_message = "You cannot invite yourself"


class TokenNotFound(FamilyAccessError):
    code = "token_not_found"
    status_code = 404
    default_message = "Invitation not found"


class TokenExpired(FamilyAccessError):
    code = "token_expired"
    status_code = 410
    default_message = "This invitation has expired"


class AlreadyAccepted(FamilyAccessError):
    code = "already_accepted"
    status_code = 409
    default_message = "This invitation has already been used"


class RecordNotFound(FamilyAccessError):
    code = "record_not_found"
    status_code = 404
    default_message = "Access record not found"


class IdentityNotFound(FamilyAccessError):
    code = "identity_not_found"
    status_code = 404
    default_message = "Identity not found"


class IndexDrift(FamilyAccessError):
    code = "index_drift"
    status_code = 409
    default_message = "Membership index is out of sync with access records"


class ConcurrentModification(FamilyAccessError):
    code = "concurrent_modification"
    status_code = 409
    default_message = "The record was modified concurrently; retry the operation"


class InvalidTransition(FamilyAccessError):
    code = "invalid_transition"
    status_code = 409
    default_message = "Operation not allowed in the record's current status"


class ValidationError(FamilyAccessError):
    code = "validation_error"
    status_code = 422
    default_message = "Invalid permission or access level combination"


class PatientSelectionRequired(ValidationError):
    code = "patient_selection_required"
    default_message = "Multiple patients are linked; select one explicitly"
