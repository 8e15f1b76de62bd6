"""Permission presets and validation of permission/access-level combinations."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from kincare.models import AccessLevel, Capability
from kincare.services.family_access.errors import NotAuthorized, ValidationError

EVENT_CATEGORIES: frozenset[str] = frozenset(
    {
        "appointment",
        "medication_reminder",
        "lab_test",
        "imaging",
        "procedure",
        "surgery",
        "therapy_session",
        "vaccination",
        "follow_up",
        "consultation",
        "emergency_visit",
        "hospital_admission",
        "discharge",
        "medication_refill",
        "insurance_deadline",
        "health_screening",
        "wellness_check",
        "specialist_referral",
        "test_results_review",
        "care_plan_review",
    }
)

_VIEW_AND_FOLLOW = {
    Capability.can_view,
    Capability.can_claim_responsibility,
    Capability.can_receive_notifications,
}

PRESETS: dict[AccessLevel, frozenset[Capability]] = {
    AccessLevel.full: frozenset(Capability),
    AccessLevel.limited: frozenset(_VIEW_AND_FOLLOW),
    AccessLevel.emergency_only: frozenset(
        {Capability.can_view, Capability.can_receive_notifications}
    ),
}


def preset_flags(level: AccessLevel | str) -> dict[str, bool]:
    granted = PRESETS[AccessLevel(level)]
    return {capability.value: capability in granted for capability in Capability}


def merge_flags(base: Mapping[str, bool], overrides: Mapping[str, bool | None]) -> dict[str, bool]:
    """Apply explicitly supplied flags on top of ``base``; ``None`` means untouched."""
    merged = {capability.value: bool(base.get(capability.value, False)) for capability in Capability}
    for key, value in overrides.items():
        if value is None:
            continue
        merged[Capability(key).value] = bool(value)
    return merged


def validate_event_types(level: AccessLevel | str, event_types: Iterable[str] | None) -> list[str]:
    """Normalize an allow-list; it is only meaningful for limited access."""
    cleaned: list[str] = []
    for value in event_types or ():
        category = value.strip().lower()
        if category and category not in cleaned:
            cleaned.append(category)
    if not cleaned:
        return []
    if AccessLevel(level) != AccessLevel.limited:
        raise ValidationError(
            "event_types_allowed can only be set for limited access",
            access_level=str(level),
        )
    unknown = sorted(set(cleaned) - EVENT_CATEGORIES)
    if unknown:
        raise ValidationError("Unknown event categories", unknown=unknown)
    return cleaned


def validate_assignable_level(level: AccessLevel | str) -> AccessLevel:
    try:
        resolved = AccessLevel(level)
    except ValueError as exc:
        raise ValidationError("Unknown access level", access_level=str(level)) from exc
    if resolved == AccessLevel.emergency_only:
        raise ValidationError(
            "emergency_only access is created through an emergency grant",
            access_level=resolved.value,
        )
    return resolved


def ensure_within_delegation(
    requested: Mapping[str, bool],
    held: Mapping[str, bool],
) -> None:
    """A delegated manager cannot hand out capabilities they do not hold."""
    escalated = sorted(
        key for key, value in requested.items() if value and not held.get(key, False)
    )
    if escalated:
        raise NotAuthorized(
            "Cannot grant capabilities you do not hold",
            capabilities=escalated,
        )


def mask_flags(requested: Mapping[str, bool], held: Mapping[str, bool]) -> dict[str, bool]:
    """Drop every requested capability the granting manager does not hold."""
    return {key: bool(value and held.get(key, False)) for key, value in requested.items()}


def describe_flags(flags: Mapping[str, bool]) -> list[str]:
    """Human-readable capability names for notification emails."""
    return [key.removeprefix("can_").replace("_", " ") for key, value in flags.items() if value]
