"""Permission resolution: who can do what on which patient's data."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Optional

from kincare.models import AccessLevel, AccessRecord, AccessStatus, AuditAction, Capability, utcnow
from kincare.services.family_access.audit import AuditLogger
from kincare.services.family_access.errors import NotAuthorized, ValidationError
from kincare.services.family_access.store import AccessRecordStore

logger = logging.getLogger("kincare.family_access")

CategoryPredicate = Callable[[Sequence[str]], bool]


class DecisionReason(StrEnum):
    self_access = "self"
    granted = "granted"
    emergency_override = "emergency_override"
    no_relationship = "no_relationship"
    relationship_suspended = "relationship_suspended"
    capability_not_granted = "capability_not_granted"
    category_not_allowed = "category_not_allowed"


@dataclass(frozen=True)
class Decision:
    allow: bool
    reason: DecisionReason
    capability: Capability
    record: Optional[AccessRecord] = None


def category_is(category: str) -> CategoryPredicate:
    """Predicate for data belonging to a single event category."""
    wanted = category.strip().lower()
    return lambda allowed: wanted in allowed


def as_capability(value: Capability | str) -> Capability:
    try:
        return Capability(value)
    except ValueError as exc:
        raise ValidationError("Unknown capability", capability=str(value)) from exc


class PermissionResolver:
    """Stateless decision function over the record store.

    Denials and emergency-override allows are audited; ordinary allows
    are not.
    """

    def __init__(
        self,
        records: AccessRecordStore,
        audit: AuditLogger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.records = records
        self.audit = audit
        self.clock = clock

    async def resolve(
        self,
        requester_id: int,
        patient_id: int,
        capability: Capability | str,
        predicate: Optional[CategoryPredicate] = None,
        audit_denial: bool = True,
    ) -> Decision:
        capability = as_capability(capability)
        if requester_id == patient_id:
            return Decision(True, DecisionReason.self_access, capability)

        now = self.clock()
        pair = await self.records.find_for_pair(patient_id, requester_id)
        regular = [record for record in pair if not record.emergency_access]
        live = next((record for record in regular if record.is_live(now)), None)
        emergency = next(
            (record for record in pair if record.emergency_access and record.is_live(now)),
            None,
        )

        decision: Optional[Decision] = None
        if live is not None:
            decision = self._check_record(live, capability, predicate)
            if decision.allow:
                return decision

        if emergency is not None and capability == Capability.can_view:
            logger.warning(
                "Emergency override: identity %s viewing patient %s via %s",
                requester_id,
                patient_id,
                emergency.id,
            )
            await self.audit.record(
                AuditAction.emergency_override_used,
                patient_id=patient_id,
                actor_id=requester_id,
                access_id=emergency.id,
                reason=DecisionReason.emergency_override.value,
                capability=capability.value,
            )
            return Decision(True, DecisionReason.emergency_override, capability, emergency)

        if decision is None:
            suspended = any(record.status == AccessStatus.suspended for record in regular)
            decision = Decision(
                False,
                DecisionReason.relationship_suspended if suspended else DecisionReason.no_relationship,
                capability,
            )

        if audit_denial:
            await self.record_denial(requester_id, patient_id, decision)
        return decision

    async def record_denial(self, requester_id: int, patient_id: int, decision: Decision) -> None:
        logger.info(
            "Denied %s for identity %s on patient %s (%s)",
            decision.capability.value,
            requester_id,
            patient_id,
            decision.reason.value,
        )
        await self.audit.record(
            AuditAction.permission_denied,
            patient_id=patient_id,
            actor_id=requester_id,
            access_id=decision.record.id if decision.record is not None else None,
            reason=decision.reason.value,
            capability=decision.capability.value,
        )

    @staticmethod
    def _check_record(
        record: AccessRecord,
        capability: Capability,
        predicate: Optional[CategoryPredicate],
    ) -> Decision:
        if not record.has_capability(capability):
            return Decision(False, DecisionReason.capability_not_granted, capability, record)
        allowed = list(record.event_types_allowed or [])
        if (
            record.access_level == AccessLevel.limited
            and allowed
            and predicate is not None
            and not predicate(allowed)
        ):
            return Decision(False, DecisionReason.category_not_allowed, capability, record)
        return Decision(True, DecisionReason.granted, capability, record)

    async def require(
        self,
        requester_id: int,
        patient_id: int,
        capability: Capability | str,
        predicate: Optional[CategoryPredicate] = None,
    ) -> Decision:
        """Resolve and raise NotAuthorized on denial."""
        decision = await self.resolve(requester_id, patient_id, capability, predicate)
        if not decision.allow:
            raise NotAuthorized(
                reason=decision.reason.value,
                capability=decision.capability.value,
                patient_id=patient_id,
            )
        return decision
