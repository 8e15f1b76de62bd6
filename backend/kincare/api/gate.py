"""Access gate: per-route capability checks that run before the handler."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Literal, Optional

from fastapi import Depends, Request

from kincare.api.deps import get_current_identity, get_family_access_manager
from kincare.models import AccessRecord, Capability, Identity
from kincare.services.family_access import (
    Decision,
    FamilyAccessManager,
    NotAuthorized,
    PatientSelector,
    ValidationError,
    category_is,
)
from kincare.services.family_access.resolver import as_capability


@dataclass
class AccessContext:
    """What a gated handler receives: the target patient and the decision that allowed it."""

    identity: Identity
    patient_id: int
    decision: Decision

    @property
    def record(self) -> Optional[AccessRecord]:
        return self.decision.record

    @property
    def is_self(self) -> bool:
        return self.identity.id == self.patient_id


class RequireCapability:
    """FastAPI dependency enforcing one or more capabilities on the target patient.

    The patient comes from the ``patient_id`` path or query parameter; if
    neither is present the caller's implicit patient is selected. With
    ``category_param`` set, that query parameter names the event category
    of the requested data and is checked against the record's allow-list.
    """

    def __init__(
        self,
        *capabilities: Capability | str,
        mode: Literal["all", "any"] = "all",
        category_param: Optional[str] = None,
    ):
        if not capabilities:
            raise ValueError("At least one capability is required")
        self.capabilities = [as_capability(capability) for capability in capabilities]
        self.mode = mode
        self.category_param = category_param

    async def _target_patient(
        self,
        request: Request,
        identity: Identity,
        manager: FamilyAccessManager,
    ) -> int:
        raw = request.path_params.get("patient_id") or request.query_params.get("patient_id")
        if raw is None:
            selector = PatientSelector(manager.records, manager.index, manager.resolver, manager.clock)
            return (await selector.select(identity)).patient_id
        try:
            return int(raw)
        except (TypeError, ValueError) as exc:
            raise ValidationError("patient_id must be an integer", patient_id=str(raw)) from exc

    async def __call__(
        self,
        request: Request,
        identity: Annotated[Identity, Depends(get_current_identity)],
        manager: Annotated[FamilyAccessManager, Depends(get_family_access_manager)],
    ) -> AccessContext:
        patient_id = await self._target_patient(request, identity, manager)
        category = request.query_params.get(self.category_param) if self.category_param else None
        predicate = category_is(category) if category else None

        allowed: Optional[Decision] = None
        denied: Optional[Decision] = None
        for capability in self.capabilities:
            decision = await manager.resolver.resolve(
                identity.id, patient_id, capability, predicate, audit_denial=self.mode == "all"
            )
            if decision.allow:
                allowed = allowed or decision
                if self.mode == "any":
                    break
            else:
                denied = decision
                if self.mode == "all":
                    break

        if denied is not None and (self.mode == "all" or allowed is None):
            if self.mode == "any":
                # only the last capability tried is recorded
                await manager.resolver.record_denial(identity.id, patient_id, denied)
            raise NotAuthorized(
                reason=denied.reason.value,
                capability=denied.capability.value,
                patient_id=patient_id,
            )

        request.state.patient_id = patient_id
        request.state.access_record = allowed.record
        if allowed.record is not None:
            await manager.touch_last_access(allowed.record.id)
        return AccessContext(identity=identity, patient_id=patient_id, decision=allowed)


def require_all(*capabilities: Capability | str, category_param: Optional[str] = None) -> RequireCapability:
    return RequireCapability(*capabilities, mode="all", category_param=category_param)


def require_any(*capabilities: Capability | str, category_param: Optional[str] = None) -> RequireCapability:
    return RequireCapability(*capabilities, mode="any", category_param=category_param)
