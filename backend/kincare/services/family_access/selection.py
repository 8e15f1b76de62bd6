"""Choosing the target patient when a request does not name one."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from kincare.models import Capability, Identity, utcnow
from kincare.services.family_access.errors import NotAuthorized, PatientSelectionRequired
from kincare.services.family_access.index_sync import IndexSynchronizer
from kincare.services.family_access.resolver import DecisionReason, PermissionResolver
from kincare.services.family_access.store import AccessRecordStore

logger = logging.getLogger("kincare.family_access")


@dataclass
class PatientSelection:
    patient_id: int
    source: str
    candidates: list[int] = field(default_factory=list)


class PatientSelector:
    """Resolves the implicit target patient; the resolver itself never guesses."""

    def __init__(
        self,
        records: AccessRecordStore,
        index: IndexSynchronizer,
        resolver: PermissionResolver,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.records = records
        self.index = index
        self.resolver = resolver
        self.clock = clock

    async def select(
        self,
        identity: Identity,
        requested_patient_id: Optional[int] = None,
    ) -> PatientSelection:
        if requested_patient_id is not None:
            if requested_patient_id != identity.id:
                await self.resolver.require(identity.id, requested_patient_id, Capability.can_view)
            return PatientSelection(requested_patient_id, "requested", [requested_patient_id])

        if identity.is_patient:
            return PatientSelection(identity.id, "self", [identity.id])

        linked = list(identity.linked_patient_ids or [])
        if len(linked) > 1:
            raise PatientSelectionRequired(candidates=linked)
        if len(linked) == 1 and await self._is_linked(identity.id, linked[0]):
            return PatientSelection(linked[0], "index", linked)

        # Index empty or stale: go to the record store and heal the index.
        now = self.clock()
        active = await self.records.find_active_by_member(identity.id, now)
        candidates = sorted({record.patient_id for record in active})
        if candidates != linked:
            logger.info(
                "Index for identity %s is stale (index=%s store=%s); rebuilding",
                identity.id,
                linked,
                candidates,
            )
            try:
                await self.index.rebuild_index(identity.id)
            except Exception:
                logger.exception("Lazy index rebuild failed for identity %s", identity.id)
        if not candidates:
            raise NotAuthorized(
                "No patients are linked to this account",
                reason=DecisionReason.no_relationship.value,
            )
        if len(candidates) > 1:
            raise PatientSelectionRequired(candidates=candidates)
        return PatientSelection(candidates[0], "store", candidates)

    async def _is_linked(self, member_id: int, patient_id: int) -> bool:
        now = self.clock()
        pair = await self.records.find_for_pair(patient_id, member_id)
        return any(record.is_live(now) for record in pair)
