"""Membership index maintenance.

The index (``linked_patient_ids``, ``family_member_ids`` and
``primary_patient_id`` on identities) is a projection of active access
records. Incremental updates follow each transition; ``rebuild_index``
recomputes it from the record store and is the repair path whenever the
two disagree.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from kincare.models import AccessRecord, Identity, utcnow
from kincare.services.family_access.errors import IdentityNotFound, IndexDrift
from kincare.services.family_access.identities import IdentityStore
from kincare.services.family_access.store import AccessRecordStore

logger = logging.getLogger("kincare.family_access.index")


def pick_primary(linked: list[int], current: Optional[int]) -> Optional[int]:
    if not linked:
        return None
    if len(linked) == 1:
        return linked[0]
    return current if current in linked else None


def _sorted_ids(values: Iterable[int]) -> list[int]:
    return sorted(set(values))


@dataclass
class IndexReport:
    """Stored versus expected index values for one identity."""

    identity_id: int
    stored: dict[str, Any] = field(default_factory=dict)
    expected: dict[str, Any] = field(default_factory=dict)
    repaired: bool = False

    @property
    def drift(self) -> bool:
        return bool(self.diff())

    def diff(self) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        for key in ("linked_patient_ids", "family_member_ids"):
            stored = set(self.stored.get(key) or [])
            expected = set(self.expected.get(key) or [])
            if stored != expected:
                changes[key] = {
                    "missing": sorted(expected - stored),
                    "extra": sorted(stored - expected),
                }
        if self.stored.get("primary_patient_id") != self.expected.get("primary_patient_id"):
            changes["primary_patient_id"] = {
                "stored": self.stored.get("primary_patient_id"),
                "expected": self.expected.get("primary_patient_id"),
            }
        return changes


def _index_of(identity: Identity) -> dict[str, Any]:
    return {
        "linked_patient_ids": list(identity.linked_patient_ids or []),
        "family_member_ids": list(identity.family_member_ids or []),
        "primary_patient_id": identity.primary_patient_id,
    }


class IndexSynchronizer:
    """Keeps identity back-references in step with active access records."""

    def __init__(
        self,
        records: AccessRecordStore,
        identities: IdentityStore,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.records = records
        self.identities = identities
        self.clock = clock

    async def on_activated(self, record: AccessRecord) -> bool:
        """Add reciprocal references. Returns False if the index could not be written."""
        if record.family_member_id is None:
            logger.warning("Active record %s has no family member id; index not updated", record.id)
            return False
        try:
            await self._link(record.family_member_id, record.patient_id)
            return True
        except Exception:
            logger.exception(
                "Index update failed after activation of %s; rebuild_index will repair it",
                record.id,
            )
            return False

    async def on_deactivated(self, record: AccessRecord) -> bool:
        """Remove reciprocal references unless another live record still links the pair."""
        if record.family_member_id is None:
            return True
        try:
            now = self.clock()
            remaining = [
                other
                for other in await self.records.find_for_pair(
                    record.patient_id, record.family_member_id
                )
                if other.id != record.id and other.is_live(now)
            ]
            if remaining:
                logger.info(
                    "Pair %s->%s still linked by %s; index unchanged",
                    record.patient_id,
                    record.family_member_id,
                    remaining[0].id,
                )
                return True
            await self._unlink(record.family_member_id, record.patient_id)
            return True
        except Exception:
            logger.exception(
                "Index update failed after deactivation of %s; rebuild_index will repair it",
                record.id,
            )
            return False

    async def _link(self, member_id: int, patient_id: int) -> None:
        member = await self.identities.lock(member_id)
        if member is not None:
            linked = _sorted_ids([*(member.linked_patient_ids or []), patient_id])
            await self._write_if_changed(
                member,
                {
                    "linked_patient_ids": linked,
                    "primary_patient_id": pick_primary(linked, member.primary_patient_id),
                },
            )
        patient = await self.identities.lock(patient_id)
        if patient is not None:
            members = _sorted_ids([*(patient.family_member_ids or []), member_id])
            await self._write_if_changed(patient, {"family_member_ids": members})

    async def _unlink(self, member_id: int, patient_id: int) -> None:
        member = await self.identities.lock(member_id)
        if member is not None:
            linked = [pid for pid in member.linked_patient_ids or [] if pid != patient_id]
            await self._write_if_changed(
                member,
                {
                    "linked_patient_ids": linked,
                    "primary_patient_id": pick_primary(linked, member.primary_patient_id),
                },
            )
        patient = await self.identities.lock(patient_id)
        if patient is not None:
            members = [mid for mid in patient.family_member_ids or [] if mid != member_id]
            await self._write_if_changed(patient, {"family_member_ids": members})

    async def _write_if_changed(self, identity: Identity, patch: dict[str, Any]) -> None:
        current = _index_of(identity)
        if any(current[key] != value for key, value in patch.items()):
            await self.identities.write_index(identity.id, patch)

    async def expected_index(self, identity: Identity) -> dict[str, Any]:
        """Index values derived from the record store alone."""
        now = self.clock()
        as_member = await self.records.find_active_by_member(identity.id, now)
        as_patient = await self.records.find_active_by_patient(identity.id, now)
        linked = _sorted_ids(record.patient_id for record in as_member)
        members = _sorted_ids(
            record.family_member_id
            for record in as_patient
            if record.family_member_id is not None
        )
        return {
            "linked_patient_ids": linked,
            "family_member_ids": members,
            "primary_patient_id": pick_primary(linked, identity.primary_patient_id),
        }

    async def _report(self, identity_id: int, *, lock: bool) -> tuple[Identity, IndexReport]:
        loader = self.identities.lock if lock else self.identities.get
        identity = await loader(identity_id)
        if identity is None:
            raise IdentityNotFound(identity_id=identity_id)
        report = IndexReport(
            identity_id=identity_id,
            stored=_index_of(identity),
            expected=await self.expected_index(identity),
        )
        return identity, report

    async def verify(self, identity_id: int) -> IndexReport:
        """Read-only check; raises IndexDrift when the index disagrees with the store."""
        _, report = await self._report(identity_id, lock=False)
        if report.drift:
            raise IndexDrift(identity_id=identity_id, diff=report.diff())
        return report

    async def rebuild_index(self, identity_id: int) -> IndexReport:
        """Recompute the identity's index from active records and persist it if it drifted."""
        identity, report = await self._report(identity_id, lock=True)
        if report.drift:
            logger.warning(
                "Index drift for identity %s: %s",
                identity_id,
                report.diff(),
            )
            await self.identities.write_index(identity.id, report.expected)
            report.repaired = True
        return report
