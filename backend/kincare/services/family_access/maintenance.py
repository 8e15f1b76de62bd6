"""Consistency audit and repair between access records and the membership index."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from kincare.models import AccessRecord, AccessStatus, AuditAction
from kincare.services.family_access.audit import AuditLogger
from kincare.services.family_access.errors import ConcurrentModification, IdentityNotFound, IndexDrift
from kincare.services.family_access.identities import IdentityStore, normalize_email
from kincare.services.family_access.index_sync import IndexReport, IndexSynchronizer
from kincare.services.family_access.store import AccessRecordStore

logger = logging.getLogger("kincare.family_access.maintenance")


@dataclass
class ConsistencyIssue:
    kind: str
    identity_id: Optional[int] = None
    access_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConsistencyReport:
    checked_identities: int = 0
    checked_records: int = 0
    issues: list[ConsistencyIssue] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.issues


@dataclass
class RepairResult:
    identity_id: int
    relinked_access_ids: list[str] = field(default_factory=list)
    reports: list[IndexReport] = field(default_factory=list)


def record_issues(record: AccessRecord) -> list[ConsistencyIssue]:
    issues: list[ConsistencyIssue] = []
    if record.family_member_id is not None and record.family_member_id == record.patient_id:
        issues.append(ConsistencyIssue("self_reference", access_id=record.id))
    if record.status == AccessStatus.active and record.family_member_id is None:
        issues.append(
            ConsistencyIssue(
                "active_without_member",
                access_id=record.id,
                details={"email": record.family_member_email},
            )
        )
    if record.status == AccessStatus.pending and record.family_member_id is not None:
        issues.append(ConsistencyIssue("pending_with_member", access_id=record.id))
    has_token = record.invitation_token_hash is not None
    if has_token != (record.status == AccessStatus.pending):
        issues.append(
            ConsistencyIssue(
                "token_state",
                access_id=record.id,
                details={"status": record.status, "has_token": has_token},
            )
        )
    return issues


class MaintenanceService:
    """Read-only consistency checks plus explicit repair operations."""

    def __init__(
        self,
        records: AccessRecordStore,
        identities: IdentityStore,
        index: IndexSynchronizer,
        audit: AuditLogger,
    ):
        self.records = records
        self.identities = identities
        self.index = index
        self.audit = audit

    async def audit_consistency(self, identity_id: Optional[int] = None) -> ConsistencyReport:
        identity_ids = [identity_id] if identity_id is not None else await self.identities.list_ids()
        report = ConsistencyReport()
        for current_id in identity_ids:
            report.checked_identities += 1
            try:
                await self.index.verify(current_id)
            except IndexDrift as exc:
                report.issues.append(
                    ConsistencyIssue("index_drift", identity_id=current_id, details=exc.details)
                )
            except IdentityNotFound:
                report.issues.append(ConsistencyIssue("identity_missing", identity_id=current_id))
                continue
            for record in await self.records.find_by_patient(current_id):
                report.checked_records += 1
                report.issues.extend(record_issues(record))

        if report.issues:
            logger.warning(
                "Consistency audit found %d issue(s) across %d identities",
                len(report.issues),
                report.checked_identities,
            )
        return report

    async def rebuild_index(self, identity_id: int, actor_id: Optional[int] = None) -> IndexReport:
        report = await self.index.rebuild_index(identity_id)
        await self.records.commit()
        if report.repaired:
            await self.audit.record(
                AuditAction.index_rebuilt,
                patient_id=identity_id,
                actor_id=actor_id,
                diff=report.diff(),
            )
        return report

    async def repair(self, identity_id: int, actor_id: Optional[int] = None) -> RepairResult:
        """Relink active records whose member id went missing, then rebuild indexes."""
        identity = await self.identities.get(identity_id)
        if identity is None:
            raise IdentityNotFound(identity_id=identity_id)

        result = RepairResult(identity_id=identity_id)
        relinked: list[tuple[str, int]] = []
        for record in await self.records.find_unlinked_active(normalize_email(identity.email)):
            if record.patient_id == identity_id:
                continue
            already_linked = [
                other
                for other in await self.records.find_for_pair(record.patient_id, identity_id)
                if other.status == AccessStatus.active and not other.emergency_access
            ]
            if already_linked:
                logger.warning(
                    "Unlinked record %s duplicates %s; left for manual review",
                    record.id,
                    already_linked[0].id,
                )
                continue
            try:
                updated = await self.records.update(
                    record.id,
                    {
                        "family_member_id": identity_id,
                        "repair_reason": "relinked by matching invitation email",
                    },
                    expected_status=AccessStatus.active.value,
                )
            except ConcurrentModification:
                logger.info("Record %s changed during repair; skipped", record.id)
                continue
            result.relinked_access_ids.append(updated.id)
            relinked.append((updated.id, updated.patient_id))
            logger.warning("Relinked access %s to identity %s by email", updated.id, identity_id)

        result.reports.append(await self.index.rebuild_index(identity_id))
        for patient_id in sorted({patient_id for _, patient_id in relinked}):
            result.reports.append(await self.index.rebuild_index(patient_id))
        await self.records.commit()

        for access_id, patient_id in relinked:
            await self.audit.record(
                AuditAction.relationship_repaired,
                patient_id=patient_id,
                actor_id=actor_id,
                access_id=access_id,
                member_id=identity_id,
            )
        return result
