"""Access record store implementations.

The store is the only place access records are read from or written to.
Writers go through :meth:`update` with an expected status, which makes
every transition a compare-and-set on ``status``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, Optional, Protocol

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from kincare.models import (
    LIVE_STATUSES,
    AccessRecord,
    AccessStatus,
    clone_model,
    utcnow,
)
from kincare.services.family_access.errors import (
    ConcurrentModification,
    DuplicateRelationship,
    RecordNotFound,
)


class AccessRecordStore(Protocol):
    async def create(self, record: AccessRecord) -> AccessRecord:
        ...

    async def get_by_id(self, access_id: str) -> Optional[AccessRecord]:
        ...

    async def find_by_token_hash(self, token_hash: str) -> Optional[AccessRecord]:
        ...

    async def find_by_accepted_token_hash(self, token_hash: str) -> Optional[AccessRecord]:
        ...

    async def find_by_expired_token_hash(self, token_hash: str) -> Optional[AccessRecord]:
        ...

    async def find_active_by_patient(self, patient_id: int, now: datetime) -> list[AccessRecord]:
        ...

    async def find_active_by_member(self, member_id: int, now: datetime) -> list[AccessRecord]:
        ...

    async def find_for_pair(self, patient_id: int, member_id: int) -> list[AccessRecord]:
        ...

    async def find_by_patient_and_email(
        self,
        patient_id: int,
        email: str,
        statuses: Iterable[str] = LIVE_STATUSES,
    ) -> list[AccessRecord]:
        ...

    async def find_by_patient(self, patient_id: int) -> list[AccessRecord]:
        ...

    async def find_pending_by_email(self, email: str, now: datetime) -> list[AccessRecord]:
        ...

    async def find_unlinked_active(self, email: Optional[str] = None) -> list[AccessRecord]:
        ...

    async def find_stale(self, now: datetime) -> list[AccessRecord]:
        ...

    async def update(
        self,
        access_id: str,
        patch: Mapping[str, Any],
        expected_status: Optional[str] = None,
    ) -> AccessRecord:
        ...

    async def commit(self) -> None:
        ...


def _recency_key(record: AccessRecord) -> datetime:
    # invited_at is always present; last_access_at only after first use.
    return record.last_access_at or record.invited_at


class SQLAccessRecordStore:
    """Access record store backed by SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _recency_order():
        return func.coalesce(AccessRecord.last_access_at, AccessRecord.invited_at).desc()

    @staticmethod
    def _not_expired_emergency(now: datetime):
        return or_(
            AccessRecord.emergency_access.is_(False),
            AccessRecord.emergency_access_expires_at.is_(None),
            AccessRecord.emergency_access_expires_at > now,
        )

    async def _all(self, query) -> list[AccessRecord]:
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create(self, record: AccessRecord) -> AccessRecord:
        try:
            async with self.db.begin_nested():
                self.db.add(record)
        except IntegrityError as exc:
            raise DuplicateRelationship(
                patient_id=record.patient_id,
                email=record.family_member_email,
            ) from exc
        return record

    async def get_by_id(self, access_id: str) -> Optional[AccessRecord]:
        return await self.db.get(AccessRecord, access_id, populate_existing=True)

    async def find_by_token_hash(self, token_hash: str) -> Optional[AccessRecord]:
        result = await self.db.execute(
            select(AccessRecord).where(AccessRecord.invitation_token_hash == token_hash)
        )
        return result.scalar_one_or_none()

    async def find_by_accepted_token_hash(self, token_hash: str) -> Optional[AccessRecord]:
        result = await self.db.execute(
            select(AccessRecord)
            .where(AccessRecord.accepted_token_hash == token_hash)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_by_expired_token_hash(self, token_hash: str) -> Optional[AccessRecord]:
        result = await self.db.execute(
            select(AccessRecord)
            .where(AccessRecord.expired_token_hash == token_hash)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_active_by_patient(self, patient_id: int, now: datetime) -> list[AccessRecord]:
        return await self._all(
            select(AccessRecord)
            .where(
                AccessRecord.patient_id == patient_id,
                AccessRecord.status == AccessStatus.active.value,
                self._not_expired_emergency(now),
            )
            .order_by(self._recency_order(), AccessRecord.id)
        )

    async def find_active_by_member(self, member_id: int, now: datetime) -> list[AccessRecord]:
        return await self._all(
            select(AccessRecord)
            .where(
                AccessRecord.family_member_id == member_id,
                AccessRecord.status == AccessStatus.active.value,
                self._not_expired_emergency(now),
            )
            .order_by(self._recency_order(), AccessRecord.id)
        )

    async def find_for_pair(self, patient_id: int, member_id: int) -> list[AccessRecord]:
        return await self._all(
            select(AccessRecord)
            .where(
                AccessRecord.patient_id == patient_id,
                AccessRecord.family_member_id == member_id,
            )
            .order_by(AccessRecord.invited_at.desc(), AccessRecord.id)
        )

    async def find_by_patient_and_email(
        self,
        patient_id: int,
        email: str,
        statuses: Iterable[str] = LIVE_STATUSES,
    ) -> list[AccessRecord]:
        return await self._all(
            select(AccessRecord).where(
                AccessRecord.patient_id == patient_id,
                AccessRecord.family_member_email == email,
                AccessRecord.status.in_([str(status) for status in statuses]),
                AccessRecord.emergency_access.is_(False),
            )
        )

    async def find_by_patient(self, patient_id: int) -> list[AccessRecord]:
        return await self._all(
            select(AccessRecord)
            .where(AccessRecord.patient_id == patient_id)
            .order_by(AccessRecord.invited_at.desc(), AccessRecord.id)
        )

    async def find_pending_by_email(self, email: str, now: datetime) -> list[AccessRecord]:
        return await self._all(
            select(AccessRecord)
            .where(
                AccessRecord.family_member_email == email,
                AccessRecord.status == AccessStatus.pending.value,
                or_(
                    AccessRecord.invitation_expires_at.is_(None),
                    AccessRecord.invitation_expires_at > now,
                ),
            )
            .order_by(AccessRecord.invited_at.desc(), AccessRecord.id)
        )

    async def find_unlinked_active(self, email: Optional[str] = None) -> list[AccessRecord]:
        query = select(AccessRecord).where(
            AccessRecord.status == AccessStatus.active.value,
            AccessRecord.family_member_id.is_(None),
        )
        if email is not None:
            query = query.where(AccessRecord.family_member_email == email)
        return await self._all(query.order_by(AccessRecord.invited_at, AccessRecord.id))

    async def find_stale(self, now: datetime) -> list[AccessRecord]:
        return await self._all(
            select(AccessRecord)
            .where(
                or_(
                    (AccessRecord.status == AccessStatus.pending.value)
                    & (AccessRecord.invitation_expires_at <= now),
                    (AccessRecord.status == AccessStatus.active.value)
                    & AccessRecord.emergency_access.is_(True)
                    & (AccessRecord.emergency_access_expires_at <= now),
                )
            )
            .order_by(AccessRecord.invited_at, AccessRecord.id)
        )

    async def update(
        self,
        access_id: str,
        patch: Mapping[str, Any],
        expected_status: Optional[str] = None,
    ) -> AccessRecord:
        values = dict(patch)
        values.setdefault("updated_at", utcnow())
        stmt = update(AccessRecord).where(AccessRecord.id == access_id)
        if expected_status is not None:
            stmt = stmt.where(AccessRecord.status == str(expected_status))
        stmt = (
            stmt.values(**values)
            .returning(AccessRecord)
            .execution_options(populate_existing=True, synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        record = result.scalar_one_or_none()
        if record is not None:
            return record

        current = await self.get_by_id(access_id)
        if current is None:
            raise RecordNotFound(access_id=access_id)
        raise ConcurrentModification(
            access_id=access_id,
            expected_status=str(expected_status),
            actual_status=current.status,
        )

    async def commit(self) -> None:
        await self.db.commit()


class InMemoryAccessRecordStore:
    """In-memory store for tests and local demos.

    Records are copied on the way in and out, so callers never hold a
    reference that bypasses :meth:`update`.
    """

    def __init__(self):
        self._records: dict[str, AccessRecord] = {}
        self._lock = asyncio.Lock()

    def _select(self, predicate) -> list[AccessRecord]:
        return [clone_model(record) for record in self._records.values() if predicate(record)]

    @staticmethod
    def _by_recency(records: list[AccessRecord]) -> list[AccessRecord]:
        return sorted(records, key=_recency_key, reverse=True)

    @staticmethod
    def _by_invited_desc(records: list[AccessRecord]) -> list[AccessRecord]:
        return sorted(records, key=lambda record: record.invited_at, reverse=True)

    async def create(self, record: AccessRecord) -> AccessRecord:
        async with self._lock:
            if not record.emergency_access and record.status in LIVE_STATUSES:
                for existing in self._records.values():
                    if (
                        existing.patient_id == record.patient_id
                        and existing.family_member_email == record.family_member_email
                        and existing.status in LIVE_STATUSES
                        and not existing.emergency_access
                    ):
                        raise DuplicateRelationship(
                            patient_id=record.patient_id,
                            email=record.family_member_email,
                        )
            now = utcnow()
            record.created_at = record.created_at or now
            record.updated_at = record.updated_at or now
            self._records[record.id] = clone_model(record)
            return clone_model(record)

    async def get_by_id(self, access_id: str) -> Optional[AccessRecord]:
        record = self._records.get(access_id)
        return clone_model(record) if record is not None else None

    async def find_by_token_hash(self, token_hash: str) -> Optional[AccessRecord]:
        matches = self._select(lambda r: r.invitation_token_hash == token_hash)
        return matches[0] if matches else None

    async def find_by_accepted_token_hash(self, token_hash: str) -> Optional[AccessRecord]:
        matches = self._select(lambda r: r.accepted_token_hash == token_hash)
        return matches[0] if matches else None

    async def find_by_expired_token_hash(self, token_hash: str) -> Optional[AccessRecord]:
        matches = self._select(lambda r: r.expired_token_hash == token_hash)
        return matches[0] if matches else None

    async def find_active_by_patient(self, patient_id: int, now: datetime) -> list[AccessRecord]:
        return self._by_recency(
            self._select(lambda r: r.patient_id == patient_id and r.is_live(now))
        )

    async def find_active_by_member(self, member_id: int, now: datetime) -> list[AccessRecord]:
        return self._by_recency(
            self._select(lambda r: r.family_member_id == member_id and r.is_live(now))
        )

    async def find_for_pair(self, patient_id: int, member_id: int) -> list[AccessRecord]:
        return self._by_invited_desc(
            self._select(
                lambda r: r.patient_id == patient_id and r.family_member_id == member_id
            )
        )

    async def find_by_patient_and_email(
        self,
        patient_id: int,
        email: str,
        statuses: Iterable[str] = LIVE_STATUSES,
    ) -> list[AccessRecord]:
        wanted = {str(status) for status in statuses}
        return self._select(
            lambda r: r.patient_id == patient_id
            and r.family_member_email == email
            and r.status in wanted
            and not r.emergency_access
        )

    async def find_by_patient(self, patient_id: int) -> list[AccessRecord]:
        return self._by_invited_desc(self._select(lambda r: r.patient_id == patient_id))

    async def find_pending_by_email(self, email: str, now: datetime) -> list[AccessRecord]:
        return self._by_invited_desc(
            self._select(
                lambda r: r.family_member_email == email
                and r.status == AccessStatus.pending
                and not r.invitation_expired(now)
            )
        )

    async def find_unlinked_active(self, email: Optional[str] = None) -> list[AccessRecord]:
        return self._select(
            lambda r: r.status == AccessStatus.active
            and r.family_member_id is None
            and (email is None or r.family_member_email == email)
        )

    async def find_stale(self, now: datetime) -> list[AccessRecord]:
        return self._select(
            lambda r: r.invitation_expired(now)
            or (r.status == AccessStatus.active and r.emergency_expired(now))
        )

    async def update(
        self,
        access_id: str,
        patch: Mapping[str, Any],
        expected_status: Optional[str] = None,
    ) -> AccessRecord:
        async with self._lock:
            record = self._records.get(access_id)
            if record is None:
                raise RecordNotFound(access_id=access_id)
            if expected_status is not None and record.status != expected_status:
                raise ConcurrentModification(
                    access_id=access_id,
                    expected_status=str(expected_status),
                    actual_status=record.status,
                )
            values = dict(patch)
            values.setdefault("updated_at", utcnow())
            for key, value in values.items():
                setattr(record, key, list(value) if isinstance(value, list) else value)
            return clone_model(record)

    async def commit(self) -> None:
        return None

    def clear(self) -> None:
        self._records.clear()
