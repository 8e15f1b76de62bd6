"""Append-only audit trail for family access actions."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kincare.models import AuditAction, AuditLogEntry, clone_model, utcnow

logger = logging.getLogger("kincare.family_access.audit")


class AuditLogStore(Protocol):
    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        ...

    async def list_for_patient(self, patient_id: int, limit: int) -> list[AuditLogEntry]:
        ...

    async def list_for_actor(self, actor_id: int, limit: int) -> list[AuditLogEntry]:
        ...


class SQLAuditLogStore:
    """Writes each entry in its own short transaction.

    Denials are recorded even when the surrounding request is rolled back.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        async with self.session_factory() as session:
            session.add(entry)
            await session.commit()
        return entry

    async def _list(self, query) -> list[AuditLogEntry]:
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_for_patient(self, patient_id: int, limit: int) -> list[AuditLogEntry]:
        return await self._list(
            select(AuditLogEntry)
            .where(AuditLogEntry.patient_id == patient_id)
            .order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
            .limit(limit)
        )

    async def list_for_actor(self, actor_id: int, limit: int) -> list[AuditLogEntry]:
        return await self._list(
            select(AuditLogEntry)
            .where(AuditLogEntry.actor_id == actor_id)
            .order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
            .limit(limit)
        )


class InMemoryAuditLogStore:
    """In-memory audit store for tests and local demos."""

    def __init__(self):
        self._entries: list[AuditLogEntry] = []

    async def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        entry.id = len(self._entries) + 1
        entry.created_at = entry.created_at or utcnow()
        entry.updated_at = entry.created_at
        self._entries.append(clone_model(entry))
        return entry

    async def list_for_patient(self, patient_id: int, limit: int) -> list[AuditLogEntry]:
        matches = [e for e in reversed(self._entries) if e.patient_id == patient_id]
        return [clone_model(e) for e in matches[:limit]]

    async def list_for_actor(self, actor_id: int, limit: int) -> list[AuditLogEntry]:
        matches = [e for e in reversed(self._entries) if e.actor_id == actor_id]
        return [clone_model(e) for e in matches[:limit]]

    @property
    def entries(self) -> list[AuditLogEntry]:
        return [clone_model(e) for e in self._entries]

    def actions(self) -> list[str]:
        return [entry.action for entry in self._entries]

    def clear(self) -> None:
        self._entries.clear()


class AuditLogger:
    """Writes audit entries. A failed write is logged, never raised."""

    def __init__(self, store: AuditLogStore):
        self.store = store

    async def record(
        self,
        action: AuditAction,
        *,
        patient_id: int,
        actor_id: Optional[int],
        access_id: Optional[str] = None,
        reason: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        entry = AuditLogEntry(
            actor_id=actor_id,
            patient_id=patient_id,
            access_id=access_id,
            action=action.value,
            reason=reason,
            metadata_=metadata or None,
        )
        try:
            await self.store.append(entry)
        except Exception:
            logger.exception(
                "Failed to write audit entry action=%s patient=%s actor=%s",
                action.value,
                patient_id,
                actor_id,
            )
