"""Identity lookups and membership-index writes."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import Any, Optional, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kincare.models import Identity, clone_model, utcnow

INDEX_FIELDS = frozenset({"linked_patient_ids", "family_member_ids", "primary_patient_id"})


def normalize_email(email: str) -> str:
    return email.strip().lower()


class IdentityStore(Protocol):
    async def get(self, identity_id: int) -> Optional[Identity]:
        ...

    async def get_by_email(self, email: str) -> Optional[Identity]:
        ...

    async def lock(self, identity_id: int) -> Optional[Identity]:
        ...

    async def write_index(self, identity_id: int, patch: Mapping[str, Any]) -> Identity:
        ...

    async def list_ids(self) -> list[int]:
        ...


def _check_index_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(patch) - INDEX_FIELDS
    if unknown:
        raise ValueError(f"Not a membership index field: {sorted(unknown)}")
    return dict(patch)


class SQLIdentityStore:
    """Identity store backed by SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, identity_id: int) -> Optional[Identity]:
        return await self.db.get(Identity, identity_id)

    async def get_by_email(self, email: str) -> Optional[Identity]:
        result = await self.db.execute(
            select(Identity).where(func.lower(Identity.email) == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def lock(self, identity_id: int) -> Optional[Identity]:
        result = await self.db.execute(
            select(Identity)
            .where(Identity.id == identity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def write_index(self, identity_id: int, patch: Mapping[str, Any]) -> Identity:
        values = _check_index_patch(patch)
        values["updated_at"] = utcnow()
        # Savepoint: a failed index write must not undo the record transition.
        async with self.db.begin_nested():
            result = await self.db.execute(
                update(Identity)
                .where(Identity.id == identity_id)
                .values(**values)
                .returning(Identity)
                .execution_options(populate_existing=True, synchronize_session=False)
            )
            identity = result.scalar_one_or_none()
        if identity is None:
            raise LookupError(f"Identity {identity_id} not found")
        return identity

    async def list_ids(self) -> list[int]:
        result = await self.db.execute(select(Identity.id).order_by(Identity.id))
        return list(result.scalars().all())


class InMemoryIdentityStore:
    """In-memory identity store for tests and local demos."""

    def __init__(self):
        self._identities: dict[int, Identity] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    def add(self, identity: Identity) -> Identity:
        if identity.id is None:
            identity.id = self._next_id
        self._next_id = max(self._next_id, identity.id + 1)
        identity.email = normalize_email(identity.email)
        identity.is_active = True if identity.is_active is None else identity.is_active
        identity.linked_patient_ids = list(identity.linked_patient_ids or [])
        identity.family_member_ids = list(identity.family_member_ids or [])
        self._identities[identity.id] = clone_model(identity)
        return clone_model(identity)

    async def get(self, identity_id: int) -> Optional[Identity]:
        identity = self._identities.get(identity_id)
        return clone_model(identity) if identity is not None else None

    async def get_by_email(self, email: str) -> Optional[Identity]:
        wanted = normalize_email(email)
        for identity in self._identities.values():
            if identity.email == wanted:
                return clone_model(identity)
        return None

    async def lock(self, identity_id: int) -> Optional[Identity]:
        return await self.get(identity_id)

    async def write_index(self, identity_id: int, patch: Mapping[str, Any]) -> Identity:
        values = _check_index_patch(patch)
        async with self._lock:
            identity = self._identities.get(identity_id)
            if identity is None:
                raise LookupError(f"Identity {identity_id} not found")
            for key, value in values.items():
                setattr(identity, key, list(value) if isinstance(value, list) else value)
            identity.updated_at = utcnow()
            return clone_model(identity)

    async def list_ids(self) -> list[int]:
        return sorted(self._identities)

    def clear(self) -> None:
        self._identities.clear()
        self._next_id = 1
