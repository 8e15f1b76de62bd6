"""Round trips against a real PostgreSQL database.

Set TEST_DATABASE_URL (postgresql+asyncpg://...) to run; the tables are
dropped and recreated for every test.
"""

import os

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from kincare.models import AccessRecord, AccessStatus, Base, Identity, IdentityRole, new_access_id, utcnow
from kincare.services.family_access import (
    AuditLogger,
    ConcurrentModification,
    DuplicateRelationship,
    FamilyAccessManager,
    SQLAccessRecordStore,
    SQLAuditLogStore,
    SQLIdentityStore,
)

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(
    not TEST_DATABASE_URL, reason="TEST_DATABASE_URL is not set"
)


@pytest.fixture()
async def session_factory():
    engine = create_async_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


async def _identities(session_factory):
    async with session_factory() as db:
        patient = Identity(email="pat@example.com", full_name="Pat", role=IdentityRole.patient.value)
        member = Identity(email="fam@example.com", full_name="Fam", role=IdentityRole.family_member.value)
        db.add_all([patient, member])
        await db.commit()
        return patient.id, member.id


def _pending(patient_id: int, email: str) -> AccessRecord:
    now = utcnow()
    return AccessRecord(
        id=new_access_id(),
        patient_id=patient_id,
        family_member_email=email,
        created_by=patient_id,
        access_level="limited",
        event_types_allowed=[],
        emergency_access=False,
        status=AccessStatus.pending.value,
        invitation_token_hash=new_access_id(),
        invited_at=now,
    )


@pytest.mark.anyio
async def test_lifecycle_round_trip(session_factory):
    patient_id, member_id = await _identities(session_factory)
    audit = AuditLogger(SQLAuditLogStore(session_factory))

    async with session_factory() as db:
        manager = FamilyAccessManager(SQLAccessRecordStore(db), SQLIdentityStore(db), audit)
        issued = await manager.invite(patient_id, patient_id, "fam@example.com", access_level="full")
        record = await manager.accept(issued.token, member_id)
        member = await manager.identities.get(member_id)

        assert record.status == AccessStatus.active
        assert member.linked_patient_ids == [patient_id]
        assert (await manager.resolver.resolve(member_id, patient_id, "can_edit")).allow

        await manager.revoke(record.id, patient_id, "done")

    async with session_factory() as db:
        member = await SQLIdentityStore(db).get(member_id)
        assert member.linked_patient_ids == []
    entries = await audit.store.list_for_patient(patient_id, 10)
    assert [entry.action for entry in entries][:2] == ["access_revoked", "invite_accepted"]


@pytest.mark.anyio
async def test_live_pair_unique_index(session_factory):
    patient_id, _ = await _identities(session_factory)

    async with session_factory() as db:
        store = SQLAccessRecordStore(db)
        await store.create(_pending(patient_id, "fam@example.com"))
        with pytest.raises(DuplicateRelationship):
            await store.create(_pending(patient_id, "fam@example.com"))
        await store.commit()
        assert len(await store.find_by_patient(patient_id)) == 1


@pytest.mark.anyio
async def test_update_is_compare_and_set(session_factory):
    patient_id, _ = await _identities(session_factory)

    async with session_factory() as db:
        store = SQLAccessRecordStore(db)
        record = await store.create(_pending(patient_id, "fam@example.com"))
        await store.commit()

        await store.update(record.id, {"status": AccessStatus.revoked.value}, expected_status="pending")
        with pytest.raises(ConcurrentModification):
            await store.update(record.id, {"status": AccessStatus.active.value}, expected_status="pending")
