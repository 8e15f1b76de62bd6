import pytest

from kincare.services.family_access import IndexDrift
from kincare.services.family_access.index_sync import IndexSynchronizer, pick_primary


def test_pick_primary():
    assert pick_primary([], 5) is None
    assert pick_primary([7], None) == 7
    assert pick_primary([7], 3) == 7
    assert pick_primary([3, 7], 7) == 7
    assert pick_primary([3, 7], 9) is None
    assert pick_primary([3, 7], None) is None


@pytest.mark.anyio
async def test_accept_links_both_sides(manager, linked, identities, patient, member):
    await linked()

    stored_member = await identities.get(member.id)
    stored_patient = await identities.get(patient.id)

    assert stored_member.linked_patient_ids == [patient.id]
    assert stored_member.primary_patient_id == patient.id
    assert stored_patient.family_member_ids == [member.id]
    await manager.index.verify(member.id)
    await manager.index.verify(patient.id)


@pytest.mark.anyio
async def test_revoke_unlinks_both_sides(manager, linked, identities, patient, member):
    record = await linked()

    await manager.revoke(record.id, patient.id)

    stored_member = await identities.get(member.id)
    stored_patient = await identities.get(patient.id)
    assert stored_member.linked_patient_ids == []
    assert stored_member.primary_patient_id is None
    assert stored_patient.family_member_ids == []


@pytest.mark.anyio
async def test_primary_kept_when_second_patient_links(
    manager, identities, make_identity, member
):
    from kincare.models import IdentityRole

    first = make_identity("one@example.com", "One", IdentityRole.patient)
    second = make_identity("two@example.com", "Two", IdentityRole.patient)

    for patient in (first, second):
        issued = await manager.invite(patient.id, patient.id, member.email)
        await manager.accept(issued.token, member.id)

    stored = await identities.get(member.id)
    assert stored.linked_patient_ids == sorted([first.id, second.id])
    assert stored.primary_patient_id == first.id


@pytest.mark.anyio
async def test_emergency_only_record_stays_linked_after_revoke(
    manager, linked, identities, patient, member
):
    record = await linked()
    await manager.grant_emergency_access(patient.id, patient.id, member.id)

    await manager.revoke(record.id, patient.id)

    stored = await identities.get(member.id)
    assert stored.linked_patient_ids == [patient.id]
    await manager.index.verify(member.id)


@pytest.mark.anyio
async def test_verify_detects_drift(manager, linked, identities, member):
    await linked()
    await identities.write_index(member.id, {"linked_patient_ids": [], "primary_patient_id": None})

    with pytest.raises(IndexDrift) as exc:
        await manager.index.verify(member.id)

    assert "linked_patient_ids" in exc.value.details["diff"]


@pytest.mark.anyio
async def test_rebuild_repairs_drift(manager, linked, identities, patient, member):
    await linked()
    await identities.write_index(
        member.id, {"linked_patient_ids": [999], "primary_patient_id": 999}
    )

    report = await manager.index.rebuild_index(member.id)

    assert report.drift is True
    assert report.repaired is True
    assert report.diff()["linked_patient_ids"] == {"missing": [patient.id], "extra": [999]}
    stored = await identities.get(member.id)
    assert stored.linked_patient_ids == [patient.id]
    assert stored.primary_patient_id == patient.id

    again = await manager.index.rebuild_index(member.id)
    assert again.repaired is False


@pytest.mark.anyio
async def test_rebuild_matches_incremental_updates(
    manager, linked, identities, patient, member, second_member
):
    kept = await linked()
    dropped = await linked(identity=second_member)
    await manager.suspend(kept.id, patient.id)
    await manager.reactivate(kept.id, patient.id)
    await manager.revoke(dropped.id, patient.id)

    incremental = {
        identity_id: (await identities.get(identity_id))
        for identity_id in (patient.id, member.id, second_member.id)
    }
    for identity_id, identity in incremental.items():
        report = await manager.index.rebuild_index(identity_id)
        assert report.repaired is False
        assert report.expected["linked_patient_ids"] == identity.linked_patient_ids
        assert report.expected["family_member_ids"] == identity.family_member_ids


@pytest.mark.anyio
async def test_index_write_failure_does_not_fail_accept(
    records, identities, audit, clock, patient, member
):
    from kincare.services.family_access import FamilyAccessManager

    class BrokenIdentities:
        def __init__(self, inner):
            self.inner = inner

        def __getattr__(self, name):
            return getattr(self.inner, name)

        async def write_index(self, identity_id, patch):
            raise RuntimeError("index unavailable")

    broken = BrokenIdentities(identities)
    manager = FamilyAccessManager(
        records,
        broken,
        audit,
        index=IndexSynchronizer(records, broken, clock),
        clock=clock,
    )
    issued = await manager.invite(patient.id, patient.id, member.email)

    record = await manager.accept(issued.token, member.id)

    assert record.status == "active"
    with pytest.raises(IndexDrift):
        await manager.index.verify(member.id)
    repaired = await IndexSynchronizer(records, identities, clock).rebuild_index(member.id)
    assert repaired.repaired is True
