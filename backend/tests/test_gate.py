from functools import partial
from typing import Annotated

import anyio
import pytest
from fastapi import APIRouter, Depends, Request

from kincare.api.gate import AccessContext, RequireCapability, require_all, require_any
from kincare.models import utcnow


@pytest.fixture()
def clock():
    return utcnow


@pytest.fixture()
def calls():
    return []


@pytest.fixture()
def gated_client(api_app, calls):
    from fastapi.testclient import TestClient

    router = APIRouter(prefix="/gated")

    @router.get("/patients/{patient_id}/events")
    async def read_events(
        request: Request,
        context: Annotated[AccessContext, Depends(require_all("can_view", category_param="category"))],
    ):
        calls.append(("read", context.patient_id))
        record = request.state.access_record
        return {
            "patient_id": request.state.patient_id,
            "access_id": record.id if record is not None else None,
            "is_self": context.is_self,
        }

    @router.delete("/patients/{patient_id}/events")
    async def delete_events(
        context: Annotated[AccessContext, Depends(require_all("can_view", "can_delete"))],
    ):
        calls.append(("delete", context.patient_id))
        return {"deleted": True}

    @router.post("/events")
    async def write_event(
        context: Annotated[AccessContext, Depends(require_any("canCreate", "canEdit"))],
    ):
        calls.append(("write", context.patient_id))
        return {"patient_id": context.patient_id}

    api_app.include_router(router)
    return TestClient(api_app, raise_server_exceptions=False)


def test_gate_requires_at_least_one_capability():
    with pytest.raises(ValueError):
        RequireCapability()


def test_patient_passes_own_gate(gated_client, auth, patient, calls):
    response = gated_client.get(f"/gated/patients/{patient.id}/events", headers=auth(patient))

    assert response.status_code == 200
    assert response.json() == {"patient_id": patient.id, "access_id": None, "is_self": True}
    assert calls == [("read", patient.id)]


def test_category_param_is_enforced(gated_client, auth, linked, patient, member, calls):
    record = anyio.run(partial(linked, access_level="limited", event_types_allowed=["appointment"]))
    url = f"/gated/patients/{patient.id}/events"

    allowed = gated_client.get(url, params={"category": "appointment"}, headers=auth(member))
    denied = gated_client.get(url, params={"category": "lab_test"}, headers=auth(member))

    assert allowed.status_code == 200
    assert allowed.json()["access_id"] == record.id
    assert denied.status_code == 403
    assert denied.json()["error"]["details"]["reason"] == "category_not_allowed"
    assert calls == [("read", patient.id)]


def test_all_mode_denies_on_any_missing_capability(gated_client, auth, linked, patient, member, calls):
    anyio.run(partial(linked, access_level="limited"))

    response = gated_client.delete(f"/gated/patients/{patient.id}/events", headers=auth(member))

    assert response.status_code == 403
    assert response.json()["error"]["details"]["capability"] == "can_delete"
    assert calls == []


def test_any_mode_with_implicit_patient(gated_client, auth, linked, patient, member, calls, audit_store):
    anyio.run(partial(linked, access_level="limited", permissions={"can_edit": True}))

    response = gated_client.post("/gated/events", headers=auth(member))

    assert response.status_code == 200
    assert response.json() == {"patient_id": patient.id}
    assert calls == [("write", patient.id)]
    assert "permission_denied" not in audit_store.actions()


def test_any_mode_denies_when_nothing_granted(gated_client, auth, linked, member, calls, audit_store):
    anyio.run(partial(linked, access_level="limited"))

    response = gated_client.post("/gated/events", headers=auth(member))

    assert response.status_code == 403
    assert calls == []
    denials = [entry for entry in audit_store.entries if entry.action == "permission_denied"]
    assert len(denials) == 1
    assert denials[0].metadata_["capability"] == "can_edit"


def test_gate_records_last_access(gated_client, auth, linked, records, patient, member):
    record = anyio.run(linked)
    assert record.last_access_at is None

    gated_client.get(f"/gated/patients/{patient.id}/events", headers=auth(member))

    stored = anyio.run(records.get_by_id, record.id)
    assert stored.last_access_at is not None


def test_gate_rejects_non_numeric_patient(gated_client, auth, member):
    response = gated_client.post("/gated/events", params={"patient_id": "abc"}, headers=auth(member))

    assert response.status_code == 422
    assert response.json()["error"]["type"] == "validation_error"
