import pytest

from kincare.config import settings
from kincare.models import utcnow

BASE = "/api/v1/family-access"


@pytest.fixture()
def clock():
    # Records created through fixtures must agree with the wall clock the API uses.
    return utcnow


def _invite(client, auth, patient, email, **body):
    response = client.post(
        f"{BASE}/invitations",
        json={"email": email, **body},
        headers=auth(patient),
    )
    assert response.status_code == 201, response.text
    return response.json()


def _link(client, auth, patient, member, **body):
    created = _invite(client, auth, patient, member.email, **body)
    response = client.post(
        f"{BASE}/invitations/accept",
        json={"token": created["invitation_token"]},
        headers=auth(member),
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_requires_bearer_token(client):
    response = client.get(f"{BASE}/me/patients")

    assert response.status_code in (401, 403)
    assert "error" in response.json()


def test_rejects_invalid_token(client):
    response = client.get(
        f"{BASE}/me/patients",
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401
    assert response.json()["error"]["type"] == "http_error"


def test_invite_accept_and_list(client, auth, patient, member, notifier):
    created = _invite(client, auth, patient, "FAM@example.com", access_level="full")

    assert created["record"]["status"] == "pending"
    assert created["record"]["family_member_email"] == "fam@example.com"
    assert created["invitation_token"].startswith("inv_")
    assert created["invitation_url"].endswith(created["invitation_token"])
    assert notifier.invitations[0][0] == "fam@example.com"

    pending = client.get(f"{BASE}/invitations", headers=auth(member))
    assert [item["id"] for item in pending.json()] == [created["record"]["id"]]

    accepted = client.post(
        f"{BASE}/invitations/accept",
        json={"token": created["invitation_token"]},
        headers=auth(member),
    )
    assert accepted.status_code == 200
    assert accepted.json()["family_member_id"] == member.id
    assert accepted.json()["permissions"]["can_manage_family"] is True

    mine = client.get(f"{BASE}/me/patients", headers=auth(member))
    assert [item["patient_id"] for item in mine.json()] == [patient.id]


def test_preview_is_public(client, auth, patient):
    created = _invite(client, auth, patient, "new@example.com", name="New Person")

    response = client.get(f"{BASE}/invitations/{created['invitation_token']}")

    assert response.status_code == 200
    body = response.json()
    assert body["patient_name"] == "Pat Patient"
    assert body["family_member_name"] == "New Person"
    assert body["permissions"]["can_view"] is True


@pytest.mark.parametrize(
    ("email", "status_code", "error_type"),
    [
        ("pat@example.com", 400, "self_invitation"),
        ("not-an-email", 422, "validation_error"),
    ],
)
def test_invite_errors(client, auth, patient, email, status_code, error_type):
    response = client.post(f"{BASE}/invitations", json={"email": email}, headers=auth(patient))

    assert response.status_code == status_code
    error = response.json()["error"]
    assert error["type"] == error_type
    assert error["status_code"] == status_code


def test_duplicate_invitation_conflict(client, auth, patient):
    _invite(client, auth, patient, "dup@example.com")

    response = client.post(
        f"{BASE}/invitations",
        json={"email": "dup@example.com"},
        headers=auth(patient),
    )

    assert response.status_code == 409
    assert response.json()["error"]["type"] == "duplicate_relationship"


def test_unknown_token_and_reuse(client, auth, patient, member, second_member):
    missing = client.post(
        f"{BASE}/invitations/accept",
        json={"token": "inv_missing-token"},
        headers=auth(member),
    )
    assert missing.status_code == 404
    assert missing.json()["error"]["type"] == "token_not_found"

    created = _invite(client, auth, patient, member.email)
    token = created["invitation_token"]
    client.post(f"{BASE}/invitations/accept", json={"token": token}, headers=auth(member))
    reused = client.post(
        f"{BASE}/invitations/accept",
        json={"token": token},
        headers=auth(second_member),
    )
    assert reused.status_code == 409
    assert reused.json()["error"]["type"] == "already_accepted"


def test_decline(client, auth, patient, member):
    created = _invite(client, auth, patient, member.email)

    response = client.post(
        f"{BASE}/invitations/decline",
        json={"token": created["invitation_token"], "reason": "no thanks"},
        headers=auth(member),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "revoked"


def test_capability_check_reports_denials(client, auth, patient, member):
    _link(
        client,
        auth,
        patient,
        member,
        access_level="limited",
        event_types_allowed=["appointment"],
    )
    url = f"{BASE}/patients/{patient.id}/check"

    view = client.get(f"{url}/canView", params={"category": "appointment"}, headers=auth(member))
    labs = client.get(f"{url}/can_view", params={"category": "lab_test"}, headers=auth(member))
    create = client.get(f"{url}/canCreate", headers=auth(member))
    unknown = client.get(f"{url}/can_fly", headers=auth(member))

    assert view.json()["allowed"] is True
    assert labs.status_code == 200
    assert labs.json() == {
        "patient_id": patient.id,
        "capability": "can_view",
        "allowed": False,
        "reason": "category_not_allowed",
        "access_id": view.json()["access_id"],
    }
    assert create.json()["reason"] == "capability_not_granted"
    assert unknown.status_code == 422


def test_gated_access_route(client, auth, patient, member, second_member):
    record = _link(client, auth, patient, member)

    allowed = client.get(f"{BASE}/patients/{patient.id}/access", headers=auth(member))
    denied = client.get(f"{BASE}/patients/{patient.id}/access", headers=auth(second_member))

    assert allowed.status_code == 200
    assert allowed.json()["access_id"] == record["id"]
    assert denied.status_code == 403
    assert denied.json()["error"]["details"]["reason"] == "no_relationship"


def test_members_listing_requires_manage_family(client, auth, patient, member, second_member):
    _link(client, auth, patient, member, access_level="limited")
    _invite(client, auth, patient, second_member.email)

    as_patient = client.get(f"{BASE}/patients/{patient.id}/members", headers=auth(patient))
    as_member = client.get(f"{BASE}/patients/{patient.id}/members", headers=auth(member))

    assert [item["status"] for item in as_patient.json()] == ["pending", "active"]
    assert as_member.status_code == 403
    assert as_member.json()["error"]["type"] == "not_authorized"


def test_update_suspend_reactivate_revoke(client, auth, patient, member):
    record = _link(client, auth, patient, member, access_level="limited")
    url = f"{BASE}/{record['id']}"
    headers = auth(patient)

    updated = client.patch(
        url,
        json={"permissions": {"can_create": True}, "event_types_allowed": ["medication_refill"]},
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["permissions"]["can_create"] is True
    assert updated.json()["event_types_allowed"] == ["medication_refill"]

    assert client.post(f"{url}/suspend", json={"reason": "pause"}, headers=headers).json()["status"] == "suspended"
    assert client.post(f"{url}/reactivate", headers=headers).json()["status"] == "active"

    revoked = client.post(f"{url}/revoke", json={"reason": "done"}, headers=headers)
    assert revoked.json()["status"] == "revoked"
    again = client.post(f"{url}/revoke", headers=headers)
    assert again.status_code == 200
    assert again.json()["revoked_at"] == revoked.json()["revoked_at"]

    missing = client.post(f"{BASE}/does-not-exist/revoke", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["type"] == "record_not_found"


def test_resend_only_for_pending(client, auth, patient, member):
    created = _invite(client, auth, patient, member.email)
    access_id = created["record"]["id"]

    resent = client.post(f"{BASE}/{access_id}/resend", headers=auth(patient))
    assert resent.status_code == 200
    assert resent.json()["invitation_token"] != created["invitation_token"]

    client.post(
        f"{BASE}/invitations/accept",
        json={"token": resent.json()["invitation_token"]},
        headers=auth(member),
    )
    conflict = client.post(f"{BASE}/{access_id}/resend", headers=auth(patient))
    assert conflict.status_code == 409
    assert conflict.json()["error"]["type"] == "invalid_transition"


def test_emergency_access_grant(client, auth, patient, member):
    response = client.post(
        f"{BASE}/patients/{patient.id}/emergency-access",
        json={"member_id": member.id, "duration_hours": 4},
        headers=auth(patient),
    )

    assert response.status_code == 201
    assert response.json()["access_level"] == "emergency_only"
    check = client.get(f"{BASE}/patients/{patient.id}/check/can_view", headers=auth(member))
    assert check.json()["reason"] == "emergency_override"


def test_active_patient_selection(client, auth, patient, member):
    none = client.get(f"{BASE}/me/active-patient", headers=auth(member))
    assert none.status_code == 403

    _link(client, auth, patient, member)
    selected = client.get(f"{BASE}/me/active-patient", headers=auth(member))
    assert selected.json() == {
        "patient_id": patient.id,
        "source": "index",
        "candidates": [patient.id],
    }


def test_audit_trail_endpoint(client, auth, patient, member):
    _link(client, auth, patient, member)

    response = client.get(f"{BASE}/patients/{patient.id}/audit", params={"limit": 5}, headers=auth(patient))

    assert response.status_code == 200
    assert [entry["action"] for entry in response.json()] == ["invite_accepted", "invite_created"]


def test_rebuild_my_index(client, auth, patient, member, identities):
    import anyio

    _link(client, auth, patient, member)
    anyio.run(identities.write_index, member.id, {"linked_patient_ids": []})

    response = client.post(f"{BASE}/me/rebuild-index", headers=auth(member))

    assert response.status_code == 200
    body = response.json()
    assert body["repaired"] is True
    assert body["linked_patient_ids"] == [patient.id]


def test_maintenance_requires_api_key(client, monkeypatch):
    monkeypatch.setattr(settings, "api_key", "sekret")

    rejected = client.post(f"{BASE}/maintenance/expire")
    accepted = client.post(f"{BASE}/maintenance/expire", headers={"X-API-Key": "sekret"})

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json() == {"expired_invitations": 0, "expired_emergency_grants": 0, "total": 0}


def test_maintenance_consistency_and_repair(client, auth, patient, member, monkeypatch):
    monkeypatch.setattr(settings, "api_key", None)
    _link(client, auth, patient, member)

    report = client.get(f"{BASE}/maintenance/consistency")
    repair = client.post(f"{BASE}/maintenance/identities/{member.id}/repair")
    missing = client.post(f"{BASE}/maintenance/identities/999/rebuild-index")

    assert report.json()["consistent"] is True
    assert report.json()["checked_identities"] == 2
    assert repair.json()["relinked_access_ids"] == []
    assert missing.status_code == 404
    assert missing.json()["error"]["type"] == "identity_not_found"


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "kincare-access"}
