from datetime import UTC, datetime

import pytest

from kincare.config import settings
from kincare.models import AccessRecord, AccessStatus
from kincare.services import email
from kincare.services.family_access import EmailNotificationSender, StatusEvent
from kincare.services.family_access.permissions import preset_flags


class FakeSMTP:
    instances: list["FakeSMTP"] = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.sent = []
        self.started_tls = False
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, user, password):
        self.credentials = (user, password)

    def send_message(self, message):
        self.sent.append(message)


@pytest.fixture()
def smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(email.smtplib, "SMTP", FakeSMTP)
    monkeypatch.setattr(settings, "smtp_enabled", True)
    monkeypatch.setattr(settings, "smtp_host", "smtp.example.com")
    monkeypatch.setattr(settings, "smtp_from", "care@kincare.example")
    return FakeSMTP


@pytest.fixture()
def sent(monkeypatch):
    outbox = []

    def _send(to_addresses, subject, body):
        outbox.append({"to": list(to_addresses), "subject": subject, "body": body})
        return True

    monkeypatch.setattr("kincare.services.family_access.notifications.send_email", _send)
    return outbox


def _invited_record() -> AccessRecord:
    return AccessRecord(
        id="rec-1",
        patient_id=1,
        family_member_email="fam@example.com",
        family_member_name="Fam",
        access_level="limited",
        status=AccessStatus.pending.value,
        invitation_expires_at=datetime(2026, 3, 8, tzinfo=UTC),
        revocation_reason=None,
        **preset_flags("limited"),
    )


def test_send_email_skips_when_disabled(monkeypatch):
    monkeypatch.setattr(settings, "smtp_enabled", False)

    assert email.send_email(["a@example.com"], "Hello", "Body") is False


def test_send_email_without_recipients(smtp):
    assert email.send_email(["", "  "], "Hello", "Body") is False
    assert smtp.instances == []


def test_send_email_delivers(smtp):
    delivered = email.send_email(["B@example.com", "a@example.com", "b@example.com"], "Hello", "Body")

    assert delivered is True
    server = smtp.instances[0]
    assert server.started_tls is True
    message = server.sent[0]
    assert message["To"] == "a@example.com, b@example.com"
    assert message["From"] == "care@kincare.example"
    assert message["Message-ID"]


def test_send_email_reports_smtp_failure(smtp, monkeypatch):
    def _refuse(self, message):
        raise OSError("connection reset")

    monkeypatch.setattr(FakeSMTP, "send_message", _refuse)

    assert email.send_email(["a@example.com"], "Hello", "Body") is False


@pytest.mark.anyio
async def test_invitation_email_lists_capabilities(sent):
    record = _invited_record()

    delivered = await EmailNotificationSender().send_invitation(record, "inv_abc", "Pat")

    assert delivered is True
    message = sent[0]
    assert message["to"] == ["fam@example.com"]
    assert "Pat invited you" in message["subject"]
    assert "/invitation/inv_abc" in message["body"]
    assert "2026-03-08" in message["body"]


@pytest.mark.anyio
async def test_revocation_email_includes_reason(sent):
    record = _invited_record()
    record.status = AccessStatus.revoked.value
    record.revocation_reason = "Moved to a care home"

    await EmailNotificationSender().send_status(
        StatusEvent.revoked, record, "fam@example.com", "Pat", "Fam"
    )

    assert sent[0]["subject"] == "Your access to Pat's care information was revoked"
    assert "Reason: Moved to a care home" in sent[0]["body"]
