"""Invitation and status notifications.

Delivery is fire-and-forget: the lifecycle manager logs and swallows any
failure raised from here.
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import Protocol

from kincare.config import settings
from kincare.models import AccessRecord
from kincare.services.email import send_email
from kincare.services.family_access.permissions import describe_flags

logger = logging.getLogger("kincare.family_access.notifications")


class StatusEvent(StrEnum):
    accepted = "accepted"
    declined = "declined"
    revoked = "revoked"
    suspended = "suspended"
    reactivated = "reactivated"
    emergency_granted = "emergency_granted"


_STATUS_SUBJECTS = {
    StatusEvent.accepted: "{member} accepted your family access invitation",
    StatusEvent.declined: "{member} declined your family access invitation",
    StatusEvent.revoked: "Your access to {patient}'s care information was revoked",
    StatusEvent.suspended: "Your access to {patient}'s care information was paused",
    StatusEvent.reactivated: "Your access to {patient}'s care information was restored",
    StatusEvent.emergency_granted: "Emergency access to {patient}'s care information",
}


class NotificationSender(Protocol):
    async def send_invitation(
        self,
        record: AccessRecord,
        token: str,
        patient_name: str,
    ) -> bool:
        ...

    async def send_status(
        self,
        event: StatusEvent,
        record: AccessRecord,
        to_email: str,
        patient_name: str,
        member_name: str,
    ) -> bool:
        ...


def invitation_url(token: str) -> str:
    return f"{settings.frontend_base_url.rstrip('/')}/invitation/{token}"


class EmailNotificationSender:
    """Sends notifications through the SMTP helper on a worker thread."""

    async def send_invitation(
        self,
        record: AccessRecord,
        token: str,
        patient_name: str,
    ) -> bool:
        capabilities = describe_flags(record.permission_flags()) or ["none"]
        greeting = record.family_member_name or "there"
        body = (
            f"Hi {greeting},\n\n"
            f"{patient_name} has invited you to help with their care on {settings.app_name}.\n\n"
            f"Access level: {record.access_level}\n"
            f"You will be able to: {', '.join(capabilities)}\n\n"
            f"Accept the invitation here:\n{invitation_url(token)}\n\n"
            f"This link expires on {record.invitation_expires_at:%Y-%m-%d}."
        )
        return await asyncio.to_thread(
            send_email,
            [record.family_member_email],
            f"{patient_name} invited you to {settings.app_name}",
            body,
        )

    async def send_status(
        self,
        event: StatusEvent,
        record: AccessRecord,
        to_email: str,
        patient_name: str,
        member_name: str,
    ) -> bool:
        subject = _STATUS_SUBJECTS[event].format(patient=patient_name, member=member_name)
        lines = [subject + "."]
        if event == StatusEvent.emergency_granted and record.emergency_access_expires_at:
            lines.append(
                f"View-only access ends at {record.emergency_access_expires_at:%Y-%m-%d %H:%M} UTC."
            )
        if record.revocation_reason and event == StatusEvent.revoked:
            lines.append(f"Reason: {record.revocation_reason}")
        return await asyncio.to_thread(send_email, [to_email], subject, "\n\n".join(lines))
