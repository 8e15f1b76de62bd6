"""Invitation token generation and hashing."""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from kincare.config import settings
from kincare.models import utcnow


@dataclass(frozen=True)
class InvitationToken:
    token: str
    token_hash: str
    expires_at: datetime


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token(now: datetime | None = None) -> InvitationToken:
    """Issue a fresh opaque token. Only its hash is ever persisted."""
    issued_at = now or utcnow()
    token = settings.invitation_token_prefix + secrets.token_urlsafe(
        settings.invitation_token_bytes
    )
    return InvitationToken(
        token=token,
        token_hash=hash_token(token),
        expires_at=issued_at + timedelta(days=settings.invitation_expire_days),
    )
