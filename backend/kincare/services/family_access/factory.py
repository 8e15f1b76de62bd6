"""Wiring of the SQL-backed family access components."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from kincare.database import async_session_maker, get_db_context
from kincare.services.family_access.audit import AuditLogger, SQLAuditLogStore
from kincare.services.family_access.identities import SQLIdentityStore
from kincare.services.family_access.lifecycle import FamilyAccessManager
from kincare.services.family_access.notifications import (
    EmailNotificationSender,
    NotificationSender,
)
from kincare.services.family_access.store import SQLAccessRecordStore


def sql_audit_logger() -> AuditLogger:
    return AuditLogger(SQLAuditLogStore(async_session_maker))


def build_sql_manager(
    db: AsyncSession,
    notifier: Optional[NotificationSender] = None,
) -> FamilyAccessManager:
    return FamilyAccessManager(
        records=SQLAccessRecordStore(db),
        identities=SQLIdentityStore(db),
        audit=sql_audit_logger(),
        notifier=notifier,
    )


@asynccontextmanager
async def sql_manager_context() -> AsyncIterator[FamilyAccessManager]:
    """Manager bound to a fresh session, for work outside a request."""
    async with get_db_context() as db:
        yield build_sql_manager(db, EmailNotificationSender())
