"""Shared API dependencies."""

from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from kincare.config import settings
from kincare.database import get_db
from kincare.logging import identity_id_var
from kincare.models import Identity
from kincare.services.family_access import (
    AccessRecordStore,
    AuditLogger,
    EmailNotificationSender,
    FamilyAccessManager,
    IdentityStore,
    MaintenanceService,
    NotificationSender,
    PatientSelector,
    PermissionResolver,
    SQLAccessRecordStore,
    SQLIdentityStore,
)
from kincare.services.family_access.factory import sql_audit_logger

security = HTTPBearer()


async def require_api_key(x_api_key: str | None = Header(None, alias="X-API-Key")):
    """Require API key when configured."""
    if not settings.api_key:
        return None
    if x_api_key != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return None


def get_record_store(db: Annotated[AsyncSession, Depends(get_db)]) -> AccessRecordStore:
    return SQLAccessRecordStore(db)


def get_identity_store(db: Annotated[AsyncSession, Depends(get_db)]) -> IdentityStore:
    return SQLIdentityStore(db)


def get_audit_logger() -> AuditLogger:
    return sql_audit_logger()


def get_notifier() -> NotificationSender:
    return EmailNotificationSender()


async def get_current_identity(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
    identities: Annotated[IdentityStore, Depends(get_identity_store)],
) -> Identity:
    """Identity behind a valid bearer token issued by the host application."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        subject: str | None = payload.get("sub")
        token_type: str | None = payload.get("type")
        if subject is None:
            raise credentials_exception
        if token_type and token_type != "access":
            raise credentials_exception
        identity_id = int(subject)
    except (JWTError, ValueError):
        raise credentials_exception

    identity = await identities.get(identity_id)
    if identity is None:
        raise credentials_exception
    if not identity.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive",
        )
    identity_id_var.set(identity.id)
    return identity


def get_family_access_manager(
    records: Annotated[AccessRecordStore, Depends(get_record_store)],
    identities: Annotated[IdentityStore, Depends(get_identity_store)],
    audit: Annotated[AuditLogger, Depends(get_audit_logger)],
    notifier: Annotated[NotificationSender, Depends(get_notifier)],
) -> FamilyAccessManager:
    return FamilyAccessManager(
        records=records,
        identities=identities,
        audit=audit,
        notifier=notifier,
    )


def get_permission_resolver(
    manager: Annotated[FamilyAccessManager, Depends(get_family_access_manager)],
) -> PermissionResolver:
    return manager.resolver


def get_patient_selector(
    manager: Annotated[FamilyAccessManager, Depends(get_family_access_manager)],
) -> PatientSelector:
    return PatientSelector(manager.records, manager.index, manager.resolver, manager.clock)


def get_maintenance_service(
    manager: Annotated[FamilyAccessManager, Depends(get_family_access_manager)],
) -> MaintenanceService:
    return MaintenanceService(manager.records, manager.identities, manager.index, manager.audit)


CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
Manager = Annotated[FamilyAccessManager, Depends(get_family_access_manager)]
