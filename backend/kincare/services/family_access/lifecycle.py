"""Invitation lifecycle: the only writer of access records.

Every transition is a compare-and-set on ``status`` through the record
store, followed by the membership index update, a commit, the audit
entry and finally the (best-effort) notification.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from kincare.config import settings
from kincare.models import (
    TERMINAL_STATUSES,
    AccessLevel,
    AccessRecord,
    AccessStatus,
    AuditAction,
    Capability,
    Identity,
    new_access_id,
    utcnow,
)
from kincare.services.family_access.audit import AuditLogger
from kincare.services.family_access.errors import (
    AlreadyAccepted,
    ConcurrentModification,
    DuplicateRelationship,
    IdentityNotFound,
    InvalidTransition,
    RecordNotFound,
    SelfInvitation,
    TokenExpired,
    TokenNotFound,
    ValidationError,
)
from kincare.services.family_access.identities import IdentityStore, normalize_email
from kincare.services.family_access.index_sync import IndexSynchronizer
from kincare.services.family_access.notifications import (
    NotificationSender,
    StatusEvent,
    invitation_url,
)
from kincare.services.family_access.permissions import (
    ensure_within_delegation,
    merge_flags,
    mask_flags,
    preset_flags,
    validate_assignable_level,
    validate_event_types,
)
from kincare.services.family_access.resolver import PermissionResolver
from kincare.services.family_access.store import AccessRecordStore
from kincare.services.family_access.tokens import generate_token, hash_token

logger = logging.getLogger("kincare.family_access")

FlagOverrides = Mapping[str, Optional[bool]]


@dataclass
class IssuedInvitation:
    record: AccessRecord
    token: str

    @property
    def url(self) -> str:
        return invitation_url(self.token)


@dataclass
class InvitationPreview:
    record: AccessRecord
    patient_name: str
    patient_email: str


@dataclass
class SweepResult:
    expired_invitations: int = 0
    expired_emergency_grants: int = 0

    @property
    def total(self) -> int:
        return self.expired_invitations + self.expired_emergency_grants


def _pending_first(records: list[AccessRecord]) -> list[AccessRecord]:
    by_recent = sorted(records, key=lambda record: record.invited_at, reverse=True)
    return sorted(by_recent, key=lambda record: record.status != AccessStatus.pending)


class FamilyAccessManager:
    """Creates, accepts, changes, expires and revokes access records."""

    def __init__(
        self,
        records: AccessRecordStore,
        identities: IdentityStore,
        audit: AuditLogger,
        notifier: Optional[NotificationSender] = None,
        resolver: Optional[PermissionResolver] = None,
        index: Optional[IndexSynchronizer] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.records = records
        self.identities = identities
        self.audit = audit
        self.notifier = notifier
        self.clock = clock
        self.resolver = resolver or PermissionResolver(records, audit, clock)
        self.index = index or IndexSynchronizer(records, identities, clock)

    # ----- helpers -----

    async def _get_record(self, access_id: str) -> AccessRecord:
        record = await self.records.get_by_id(access_id)
        if record is None:
            raise RecordNotFound(access_id=access_id)
        return record

    async def _get_identity(self, identity_id: int) -> Identity:
        identity = await self.identities.get(identity_id)
        if identity is None or not identity.is_active:
            raise IdentityNotFound(identity_id=identity_id)
        return identity

    async def _authorize_manager(self, actor_id: int, patient_id: int) -> Optional[AccessRecord]:
        """Return the actor's delegating record, or None when the actor is the patient."""
        if actor_id == patient_id:
            return None
        decision = await self.resolver.require(actor_id, patient_id, Capability.can_manage_family)
        return decision.record

    async def _notify(self, description: str, send: Callable[[], Awaitable[bool]]) -> None:
        if self.notifier is None:
            return
        try:
            delivered = await send()
            if not delivered:
                logger.info("Notification not delivered: %s", description)
        except Exception:
            logger.exception("Notification failed: %s", description)

    async def _patient_name(self, patient_id: int) -> str:
        patient = await self.identities.get(patient_id)
        return patient.full_name if patient is not None else "A family member"

    async def _expire_pending(self, record: AccessRecord) -> None:
        try:
            await self.records.update(
                record.id,
                {
                    "status": AccessStatus.expired.value,
                    "invitation_token_hash": None,
                    "expired_token_hash": record.invitation_token_hash,
                    "invitation_expires_at": None,
                },
                expected_status=AccessStatus.pending.value,
            )
        except ConcurrentModification:
            return
        await self.records.commit()
        logger.info("Invitation %s expired on use", record.id)
        await self.audit.record(
            AuditAction.invite_expired,
            patient_id=record.patient_id,
            actor_id=None,
            access_id=record.id,
        )

    async def _load_pending(self, token: str) -> AccessRecord:
        token_hash = hash_token(token.strip())
        record = await self.records.find_by_token_hash(token_hash)
        if record is None:
            if await self.records.find_by_accepted_token_hash(token_hash) is not None:
                raise AlreadyAccepted()
            lapsed = await self.records.find_by_expired_token_hash(token_hash)
            if lapsed is not None:
                raise TokenExpired(access_id=lapsed.id)
            raise TokenNotFound()
        if record.status in (AccessStatus.active, AccessStatus.suspended):
            raise AlreadyAccepted(access_id=record.id)
        if record.status != AccessStatus.pending:
            raise TokenNotFound()
        if record.invitation_expired(self.clock()):
            expired_at = record.invitation_expires_at
            await self._expire_pending(record)
            raise TokenExpired(access_id=record.id, expired_at=expired_at.isoformat())
        return record

    # ----- invitations -----

    async def invite(
        self,
        patient_id: int,
        actor_id: int,
        email: str,
        name: Optional[str] = None,
        permissions: Optional[FlagOverrides] = None,
        access_level: AccessLevel | str = AccessLevel.limited,
        event_types_allowed: Optional[list[str]] = None,
    ) -> IssuedInvitation:
        level = validate_assignable_level(access_level)
        patient = await self._get_identity(patient_id)
        if not patient.is_patient:
            raise ValidationError("Invitations can only be issued for a patient", patient_id=patient_id)
        manager_record = await self._authorize_manager(actor_id, patient_id)

        email = normalize_email(email)
        if email == normalize_email(patient.email):
            raise SelfInvitation()

        flags = merge_flags(preset_flags(level), permissions or {})
        event_types = validate_event_types(level, event_types_allowed)
        if manager_record is not None:
            ensure_within_delegation(flags, manager_record.permission_flags())

        existing = await self.records.find_by_patient_and_email(patient_id, email)
        if existing:
            raise DuplicateRelationship(access_id=existing[0].id, status=existing[0].status)

        now = self.clock()
        issued = generate_token(now)
        record = AccessRecord(
            id=new_access_id(),
            patient_id=patient_id,
            family_member_id=None,
            family_member_email=email,
            family_member_name=(name or "").strip() or None,
            created_by=actor_id,
            access_level=level.value,
            event_types_allowed=event_types,
            emergency_access=False,
            emergency_access_expires_at=None,
            invitation_token_hash=issued.token_hash,
            invitation_expires_at=issued.expires_at,
            accepted_token_hash=None,
            status=AccessStatus.pending.value,
            invited_at=now,
            created_at=now,
            updated_at=now,
            **flags,
        )
        record = await self.records.create(record)
        await self.records.commit()

        logger.info("Invitation %s created for patient %s by %s", record.id, patient_id, actor_id)
        await self.audit.record(
            AuditAction.invite_created,
            patient_id=patient_id,
            actor_id=actor_id,
            access_id=record.id,
            email=email,
            access_level=level.value,
        )
        await self._notify(
            f"invitation {record.id}",
            lambda: self.notifier.send_invitation(record, issued.token, patient.full_name),
        )
        return IssuedInvitation(record=record, token=issued.token)

    async def preview(self, token: str) -> InvitationPreview:
        record = await self._load_pending(token)
        patient = await self.identities.get(record.patient_id)
        return InvitationPreview(
            record=record,
            patient_name=patient.full_name if patient is not None else "",
            patient_email=patient.email if patient is not None else "",
        )

    async def accept(self, token: str, identity_id: int) -> AccessRecord:
        record = await self._load_pending(token)
        identity = await self._get_identity(identity_id)
        if identity_id == record.patient_id:
            raise SelfInvitation("You cannot accept an invitation to your own account")

        for other in await self.records.find_for_pair(record.patient_id, identity_id):
            if not other.emergency_access and other.status in (
                AccessStatus.active,
                AccessStatus.suspended,
            ):
                raise DuplicateRelationship(access_id=other.id, status=other.status)

        now = self.clock()
        try:
            await self.records.update(
                record.id,
                {
                    "family_member_id": identity_id,
                    "family_member_name": record.family_member_name or identity.full_name,
                    "status": AccessStatus.active.value,
                    "accepted_at": now,
                    "invitation_token_hash": None,
                    "invitation_expires_at": None,
                    "accepted_token_hash": record.invitation_token_hash,
                },
                expected_status=AccessStatus.pending.value,
            )
        except ConcurrentModification:
            current = await self.records.get_by_id(record.id)
            if current is not None and current.status == AccessStatus.active:
                raise AlreadyAccepted(access_id=record.id)
            raise

        verified = await self.records.get_by_id(record.id)
        if (
            verified is None
            or verified.family_member_id != identity_id
            or verified.status != AccessStatus.active
        ):
            logger.error("Acceptance of %s did not persist as written", record.id)
            raise ConcurrentModification(
                "Invitation acceptance could not be verified",
                access_id=record.id,
            )

        await self.index.on_activated(verified)
        await self.records.commit()

        logger.info("Invitation %s accepted by identity %s", record.id, identity_id)
        await self.audit.record(
            AuditAction.invite_accepted,
            patient_id=verified.patient_id,
            actor_id=identity_id,
            access_id=verified.id,
        )
        patient = await self.identities.get(verified.patient_id)
        if patient is not None:
            await self._notify(
                f"acceptance of {verified.id}",
                lambda: self.notifier.send_status(
                    StatusEvent.accepted,
                    verified,
                    patient.email,
                    patient.full_name,
                    identity.full_name,
                ),
            )
        return verified

    async def decline(self, token: str, identity_id: int, reason: Optional[str] = None) -> AccessRecord:
        record = await self._load_pending(token)
        identity = await self._get_identity(identity_id)
        updated = await self.records.update(
            record.id,
            {
                "status": AccessStatus.revoked.value,
                "revoked_at": self.clock(),
                "revoked_by": identity_id,
                "revocation_reason": reason or "Invitation declined",
                "invitation_token_hash": None,
                "invitation_expires_at": None,
            },
            expected_status=AccessStatus.pending.value,
        )
        await self.records.commit()

        logger.info("Invitation %s declined by identity %s", record.id, identity_id)
        await self.audit.record(
            AuditAction.invite_declined,
            patient_id=updated.patient_id,
            actor_id=identity_id,
            access_id=updated.id,
            note=reason,
        )
        patient = await self.identities.get(updated.patient_id)
        if patient is not None:
            await self._notify(
                f"decline of {updated.id}",
                lambda: self.notifier.send_status(
                    StatusEvent.declined,
                    updated,
                    patient.email,
                    patient.full_name,
                    identity.full_name,
                ),
            )
        return updated

    async def resend(self, access_id: str, actor_id: int) -> IssuedInvitation:
        record = await self._get_record(access_id)
        await self._authorize_manager(actor_id, record.patient_id)
        if record.status != AccessStatus.pending:
            raise InvalidTransition(
                "Only pending invitations can be resent",
                access_id=access_id,
                status=record.status,
            )

        issued = generate_token(self.clock())
        updated = await self.records.update(
            access_id,
            {
                "invitation_token_hash": issued.token_hash,
                "invitation_expires_at": issued.expires_at,
            },
            expected_status=AccessStatus.pending.value,
        )
        await self.records.commit()

        logger.info("Invitation %s resent by %s", access_id, actor_id)
        await self.audit.record(
            AuditAction.invite_resent,
            patient_id=updated.patient_id,
            actor_id=actor_id,
            access_id=access_id,
        )
        patient_name = await self._patient_name(updated.patient_id)
        await self._notify(
            f"resent invitation {access_id}",
            lambda: self.notifier.send_invitation(updated, issued.token, patient_name),
        )
        return IssuedInvitation(record=updated, token=issued.token)

    async def pending_for(self, identity: Identity) -> list[AccessRecord]:
        """Unexpired invitations addressed to the identity's email."""
        return await self.records.find_pending_by_email(
            normalize_email(identity.email), self.clock()
        )

    # ----- changes to existing relationships -----

    async def update_permissions(
        self,
        access_id: str,
        actor_id: int,
        access_level: Optional[AccessLevel | str] = None,
        permissions: Optional[FlagOverrides] = None,
        event_types_allowed: Optional[list[str]] = None,
    ) -> AccessRecord:
        record = await self._get_record(access_id)
        manager_record = await self._authorize_manager(actor_id, record.patient_id)
        if record.status in TERMINAL_STATUSES or record.emergency_access:
            raise InvalidTransition(
                "Permissions of this record cannot be changed",
                access_id=access_id,
                status=record.status,
            )

        if access_level is not None:
            level = validate_assignable_level(access_level)
            base = preset_flags(level)
        else:
            level = AccessLevel(record.access_level)
            base = record.permission_flags()
        flags = merge_flags(base, permissions or {})

        if event_types_allowed is not None:
            event_types = validate_event_types(level, event_types_allowed)
        elif level == AccessLevel.limited:
            event_types = list(record.event_types_allowed or [])
        else:
            event_types = []

        before = record.permission_flags()
        if manager_record is not None:
            newly_granted = {key: True for key, value in flags.items() if value and not before[key]}
            ensure_within_delegation(newly_granted, manager_record.permission_flags())

        updated = await self.records.update(
            access_id,
            {**flags, "access_level": level.value, "event_types_allowed": event_types},
            expected_status=record.status,
        )
        await self.records.commit()

        changes = {key: flags[key] for key in flags if flags[key] != before[key]}
        logger.info("Permissions of %s changed by %s: %s", access_id, actor_id, changes)
        await self.audit.record(
            AuditAction.permissions_changed,
            patient_id=updated.patient_id,
            actor_id=actor_id,
            access_id=access_id,
            changes=changes,
            access_level=level.value,
            event_types_allowed=event_types,
        )
        return updated

    async def suspend(self, access_id: str, actor_id: int, reason: Optional[str] = None) -> AccessRecord:
        record = await self._get_record(access_id)
        await self._authorize_manager(actor_id, record.patient_id)
        if record.status == AccessStatus.suspended:
            return record
        if record.status != AccessStatus.active or record.emergency_access:
            raise InvalidTransition(
                "Only active relationships can be suspended",
                access_id=access_id,
                status=record.status,
            )

        updated = await self.records.update(
            access_id,
            {"status": AccessStatus.suspended.value},
            expected_status=AccessStatus.active.value,
        )
        await self.index.on_deactivated(updated)
        await self.records.commit()

        logger.info("Access %s suspended by %s", access_id, actor_id)
        await self.audit.record(
            AuditAction.access_suspended,
            patient_id=updated.patient_id,
            actor_id=actor_id,
            access_id=access_id,
            note=reason,
        )
        await self._notify_member(StatusEvent.suspended, updated)
        return updated

    async def reactivate(self, access_id: str, actor_id: int) -> AccessRecord:
        record = await self._get_record(access_id)
        await self._authorize_manager(actor_id, record.patient_id)
        if record.status == AccessStatus.active:
            return record
        if record.status != AccessStatus.suspended:
            raise InvalidTransition(
                "Only suspended relationships can be reactivated",
                access_id=access_id,
                status=record.status,
            )
        live = await self.records.find_by_patient_and_email(
            record.patient_id, record.family_member_email
        )
        if live:
            raise DuplicateRelationship(access_id=live[0].id, status=live[0].status)

        updated = await self.records.update(
            access_id,
            {"status": AccessStatus.active.value},
            expected_status=AccessStatus.suspended.value,
        )
        await self.index.on_activated(updated)
        await self.records.commit()

        logger.info("Access %s reactivated by %s", access_id, actor_id)
        await self.audit.record(
            AuditAction.access_reactivated,
            patient_id=updated.patient_id,
            actor_id=actor_id,
            access_id=access_id,
        )
        await self._notify_member(StatusEvent.reactivated, updated)
        return updated

    async def revoke(self, access_id: str, actor_id: int, reason: Optional[str] = None) -> AccessRecord:
        """Revoke a relationship. Revoking an already revoked record is a no-op."""
        record = await self._get_record(access_id)
        if actor_id != record.family_member_id:
            await self._authorize_manager(actor_id, record.patient_id)
        if record.status == AccessStatus.revoked:
            return record
        if record.status == AccessStatus.expired:
            raise InvalidTransition(
                "Expired relationships cannot be revoked",
                access_id=access_id,
                status=record.status,
            )

        prior_status = record.status
        try:
            updated = await self.records.update(
                access_id,
                {
                    "status": AccessStatus.revoked.value,
                    "revoked_at": self.clock(),
                    "revoked_by": actor_id,
                    "revocation_reason": reason,
                    "invitation_token_hash": None,
                    "invitation_expires_at": None,
                },
                expected_status=prior_status,
            )
        except ConcurrentModification:
            current = await self.records.get_by_id(access_id)
            if current is not None and current.status == AccessStatus.revoked:
                return current
            raise

        if prior_status == AccessStatus.active:
            await self.index.on_deactivated(updated)
        await self.records.commit()

        logger.info("Access %s revoked by %s (was %s)", access_id, actor_id, prior_status)
        await self.audit.record(
            AuditAction.access_revoked,
            patient_id=updated.patient_id,
            actor_id=actor_id,
            access_id=access_id,
            note=reason,
            previous_status=str(prior_status),
        )
        if actor_id != updated.family_member_id:
            await self._notify_member(StatusEvent.revoked, updated)
        return updated

    async def _notify_member(self, event: StatusEvent, record: AccessRecord) -> None:
        patient_name = await self._patient_name(record.patient_id)
        await self._notify(
            f"{event.value} for {record.id}",
            lambda: self.notifier.send_status(
                event,
                record,
                record.family_member_email,
                patient_name,
                record.family_member_name or record.family_member_email,
            ),
        )

    # ----- emergency access -----

    async def grant_emergency_access(
        self,
        patient_id: int,
        actor_id: int,
        member_id: int,
        duration_hours: Optional[int] = None,
    ) -> AccessRecord:
        hours = (
            settings.emergency_access_default_hours if duration_hours is None else duration_hours
        )
        if hours <= 0 or hours > settings.emergency_access_max_hours:
            raise ValidationError(
                "Emergency access duration out of range",
                duration_hours=hours,
                max_hours=settings.emergency_access_max_hours,
            )
        await self._get_identity(patient_id)
        manager_record = await self._authorize_manager(actor_id, patient_id)
        flags = preset_flags(AccessLevel.emergency_only)
        if manager_record is not None:
            held = manager_record.permission_flags()
            ensure_within_delegation({Capability.can_view.value: True}, held)
            flags = mask_flags(flags, held)
        if member_id == patient_id:
            raise SelfInvitation("Emergency access cannot be granted to yourself")
        member = await self._get_identity(member_id)

        now = self.clock()
        expires_at = now + timedelta(hours=hours)
        existing = next(
            (
                record
                for record in await self.records.find_for_pair(patient_id, member_id)
                if record.emergency_access and record.is_live(now)
            ),
            None,
        )
        if existing is not None:
            current_expiry = existing.emergency_access_expires_at or now
            record = await self.records.update(
                existing.id,
                {"emergency_access_expires_at": max(current_expiry, expires_at)},
                expected_status=AccessStatus.active.value,
            )
        else:
            record = await self.records.create(
                AccessRecord(
                    id=new_access_id(),
                    patient_id=patient_id,
                    family_member_id=member_id,
                    family_member_email=normalize_email(member.email),
                    family_member_name=member.full_name,
                    created_by=actor_id,
                    access_level=AccessLevel.emergency_only.value,
                    event_types_allowed=[],
                    emergency_access=True,
                    emergency_access_expires_at=expires_at,
                    invitation_token_hash=None,
                    invitation_expires_at=None,
                    accepted_token_hash=None,
                    status=AccessStatus.active.value,
                    invited_at=now,
                    accepted_at=now,
                    created_at=now,
                    updated_at=now,
                    **flags,
                )
            )
            await self.index.on_activated(record)
        await self.records.commit()

        logger.warning(
            "Emergency access %s for identity %s on patient %s until %s (granted by %s)",
            record.id,
            member_id,
            patient_id,
            record.emergency_access_expires_at.isoformat(),
            actor_id,
        )
        await self.audit.record(
            AuditAction.emergency_access_granted,
            patient_id=patient_id,
            actor_id=actor_id,
            access_id=record.id,
            member_id=member_id,
            duration_hours=hours,
            expires_at=record.emergency_access_expires_at.isoformat(),
            extended=existing is not None,
        )
        await self._notify_member(StatusEvent.emergency_granted, record)
        return record

    # ----- time-based transitions -----

    async def expire_stale(self) -> SweepResult:
        """Expire overdue invitations and emergency grants. Safe to re-run."""
        now = self.clock()
        result = SweepResult()
        expired: list[tuple[AccessRecord, AuditAction]] = []
        for record in await self.records.find_stale(now):
            is_invitation = record.status == AccessStatus.pending
            patch: dict[str, object] = {"status": AccessStatus.expired.value}
            if is_invitation:
                patch.update(
                    invitation_token_hash=None,
                    invitation_expires_at=None,
                    expired_token_hash=record.invitation_token_hash,
                )
            try:
                updated = await self.records.update(record.id, patch, expected_status=record.status)
            except (ConcurrentModification, RecordNotFound):
                logger.info("Record %s changed during sweep; skipped", record.id)
                continue
            if is_invitation:
                result.expired_invitations += 1
                expired.append((updated, AuditAction.invite_expired))
            else:
                await self.index.on_deactivated(updated)
                result.expired_emergency_grants += 1
                expired.append((updated, AuditAction.emergency_access_expired))
        await self.records.commit()

        for record, action in expired:
            await self.audit.record(
                action,
                patient_id=record.patient_id,
                actor_id=None,
                access_id=record.id,
            )
        if result.total:
            logger.info(
                "Expiry sweep: invitations=%s emergency_grants=%s",
                result.expired_invitations,
                result.expired_emergency_grants,
            )
        return result

    async def touch_last_access(self, access_id: str) -> bool:
        try:
            await self.records.update(access_id, {"last_access_at": self.clock()})
            await self.records.commit()
            return True
        except Exception:
            logger.warning("Could not record last access for %s", access_id, exc_info=True)
            return False

    # ----- queries -----

    async def list_for_patient(self, patient_id: int, actor_id: int) -> list[AccessRecord]:
        """All relationships of a patient: pending first, then newest invitation first."""
        await self._authorize_manager(actor_id, patient_id)
        return _pending_first(await self.records.find_by_patient(patient_id))

    async def list_for_member(self, member_id: int) -> list[AccessRecord]:
        return await self.records.find_active_by_member(member_id, self.clock())

    async def audit_trail(self, patient_id: int, actor_id: int, limit: int = 50):
        await self._authorize_manager(actor_id, patient_id)
        limit = max(1, min(limit, settings.audit_log_page_limit))
        return await self.audit.store.list_for_patient(patient_id, limit)
