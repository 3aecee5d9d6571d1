"""
Role Store - the only write path for RoleRecord.

Every mutation that changes an identity's role or tenant is written together
with exactly one RoleAuditLogEntry in the same transaction. If the commit
fails because another writer bumped the row version (StaleDataError) or
inserted the row first (IntegrityError), the whole unit (record + audit) is
re-read and retried.

Callers:
- ClerkWebhookHandler (source=clerk_webhook)
- ReconciliationEngine (source=reconciliation)
- RoleChangeService (source=admin_action)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from authz.constants.permissions import Role
from authz.models.role_audit_log import (
    SYSTEM_ACTOR_ID,
    SYSTEM_ACTOR_NAME,
    RoleAuditLogEntry,
    RoleChangeSource,
)
from authz.models.role_record import RoleRecord
from authz.services.role_audit_log import RoleAuditLog

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


class RoleStoreError(Exception):
    """Base exception for role store errors."""
    pass


class RoleWriteConflictError(RoleStoreError):
    """Concurrent writers kept winning; the change was not applied."""

    def __init__(self, identity_id: str, attempts: int):
        super().__init__(f"Write conflict for {identity_id} after {attempts} attempts")
        self.identity_id = identity_id
        self.attempts = attempts


class ApplyStatus(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    STALE = "stale"


@dataclass(frozen=True)
class RoleChange:
    """Desired role state for one identity."""
    identity_id: str
    role: Role
    tenant_id: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    # Identity provider updated_at (epoch ms) of the state being applied
    source_updated_at_ms: Optional[int] = None


@dataclass
class ApplyResult:
    """Outcome of RoleStore.apply_change()."""
    status: ApplyStatus
    record: Optional[RoleRecord]
    audit_entry: Optional[RoleAuditLogEntry] = None
    old_role: Optional[str] = None
    old_tenant_id: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.status in (ApplyStatus.CREATED, ApplyStatus.UPDATED)


@dataclass(frozen=True)
class Performer:
    """Who is responsible for a change, as recorded in the audit log."""
    identity_id: str
    display_name: Optional[str] = None


SYSTEM_PERFORMER = Performer(identity_id=SYSTEM_ACTOR_ID, display_name=SYSTEM_ACTOR_NAME)


class RoleStore:
    """
    Cached role records for identities.

    Reads are plain queries; writes go through apply_change() or
    record_source_push() so that the audit log can never be skipped.
    """

    def __init__(self, session: Session):
        self.session = session
        self.audit_log = RoleAuditLog(session)

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, identity_id: str) -> Optional[RoleRecord]:
        return self.session.query(RoleRecord).filter(
            RoleRecord.identity_id == identity_id
        ).first()

    def get_by_email(self, email: str) -> Optional[RoleRecord]:
        return self.session.query(RoleRecord).filter(
            RoleRecord.email == email.strip().lower()
        ).first()

    def list_pending_remediation(self) -> list[RoleRecord]:
        return (
            self.session.query(RoleRecord)
            .filter(RoleRecord.remediation_pending.is_(True))
            .order_by(RoleRecord.identity_id)
            .all()
        )

    def list_page(self, after_identity_id: Optional[str] = None, limit: int = 100) -> list[RoleRecord]:
        """One page of records ordered by identity id, starting after the given id."""
        query = self.session.query(RoleRecord)
        if after_identity_id is not None:
            query = query.filter(RoleRecord.identity_id > after_identity_id)
        return query.order_by(RoleRecord.identity_id).limit(limit).all()

    # =========================================================================
    # Writes
    # =========================================================================

    def apply_change(
        self,
        change: RoleChange,
        *,
        source: RoleChangeSource,
        performed_by: Performer = SYSTEM_PERFORMER,
        reason: Optional[str] = None,
        enforce_ordering: bool = True,
    ) -> ApplyResult:
        """
        Apply a desired role state to the cache.

        Args:
            change: Desired state
            source: Path producing the change (recorded in the audit entry)
            performed_by: Actor recorded in the audit entry
            reason: Free-text reason recorded in the audit entry
            enforce_ordering: Discard changes older than the cached state

        Returns:
            ApplyResult; STALE and UNCHANGED write no audit entry

        Raises:
            RoleWriteConflictError: If concurrent writers won every attempt
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                result = self._apply_once(
                    change,
                    source=source,
                    performed_by=performed_by,
                    reason=reason,
                    enforce_ordering=enforce_ordering,
                )
                self.session.commit()
            except (StaleDataError, IntegrityError) as e:
                self.session.rollback()
                logger.warning(
                    "role_store.write_conflict",
                    extra={
                        "identity_id": change.identity_id,
                        "attempt": attempt,
                        "error": type(e).__name__,
                    },
                )
                continue

            if result.changed:
                logger.info(
                    "Role record changed",
                    extra={
                        "identity_id": change.identity_id,
                        "status": result.status.value,
                        "old_role": result.old_role,
                        "new_role": change.role.value,
                        "source": source.value,
                        "performed_by": performed_by.identity_id,
                    },
                )
            elif result.status is ApplyStatus.STALE:
                logger.info(
                    "Discarded stale role change",
                    extra={
                        "identity_id": change.identity_id,
                        "change_updated_at": change.source_updated_at_ms,
                        "cached_updated_at": (
                            result.record.source_updated_at if result.record else None
                        ),
                        "source": source.value,
                    },
                )
            return result

        raise RoleWriteConflictError(change.identity_id, MAX_WRITE_ATTEMPTS)

    def _apply_once(
        self,
        change: RoleChange,
        *,
        source: RoleChangeSource,
        performed_by: Performer,
        reason: Optional[str],
        enforce_ordering: bool,
    ) -> ApplyResult:
        record = self.get(change.identity_id)
        email = change.email.strip().lower() if change.email else None

        if record is None:
            record = RoleRecord(
                identity_id=change.identity_id,
                email=email,
                display_name=change.display_name,
                role=change.role.value,
                tenant_id=change.tenant_id,
                source_updated_at=change.source_updated_at_ms,
                remediation_pending=False,
            )
            record.mark_synced()
            self.session.add(record)
            entry = self._append_audit(
                record, None, None, source=source, performed_by=performed_by, reason=reason,
            )
            return ApplyResult(ApplyStatus.CREATED, record, entry)

        if enforce_ordering and record.is_newer_than(change.source_updated_at_ms):
            return ApplyResult(
                ApplyStatus.STALE, record,
                old_role=record.role, old_tenant_id=record.tenant_id,
            )

        old_role = record.role
        old_tenant_id = record.tenant_id
        if email is not None:
            record.email = email
        if change.display_name is not None:
            record.display_name = change.display_name
        record.mark_synced(change.source_updated_at_ms)

        if old_role == change.role.value and old_tenant_id == change.tenant_id:
            return ApplyResult(
                ApplyStatus.UNCHANGED, record,
                old_role=old_role, old_tenant_id=old_tenant_id,
            )

        record.role = change.role.value
        record.tenant_id = change.tenant_id
        entry = self._append_audit(
            record, old_role, old_tenant_id,
            source=source, performed_by=performed_by, reason=reason,
        )
        return ApplyResult(
            ApplyStatus.UPDATED, record, entry,
            old_role=old_role, old_tenant_id=old_tenant_id,
        )

    def _append_audit(
        self,
        record: RoleRecord,
        old_role: Optional[str],
        old_tenant_id: Optional[str],
        *,
        source: RoleChangeSource,
        performed_by: Performer,
        reason: Optional[str],
    ) -> RoleAuditLogEntry:
        entry = self.audit_log.new_entry(
            target_identity_id=record.identity_id,
            target_name=record.display_name,
            target_email=record.email,
            old_role=old_role,
            new_role=record.role,
            old_tenant_id=old_tenant_id,
            new_tenant_id=record.tenant_id,
            performed_by_id=performed_by.identity_id,
            performed_by_name=performed_by.display_name,
            source=source,
            reason=reason,
        )
        self.session.add(entry)
        return entry

    def record_source_push(
        self,
        identity_id: str,
        source_role: Optional[str],
        source_tenant_id: Optional[str],
        *,
        performed_by: Performer,
        reason: str,
        source_updated_at_ms: Optional[int] = None,
    ) -> Optional[RoleAuditLogEntry]:
        """
        Record that the cached role was pushed to the identity provider.

        The cached role itself is unchanged; the audit entry describes the
        provider-side transition (old=source, new=cached). Clears the
        remediation_pending flag in the same transaction.
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            record = self.get(identity_id)
            if record is None:
                return None
            try:
                record.remediation_pending = False
                record.mark_synced(source_updated_at_ms)
                entry = self.audit_log.new_entry(
                    target_identity_id=record.identity_id,
                    target_name=record.display_name,
                    target_email=record.email,
                    old_role=source_role,
                    new_role=record.role,
                    old_tenant_id=source_tenant_id,
                    new_tenant_id=record.tenant_id,
                    performed_by_id=performed_by.identity_id,
                    performed_by_name=performed_by.display_name,
                    source=RoleChangeSource.RECONCILIATION,
                    reason=reason,
                )
                self.session.add(entry)
                self.session.commit()
                return entry
            except StaleDataError:
                self.session.rollback()
                logger.warning(
                    "role_store.write_conflict",
                    extra={"identity_id": identity_id, "attempt": attempt},
                )

        raise RoleWriteConflictError(identity_id, MAX_WRITE_ATTEMPTS)

    def set_remediation_pending(self, identity_id: str, pending: bool) -> bool:
        """
        Flag or unflag an identity as awaiting remediation.

        Not a role change, so no audit entry is written.

        Returns:
            True if the record exists
        """
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            record = self.get(identity_id)
            if record is None:
                return False
            if record.remediation_pending == pending:
                return True
            try:
                record.remediation_pending = pending
                self.session.commit()
                return True
            except StaleDataError:
                self.session.rollback()
                logger.warning(
                    "role_store.write_conflict",
                    extra={"identity_id": identity_id, "attempt": attempt},
                )

        raise RoleWriteConflictError(identity_id, MAX_WRITE_ATTEMPTS)
