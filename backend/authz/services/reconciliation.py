"""
Role reconciliation between Clerk (source of truth) and the role cache.

diagnose() compares Clerk's current claim to the cached RoleRecord.
remediate() repairs a mismatch in one of two directions:

- to_cache:  overwrite the RoleRecord from Clerk
- to_source: push the cached role to Clerk

sync_all() runs remediate() over every cached identity, or only those
flagged remediation_pending, pausing between batches for Clerk rate limits.

Remediations are serialized per identity. A second caller for the same
identity while one is in flight gets IN_PROGRESS immediately instead of
waiting; when the two callers asked for opposite directions the result is
flagged as a conflict. Different identities run fully in parallel.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy.orm import sessionmaker

from authz.constants.permissions import DEFAULT_ROLE, Role, try_parse_role
from authz.database.session import session_scope
from authz.models.base import ensure_utc
from authz.models.role_audit_log import RECONCILIATION_REASON, RoleChangeSource
from authz.models.role_record import RoleRecord
from authz.platform.errors import IdentityNotFoundError, IdentitySourceError
from authz.services.clerk_identity_source import ClerkIdentitySource, IdentityClaim
from authz.services.role_store import (
    Performer,
    RoleChange,
    RoleStore,
    SYSTEM_PERFORMER,
)

logger = logging.getLogger(__name__)


class RemediationDirection(str, Enum):
    TO_CACHE = "to_cache"
    TO_SOURCE = "to_source"


class Suggestion(str, Enum):
    NONE = "none"
    SYNC_TO_CACHE = "sync-to-cache"
    SYNC_TO_SOURCE = "sync-to-source"


class RemediationStatus(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"
    # Diagnostic workflow only: still running after the client timeout
    PENDING = "pending"


@dataclass
class Diagnosis:
    """Comparison of Clerk's claim and the cached record for one identity."""
    identity_id: str
    email: Optional[str]
    display_name: Optional[str]
    source_role: Optional[str]
    cached_role: Optional[str]
    source_tenant_id: Optional[str]
    cached_tenant_id: Optional[str]
    mismatch: bool
    suggestion: Suggestion
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    last_synced_at: Optional[datetime] = None
    remediation_pending: bool = False


@dataclass
class RemediationResult:
    identity_id: str
    direction: RemediationDirection
    status: RemediationStatus
    message: str
    in_flight_direction: Optional[RemediationDirection] = None
    conflict: bool = False

    @property
    def resolved(self) -> bool:
        return self.status in (RemediationStatus.APPLIED, RemediationStatus.NOOP)


# Bulk sync pacing: pause after every batch to stay under Clerk API rate limits
BULK_SYNC_BATCH_SIZE = 10
BULK_SYNC_PAUSE_SECONDS = 1.0
BULK_SYNC_PAGE_SIZE = 100


class BulkSyncAction(str, Enum):
    SYNCED = "synced"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class BulkSyncDetail:
    identity_id: str
    email: Optional[str]
    cached_role: Optional[str]
    source_role: Optional[str]
    action: BulkSyncAction
    message: str


@dataclass
class BulkSyncReport:
    """Outcome of sync_all(): counters plus one detail per identity."""
    direction: RemediationDirection
    dry_run: bool
    total: int = 0
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    details: list[BulkSyncDetail] = field(default_factory=list)

    def add(self, detail: BulkSyncDetail) -> None:
        self.details.append(detail)
        if detail.action is BulkSyncAction.SYNCED:
            self.synced += 1
        elif detail.action is BulkSyncAction.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1


def _claim_text(claim: IdentityClaim) -> Optional[str]:
    if claim.role is not None:
        return claim.role.value
    return str(claim.role_claim) if claim.role_claim is not None else None


def compare(claim: IdentityClaim, record: Optional[RoleRecord]) -> Diagnosis:
    """
    Build a Diagnosis from a source claim and the cached record.

    Pure; used by diagnose() and by remediate() to detect a no-op.
    """
    source_role = claim.role
    issues: list[str] = []
    suggestions: list[str] = []

    if record is None:
        issues.append(
            "Identity exists in Clerk but has no cached role record "
            "(webhook delivery may have failed)"
        )
    if claim.role_claim is None:
        issues.append("Clerk public_metadata has no role")
    elif source_role is None:
        issues.append(f"Clerk role claim {claim.role_claim!r} is not a recognized role")

    if record is not None and record.role_enum is None:
        issues.append(f"Cached role {record.role!r} is not a recognized role")

    if record is None:
        mismatch = True
    else:
        mismatch = (
            source_role is None
            or record.role != source_role.value
            or (record.tenant_id or None) != (claim.tenant_id or None)
        )
        if source_role is not None and record.role != source_role.value:
            issues.append(
                f"Role mismatch: Clerk has '{source_role.value}', cache has '{record.role}'"
            )
        elif source_role is not None and (record.tenant_id or None) != (claim.tenant_id or None):
            issues.append(
                f"University mismatch: Clerk has {claim.tenant_id!r}, "
                f"cache has {record.tenant_id!r}"
            )
        if record.remediation_pending:
            issues.append("A previous push to Clerk failed and is pending remediation")

    if not mismatch:
        suggestion = Suggestion.NONE
    elif source_role is None and record is not None and record.role_enum is not None:
        suggestion = Suggestion.SYNC_TO_SOURCE
        suggestions.append("Push the cached role to Clerk (sync-to-source)")
    else:
        suggestion = Suggestion.SYNC_TO_CACHE
        suggestions.append("Overwrite the cached role from Clerk (sync-to-cache)")
        if record is not None and record.role_enum is not None:
            suggestions.append(
                "If the cached role is the intended one, push it to Clerk instead (sync-to-source)"
            )
    if mismatch and record is None:
        suggestions.append("Check the Clerk webhook endpoint configuration")

    return Diagnosis(
        identity_id=claim.identity_id,
        email=claim.email or (record.email if record else None),
        display_name=claim.display_name or (record.display_name if record else None),
        source_role=_claim_text(claim),
        cached_role=record.role if record else None,
        source_tenant_id=claim.tenant_id,
        cached_tenant_id=record.tenant_id if record else None,
        mismatch=mismatch,
        suggestion=suggestion,
        issues=issues,
        suggestions=suggestions,
        last_synced_at=ensure_utc(record.last_synced_at) if record else None,
        remediation_pending=bool(record.remediation_pending) if record else False,
    )


class ReconciliationEngine:
    """
    Diagnose and repair role drift.

    Holds the per-identity lock registry, so one instance is shared by the
    whole process (created by the service container).
    """

    def __init__(self, session_factory: sessionmaker, identity_source: ClerkIdentitySource):
        self.session_factory = session_factory
        self.identity_source = identity_source
        self._locks: dict[str, asyncio.Lock] = {}
        self._in_flight: dict[str, RemediationDirection] = {}

    def _lock_for(self, identity_id: str) -> asyncio.Lock:
        lock = self._locks.get(identity_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity_id] = lock
        return lock

    def in_flight_direction(self, identity_id: str) -> Optional[RemediationDirection]:
        return self._in_flight.get(identity_id)

    async def resolve_identity(self, email: str) -> IdentityClaim:
        """
        Find an identity by email in Clerk, falling back to the cache.

        Raises:
            IdentityNotFoundError: If neither knows the email
        """
        claim = await self.identity_source.find_user_by_email(email)
        if claim is not None:
            return claim

        with session_scope(self.session_factory) as session:
            record = RoleStore(session).get_by_email(email)
            identity_id = record.identity_id if record else None
        if identity_id is None:
            raise IdentityNotFoundError(email)
        return await self.identity_source.fetch_user(identity_id)

    async def diagnose(self, identity_id: str) -> Diagnosis:
        claim = await self.identity_source.fetch_user(identity_id)
        with session_scope(self.session_factory) as session:
            diagnosis = compare(claim, RoleStore(session).get(identity_id))

        logger.info(
            "Role diagnosis",
            extra={
                "identity_id": identity_id,
                "mismatch": diagnosis.mismatch,
                "suggestion": diagnosis.suggestion.value,
                "source_role": diagnosis.source_role,
                "cached_role": diagnosis.cached_role,
            },
        )
        return diagnosis

    async def remediate(
        self,
        identity_id: str,
        direction: RemediationDirection,
        performed_by: Performer = SYSTEM_PERFORMER,
    ) -> RemediationResult:
        """
        Repair the identity in the given direction.

        Never raises for identity provider failures: a failed push is
        reported as FAILED and the record is flagged remediation_pending.

        Raises:
            IdentityNotFoundError: If Clerk has no such identity
        """
        lock = self._lock_for(identity_id)
        if lock.locked():
            in_flight = self._in_flight.get(identity_id)
            conflict = in_flight is not None and in_flight != direction
            logger.warning(
                "reconciliation.in_progress",
                extra={
                    "identity_id": identity_id,
                    "requested_direction": direction.value,
                    "in_flight_direction": in_flight.value if in_flight else None,
                    "conflict": conflict,
                },
            )
            message = "A remediation for this identity is already in progress"
            if conflict:
                message += f" in the opposite direction ({in_flight.value})"
            return RemediationResult(
                identity_id=identity_id,
                direction=direction,
                status=RemediationStatus.IN_PROGRESS,
                message=message,
                in_flight_direction=in_flight,
                conflict=conflict,
            )

        try:
            async with lock:
                self._in_flight[identity_id] = direction
                try:
                    if direction is RemediationDirection.TO_CACHE:
                        return await self._remediate_to_cache(identity_id, performed_by)
                    return await self._remediate_to_source(identity_id, performed_by)
                finally:
                    self._in_flight.pop(identity_id, None)
        finally:
            if not lock.locked():
                self._locks.pop(identity_id, None)

    async def _remediate_to_cache(
        self,
        identity_id: str,
        performed_by: Performer,
    ) -> RemediationResult:
        claim = await self.identity_source.fetch_user(identity_id)

        with session_scope(self.session_factory) as session:
            store = RoleStore(session)
            record = store.get(identity_id)
            if not compare(claim, record).mismatch:
                return RemediationResult(
                    identity_id=identity_id,
                    direction=RemediationDirection.TO_CACHE,
                    status=RemediationStatus.NOOP,
                    message="Already in sync",
                )

            role = claim.role
            if role is None:
                role = DEFAULT_ROLE
                logger.warning(
                    "reconciliation.source_role_missing",
                    extra={"identity_id": identity_id, "role_claim": repr(claim.role_claim)},
                )

            result = store.apply_change(
                RoleChange(
                    identity_id=identity_id,
                    role=role,
                    tenant_id=claim.tenant_id,
                    email=claim.email,
                    display_name=claim.display_name,
                    source_updated_at_ms=claim.updated_at_ms,
                ),
                source=RoleChangeSource.RECONCILIATION,
                performed_by=performed_by,
                reason=RECONCILIATION_REASON,
                enforce_ordering=False,
            )
            if result.record is not None and result.record.remediation_pending:
                store.set_remediation_pending(identity_id, False)

        logger.info(
            "reconciliation.applied",
            extra={
                "identity_id": identity_id,
                "direction": RemediationDirection.TO_CACHE.value,
                "old_role": result.old_role,
                "new_role": role.value,
                "performed_by": performed_by.identity_id,
            },
        )
        if not result.changed:
            return RemediationResult(
                identity_id=identity_id,
                direction=RemediationDirection.TO_CACHE,
                status=RemediationStatus.NOOP,
                message=f"Cached role already '{role.value}'",
            )
        return RemediationResult(
            identity_id=identity_id,
            direction=RemediationDirection.TO_CACHE,
            status=RemediationStatus.APPLIED,
            message=f"Cached role set to '{role.value}' from Clerk",
        )

    async def _remediate_to_source(
        self,
        identity_id: str,
        performed_by: Performer,
    ) -> RemediationResult:
        claim = await self.identity_source.fetch_user(identity_id)

        with session_scope(self.session_factory) as session:
            record = RoleStore(session).get(identity_id)
            if record is None:
                return RemediationResult(
                    identity_id=identity_id,
                    direction=RemediationDirection.TO_SOURCE,
                    status=RemediationStatus.FAILED,
                    message="No cached role record to push",
                )
            if not compare(claim, record).mismatch:
                return RemediationResult(
                    identity_id=identity_id,
                    direction=RemediationDirection.TO_SOURCE,
                    status=RemediationStatus.NOOP,
                    message="Already in sync",
                )
            cached_role: Optional[Role] = record.role_enum
            cached_tenant_id = record.tenant_id

        if cached_role is None:
            return RemediationResult(
                identity_id=identity_id,
                direction=RemediationDirection.TO_SOURCE,
                status=RemediationStatus.FAILED,
                message="Cached role is not a recognized role; sync from Clerk instead",
            )

        try:
            updated = await self.identity_source.push_role(identity_id, cached_role, cached_tenant_id)
        except (IdentitySourceError, IdentityNotFoundError) as e:
            with session_scope(self.session_factory) as session:
                RoleStore(session).set_remediation_pending(identity_id, True)
            logger.error(
                "reconciliation.remediate_failed",
                extra={
                    "identity_id": identity_id,
                    "direction": RemediationDirection.TO_SOURCE.value,
                    "error": str(e),
                },
            )
            return RemediationResult(
                identity_id=identity_id,
                direction=RemediationDirection.TO_SOURCE,
                status=RemediationStatus.FAILED,
                message="Could not update Clerk; the identity is flagged for remediation",
            )

        with session_scope(self.session_factory) as session:
            RoleStore(session).record_source_push(
                identity_id,
                source_role=_claim_text(claim),
                source_tenant_id=claim.tenant_id,
                performed_by=performed_by,
                reason=RECONCILIATION_REASON,
                source_updated_at_ms=updated.updated_at_ms,
            )

        logger.info(
            "reconciliation.applied",
            extra={
                "identity_id": identity_id,
                "direction": RemediationDirection.TO_SOURCE.value,
                "old_role": claim.role.value if claim.role else None,
                "new_role": cached_role.value,
                "performed_by": performed_by.identity_id,
            },
        )
        return RemediationResult(
            identity_id=identity_id,
            direction=RemediationDirection.TO_SOURCE,
            status=RemediationStatus.APPLIED,
            message=f"Clerk role set to '{cached_role.value}' from cache",
        )

    # =========================================================================
    # Bulk sync
    # =========================================================================

    def _load_sync_targets(self, pending_only: bool) -> list[tuple[str, Optional[str], str]]:
        """(identity_id, email, cached role) for every record to visit, paged by id."""
        with session_scope(self.session_factory) as session:
            store = RoleStore(session)
            if pending_only:
                return [(r.identity_id, r.email, r.role) for r in store.list_pending_remediation()]

            targets: list[tuple[str, Optional[str], str]] = []
            last_id: Optional[str] = None
            while True:
                page = store.list_page(after_identity_id=last_id, limit=BULK_SYNC_PAGE_SIZE)
                if not page:
                    return targets
                targets.extend((r.identity_id, r.email, r.role) for r in page)
                last_id = page[-1].identity_id

    async def _sync_one(
        self,
        identity_id: str,
        email: Optional[str],
        cached_role: str,
        direction: RemediationDirection,
        dry_run: bool,
        performed_by: Performer,
    ) -> BulkSyncDetail:
        def detail(action: BulkSyncAction, message: str, source_role: Optional[str] = None) -> BulkSyncDetail:
            return BulkSyncDetail(
                identity_id=identity_id,
                email=email,
                cached_role=cached_role,
                source_role=source_role,
                action=action,
                message=message,
            )

        if direction is RemediationDirection.TO_SOURCE and try_parse_role(cached_role) is None:
            logger.error(
                "reconciliation.bulk_invalid_cached_role",
                extra={"identity_id": identity_id, "cached_role": cached_role},
            )
            return detail(
                BulkSyncAction.ERROR,
                f"Invalid cached role {cached_role!r}; skipped to avoid pushing bad data to Clerk",
            )

        try:
            diagnosis = await self.diagnose(identity_id)
        except IdentityNotFoundError:
            return detail(BulkSyncAction.ERROR, "Identity not found in Clerk")
        except IdentitySourceError as e:
            return detail(BulkSyncAction.ERROR, f"Clerk API error: {e.message}")

        source_role = diagnosis.source_role
        if not diagnosis.mismatch:
            if diagnosis.remediation_pending and not dry_run:
                with session_scope(self.session_factory) as session:
                    RoleStore(session).set_remediation_pending(identity_id, False)
                return detail(BulkSyncAction.SKIPPED, "Already in sync; pending flag cleared", source_role)
            return detail(BulkSyncAction.SKIPPED, "Already in sync", source_role)

        if direction is RemediationDirection.TO_SOURCE:
            change = f"{source_role or 'none'} -> {cached_role}"
        else:
            change = f"{cached_role} -> {source_role or DEFAULT_ROLE.value}"
        if dry_run:
            return detail(BulkSyncAction.SYNCED, f"Would sync: {change} (dry run)", source_role)

        try:
            result = await self.remediate(identity_id, direction, performed_by)
        except IdentityNotFoundError:
            return detail(BulkSyncAction.ERROR, "Identity not found in Clerk", source_role)
        except IdentitySourceError as e:
            return detail(BulkSyncAction.ERROR, f"Clerk API error: {e.message}", source_role)

        if result.status is RemediationStatus.APPLIED:
            return detail(BulkSyncAction.SYNCED, f"Synced: {change}", source_role)
        if result.status is RemediationStatus.NOOP:
            return detail(BulkSyncAction.SKIPPED, result.message, source_role)
        return detail(BulkSyncAction.ERROR, result.message, source_role)

    async def sync_all(
        self,
        direction: RemediationDirection = RemediationDirection.TO_SOURCE,
        *,
        dry_run: bool = False,
        pending_only: bool = False,
        performed_by: Performer = SYSTEM_PERFORMER,
        batch_size: int = BULK_SYNC_BATCH_SIZE,
        pause_seconds: float = BULK_SYNC_PAUSE_SECONDS,
    ) -> BulkSyncReport:
        """
        Reconcile every cached identity (or only those flagged
        remediation_pending) in one direction.

        Each identity goes through remediate(), so per-identity locking and
        audit entries are the same as for a single remediation. With dry_run
        nothing is written; the report says what would change.

        Never raises for a single identity's failure; it is counted as an
        error in the report and the run continues.
        """
        targets = self._load_sync_targets(pending_only)
        report = BulkSyncReport(direction=direction, dry_run=dry_run, total=len(targets))
        logger.info(
            "reconciliation.bulk_started",
            extra={
                "direction": direction.value,
                "dry_run": dry_run,
                "pending_only": pending_only,
                "total": report.total,
                "performed_by": performed_by.identity_id,
            },
        )

        for index, (identity_id, email, cached_role) in enumerate(targets, start=1):
            report.add(
                await self._sync_one(identity_id, email, cached_role, direction, dry_run, performed_by)
            )
            if index % batch_size == 0 and index < report.total:
                logger.info(
                    "reconciliation.bulk_progress",
                    extra={
                        "processed": index,
                        "total": report.total,
                        "synced": report.synced,
                        "skipped": report.skipped,
                        "errors": report.errors,
                    },
                )
                await asyncio.sleep(pause_seconds)

        logger.info(
            "reconciliation.bulk_finished",
            extra={
                "direction": direction.value,
                "dry_run": dry_run,
                "total": report.total,
                "synced": report.synced,
                "skipped": report.skipped,
                "errors": report.errors,
            },
        )
        return report
