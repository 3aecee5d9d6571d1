"""
Role audit log service.

Write path: RoleStore builds entries with new_entry() and adds them in the
same transaction as the RoleRecord change. Nothing else writes this table.

Read path: filtered, paginated listing (newest first) and CSV export for
compliance reviews.

Usage:
    audit = RoleAuditLog(db)
    page = audit.list_entries(AuditFilters(identity_id="user_123"), page=1, page_size=50)
    csv_text = "".join(audit.export_csv(AuditFilters()))
"""

import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterator, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Query, Session

from authz.models.base import ensure_utc
from authz.models.role_audit_log import RoleAuditLogEntry, RoleChangeSource

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

EXPORT_BATCH_SIZE = 500

CSV_HEADERS = ["Timestamp", "User", "Email", "Old Role", "New Role", "Changed By", "Reason"]
CSV_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class AuditFilters:
    """Filters for reading the role audit log. All are optional and ANDed."""
    identity_id: Optional[str] = None
    performed_by: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class AuditPage:
    """One page of audit entries."""
    entries: list[RoleAuditLogEntry] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


def sanitize_csv_cell(value: Optional[object]) -> str:
    """Render a cell as a single line; None becomes an empty string."""
    if value is None:
        return ""
    text = str(value)
    return text.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")


def export_filename(on: Optional[date] = None) -> str:
    """Download filename for a CSV export, e.g. role-history-2026-01-31.csv."""
    on = on or date.today()
    return f"role-history-{on.isoformat()}.csv"


class RoleAuditLog:
    """Read access to role change history, plus entry construction for RoleStore."""

    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def new_entry(
        *,
        target_identity_id: str,
        new_role: str,
        performed_by_id: str,
        source: RoleChangeSource,
        target_name: Optional[str] = None,
        target_email: Optional[str] = None,
        old_role: Optional[str] = None,
        old_tenant_id: Optional[str] = None,
        new_tenant_id: Optional[str] = None,
        performed_by_name: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> RoleAuditLogEntry:
        """
        Build an unsaved entry.

        The caller adds it to the session that carries the matching
        RoleRecord change so both commit or neither does.
        """
        return RoleAuditLogEntry(
            target_identity_id=target_identity_id,
            target_name=target_name,
            target_email=target_email,
            old_role=old_role,
            new_role=new_role,
            old_tenant_id=old_tenant_id,
            new_tenant_id=new_tenant_id,
            performed_by_id=performed_by_id,
            performed_by_name=performed_by_name,
            source=source.value,
            reason=reason,
        )

    def _filtered(self, query: Query, filters: AuditFilters) -> Query:
        if filters.identity_id:
            query = query.filter(RoleAuditLogEntry.target_identity_id == filters.identity_id)
        if filters.performed_by:
            query = query.filter(RoleAuditLogEntry.performed_by_id == filters.performed_by)
        if filters.start:
            query = query.filter(RoleAuditLogEntry.timestamp >= filters.start)
        if filters.end:
            query = query.filter(RoleAuditLogEntry.timestamp <= filters.end)
        return query

    def count(self, filters: AuditFilters) -> int:
        query = self._filtered(
            self.session.query(func.count(RoleAuditLogEntry.id)), filters
        )
        return query.scalar() or 0

    def list_entries(
        self,
        filters: AuditFilters,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """
        List entries newest first.

        Args:
            filters: Identity / performer / time range filters
            page: 1-based page number
            page_size: Entries per page (clamped to MAX_PAGE_SIZE)
        """
        page = max(page, 1)
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

        query = self._filtered(self.session.query(RoleAuditLogEntry), filters)
        entries = (
            query.order_by(RoleAuditLogEntry.timestamp.desc(), RoleAuditLogEntry.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return AuditPage(
            entries=entries,
            total=self.count(filters),
            page=page,
            page_size=page_size,
        )

    def export_csv(self, filters: AuditFilters) -> Iterator[str]:
        """
        Stream matching entries as CSV text, newest first.

        Every cell is quoted, embedded quotes are doubled and line breaks in
        free-text fields are collapsed to spaces.
        """
        output = io.StringIO()
        writer = csv.writer(output, quoting=csv.QUOTE_ALL, lineterminator="\n")

        def flush() -> str:
            chunk = output.getvalue()
            output.seek(0)
            output.truncate(0)
            return chunk

        writer.writerow(CSV_HEADERS)
        yield flush()

        query = self._filtered(self.session.query(RoleAuditLogEntry), filters).order_by(
            RoleAuditLogEntry.timestamp.desc(), RoleAuditLogEntry.id.desc()
        )
        exported = 0
        last: Optional[tuple[datetime, str]] = None
        while True:
            batch_query = query
            if last is not None:
                # Keyset cursor: entries appended mid-export sort before it
                batch_query = batch_query.filter(
                    or_(
                        RoleAuditLogEntry.timestamp < last[0],
                        and_(
                            RoleAuditLogEntry.timestamp == last[0],
                            RoleAuditLogEntry.id < last[1],
                        ),
                    )
                )
            batch = batch_query.limit(EXPORT_BATCH_SIZE).all()
            if not batch:
                break
            for entry in batch:
                writer.writerow(self._csv_row(entry))
            exported += len(batch)
            last = (batch[-1].timestamp, batch[-1].id)
            yield flush()

        logger.info(
            "Role audit log exported",
            extra={
                "rows": exported,
                "identity_id": filters.identity_id,
                "performed_by": filters.performed_by,
            },
        )

    @staticmethod
    def _csv_row(entry: RoleAuditLogEntry) -> list[str]:
        timestamp = ensure_utc(entry.timestamp)
        return [
            sanitize_csv_cell(
                timestamp.strftime(CSV_TIMESTAMP_FORMAT) if timestamp else None
            ),
            sanitize_csv_cell(entry.target_name),
            sanitize_csv_cell(entry.target_email),
            sanitize_csv_cell(entry.old_role),
            sanitize_csv_cell(entry.new_role),
            sanitize_csv_cell(entry.performed_by_name),
            sanitize_csv_cell(entry.reason),
        ]
