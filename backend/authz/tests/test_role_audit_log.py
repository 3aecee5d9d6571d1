"""
Tests for role audit log reads and CSV export.
"""

import csv
import io
from datetime import date, datetime, timedelta, timezone

import pytest

from authz.models.role_audit_log import RoleChangeSource
from authz.services import role_audit_log as audit_module
from authz.services.role_audit_log import (
    CSV_HEADERS,
    MAX_PAGE_SIZE,
    AuditFilters,
    RoleAuditLog,
    export_filename,
    sanitize_csv_cell,
)

BASE_TIME = datetime(2026, 3, 1, 9, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def audit(db_session):
    return RoleAuditLog(db_session)


@pytest.fixture
def add_entry(db_session):
    """Insert an audit entry at BASE_TIME + minutes."""

    def _add(
        minutes: int,
        target: str = "user_1",
        performer: str = "admin_1",
        old_role="student",
        new_role="advisor",
        reason=None,
        name="Sam Student",
        email="sam@example.com",
    ):
        entry = RoleAuditLog.new_entry(
            target_identity_id=target,
            target_name=name,
            target_email=email,
            old_role=old_role,
            new_role=new_role,
            performed_by_id=performer,
            performed_by_name="Founder" if performer == "admin_1" else "System",
            source=RoleChangeSource.ADMIN_ACTION,
            reason=reason,
        )
        entry.timestamp = BASE_TIME + timedelta(minutes=minutes)
        db_session.add(entry)
        db_session.commit()
        return entry

    return _add


def _parse(chunks) -> list[list[str]]:
    return list(csv.reader(io.StringIO("".join(chunks))))


class TestListEntries:
    """Filtering and pagination."""

    def test_newest_first(self, audit, add_entry):
        add_entry(0, new_role="advisor")
        add_entry(10, new_role="university_admin")
        add_entry(5, new_role="student")

        page = audit.list_entries(AuditFilters())

        assert [e.new_role for e in page.entries] == ["university_admin", "student", "advisor"]
        assert page.total == 3
        assert page.has_more is False

    def test_filter_by_identity_and_performer(self, audit, add_entry):
        add_entry(0, target="user_1", performer="admin_1")
        add_entry(1, target="user_2", performer="admin_1")
        add_entry(2, target="user_1", performer="system")

        assert audit.list_entries(AuditFilters(identity_id="user_1")).total == 2
        assert audit.list_entries(AuditFilters(performed_by="admin_1")).total == 2
        both = audit.list_entries(AuditFilters(identity_id="user_1", performed_by="system"))
        assert both.total == 1
        assert both.entries[0].performed_by_id == "system"

    def test_filter_by_time_range_inclusive(self, audit, add_entry):
        for minutes in (0, 10, 20, 30):
            add_entry(minutes)

        page = audit.list_entries(
            AuditFilters(start=BASE_TIME + timedelta(minutes=10), end=BASE_TIME + timedelta(minutes=20))
        )

        assert page.total == 2

    def test_pagination(self, audit, add_entry):
        for minutes in range(5):
            add_entry(minutes, reason=f"change {minutes}")

        first = audit.list_entries(AuditFilters(), page=1, page_size=2)
        last = audit.list_entries(AuditFilters(), page=3, page_size=2)

        assert [e.reason for e in first.entries] == ["change 4", "change 3"]
        assert first.has_more is True
        assert [e.reason for e in last.entries] == ["change 0"]
        assert last.has_more is False

    def test_page_size_clamped(self, audit):
        page = audit.list_entries(AuditFilters(), page=0, page_size=10_000)
        assert page.page == 1
        assert page.page_size == MAX_PAGE_SIZE


class TestExportCsv:
    """CSV export format."""

    def test_header_only_when_empty(self, audit):
        rows = _parse(audit.export_csv(AuditFilters()))
        assert rows == [CSV_HEADERS]

    def test_rows_newest_first_with_timestamp_format(self, audit, add_entry):
        add_entry(0, old_role=None, new_role="student")
        add_entry(1, old_role="student", new_role="advisor", reason="Promoted")

        rows = _parse(audit.export_csv(AuditFilters()))

        assert rows[0] == CSV_HEADERS
        assert rows[1] == [
            "2026-03-01 09:31:00", "Sam Student", "sam@example.com",
            "student", "advisor", "Founder", "Promoted",
        ]
        assert rows[2][3] == ""
        assert rows[2][4] == "student"

    def test_every_cell_quoted(self, audit, add_entry):
        add_entry(0)
        text = "".join(audit.export_csv(AuditFilters()))
        first_line = text.splitlines()[0]
        assert first_line == ",".join(f'"{h}"' for h in CSV_HEADERS)

    def test_quotes_commas_and_newlines(self, audit, add_entry):
        add_entry(0, name='Dana "DJ" Jones', reason="Line one,\r\nline two\nline three")

        text = "".join(audit.export_csv(AuditFilters()))
        rows = _parse([text])

        assert len(text.strip().split("\n")) == 2
        assert rows[1][1] == 'Dana "DJ" Jones'
        assert '"Dana ""DJ"" Jones"' in text
        assert rows[1][6] == "Line one, line two line three"

    def test_export_respects_filters(self, audit, add_entry):
        add_entry(0, target="user_1")
        add_entry(1, target="user_2")

        rows = _parse(audit.export_csv(AuditFilters(identity_id="user_2")))

        assert len(rows) == 2

    def test_export_in_batches(self, audit, add_entry, monkeypatch):
        monkeypatch.setattr(audit_module, "EXPORT_BATCH_SIZE", 2)
        for minutes in range(5):
            add_entry(minutes)

        chunks = list(audit.export_csv(AuditFilters()))

        # header + three batches
        assert len(chunks) == 4
        assert len(_parse(chunks)) == 6

    def test_entry_appended_mid_export_not_duplicated(self, audit, add_entry, monkeypatch):
        monkeypatch.setattr(audit_module, "EXPORT_BATCH_SIZE", 2)
        for minutes in range(4):
            add_entry(minutes, target=f"user_{minutes}", name=f"User {minutes}")

        stream = audit.export_csv(AuditFilters())
        chunks = [next(stream), next(stream)]
        add_entry(10, target="user_new", name="User new")
        chunks.extend(stream)

        names = [row[1] for row in _parse(chunks)[1:]]
        assert names == ["User 3", "User 2", "User 1", "User 0"]

    def test_same_timestamp_entries_span_batches(self, audit, add_entry, monkeypatch):
        monkeypatch.setattr(audit_module, "EXPORT_BATCH_SIZE", 2)
        for n in range(3):
            add_entry(0, target=f"user_{n}", name=f"User {n}")

        names = [row[1] for row in _parse(audit.export_csv(AuditFilters()))[1:]]

        assert sorted(names) == ["User 0", "User 1", "User 2"]


class TestCsvHelpers:
    def test_sanitize(self):
        assert sanitize_csv_cell(None) == ""
        assert sanitize_csv_cell("a\r\nb\rc\nd") == "a b c d"
        assert sanitize_csv_cell(3) == "3"

    def test_export_filename(self):
        assert export_filename(date(2026, 1, 31)) == "role-history-2026-01-31.csv"
        assert export_filename().startswith("role-history-")
