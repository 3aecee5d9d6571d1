"""
Tests for RoleStore.

Every role change must land together with exactly one audit entry, stale
notifications must be discarded, and lost compare-and-set races retried.
"""

import pytest
from sqlalchemy.orm.exc import StaleDataError

from authz.constants.permissions import Role
from authz.models.role_audit_log import (
    SYSTEM_ACTOR_ID,
    RoleAuditLogEntry,
    RoleChangeSource,
)
from authz.models.role_record import RoleRecord
from authz.platform.errors import AppendOnlyViolationError
from authz.services.role_store import (
    MAX_WRITE_ATTEMPTS,
    ApplyStatus,
    Performer,
    RoleChange,
    RoleStore,
    RoleWriteConflictError,
)


@pytest.fixture
def store(db_session):
    return RoleStore(db_session)


def _audit_entries(session, identity_id):
    return (
        session.query(RoleAuditLogEntry)
        .filter(RoleAuditLogEntry.target_identity_id == identity_id)
        .all()
    )


class TestApplyChange:
    """Create / update / unchanged / stale."""

    def test_create_writes_record_and_audit(self, store, db_session):
        result = store.apply_change(
            RoleChange(
                identity_id="user_1",
                role=Role.STUDENT,
                tenant_id="univ_1",
                email="Student@Example.com",
                display_name="Sam Student",
                source_updated_at_ms=1000,
            ),
            source=RoleChangeSource.CLERK_WEBHOOK,
            reason="Synced from Clerk (user.created)",
        )

        assert result.status is ApplyStatus.CREATED
        record = store.get("user_1")
        assert record.role == "student"
        assert record.tenant_id == "univ_1"
        assert record.email == "student@example.com"
        assert record.source_updated_at == 1000

        entries = _audit_entries(db_session, "user_1")
        assert len(entries) == 1
        assert entries[0].old_role is None
        assert entries[0].new_role == "student"
        assert entries[0].source == "clerk_webhook"
        assert entries[0].performed_by_id == SYSTEM_ACTOR_ID
        assert entries[0].target_email == "student@example.com"

    def test_update_writes_one_audit_entry(self, store, db_session, seed_record):
        seed_record("user_1", "advisor", tenant_id="univ_1", source_updated_at=1000)
        admin = Performer(identity_id="admin_1", display_name="Founder")

        result = store.apply_change(
            RoleChange(identity_id="user_1", role=Role.STUDENT, tenant_id="univ_1"),
            source=RoleChangeSource.ADMIN_ACTION,
            performed_by=admin,
            reason="Demoted at request of university",
            enforce_ordering=False,
        )

        assert result.status is ApplyStatus.UPDATED
        assert result.old_role == "advisor"
        entries = _audit_entries(db_session, "user_1")
        assert len(entries) == 1
        assert entries[0].old_role == "advisor"
        assert entries[0].new_role == "student"
        assert entries[0].performed_by_id == "admin_1"
        assert entries[0].performed_by_name == "Founder"
        assert entries[0].reason == "Demoted at request of university"

    def test_tenant_change_is_audited(self, store, db_session, seed_record):
        seed_record("user_1", "student", tenant_id="univ_1")

        result = store.apply_change(
            RoleChange(identity_id="user_1", role=Role.STUDENT, tenant_id="univ_2"),
            source=RoleChangeSource.CLERK_WEBHOOK,
        )

        assert result.status is ApplyStatus.UPDATED
        entry = _audit_entries(db_session, "user_1")[0]
        assert entry.old_tenant_id == "univ_1"
        assert entry.new_tenant_id == "univ_2"

    def test_unchanged_writes_no_audit(self, store, db_session, seed_record):
        seed_record("user_1", "student", tenant_id="univ_1", source_updated_at=1000)

        result = store.apply_change(
            RoleChange(
                identity_id="user_1",
                role=Role.STUDENT,
                tenant_id="univ_1",
                display_name="Renamed",
                source_updated_at_ms=2000,
            ),
            source=RoleChangeSource.CLERK_WEBHOOK,
        )

        assert result.status is ApplyStatus.UNCHANGED
        assert not result.changed
        assert _audit_entries(db_session, "user_1") == []
        record = store.get("user_1")
        assert record.display_name == "Renamed"
        assert record.source_updated_at == 2000

    def test_stale_notification_discarded(self, store, db_session, seed_record):
        """An older update delivered late never overwrites newer state."""
        seed_record("user_1", "advisor", tenant_id="univ_1", source_updated_at=2000)

        result = store.apply_change(
            RoleChange(
                identity_id="user_1",
                role=Role.STUDENT,
                tenant_id="univ_1",
                source_updated_at_ms=1000,
            ),
            source=RoleChangeSource.CLERK_WEBHOOK,
        )

        assert result.status is ApplyStatus.STALE
        assert store.get("user_1").role == "advisor"
        assert _audit_entries(db_session, "user_1") == []

    def test_out_of_order_deliveries_converge_to_latest(self, store, seed_record):
        seed_record("user_1", "individual")
        newer = RoleChange(identity_id="user_1", role=Role.ADVISOR, tenant_id="univ_1", source_updated_at_ms=3000)
        older = RoleChange(identity_id="user_1", role=Role.STUDENT, tenant_id="univ_1", source_updated_at_ms=2000)

        store.apply_change(newer, source=RoleChangeSource.CLERK_WEBHOOK)
        store.apply_change(older, source=RoleChangeSource.CLERK_WEBHOOK)

        assert store.get("user_1").role == "advisor"

    def test_ordering_not_enforced_for_reconciliation(self, store, seed_record):
        seed_record("user_1", "advisor", tenant_id="univ_1", source_updated_at=2000)

        result = store.apply_change(
            RoleChange(identity_id="user_1", role=Role.STUDENT, tenant_id="univ_1", source_updated_at_ms=1000),
            source=RoleChangeSource.RECONCILIATION,
            enforce_ordering=False,
        )

        assert result.status is ApplyStatus.UPDATED

    def test_version_increments_on_write(self, store, seed_record):
        record = seed_record("user_1", "student", tenant_id="univ_1")
        assert record.version == 1

        store.apply_change(
            RoleChange(identity_id="user_1", role=Role.ADVISOR, tenant_id="univ_1"),
            source=RoleChangeSource.CLERK_WEBHOOK,
        )

        assert store.get("user_1").version == 2

    def test_get_by_email_case_insensitive(self, store, seed_record):
        seed_record("user_1", "student", email="sam@example.com")
        assert store.get_by_email(" Sam@Example.COM ").identity_id == "user_1"
        assert store.get_by_email("nobody@example.com") is None


class TestWriteConflicts:
    """Compare-and-set failures are retried as a unit."""

    def test_retries_after_stale_data(self, store, db_session, seed_record, monkeypatch):
        seed_record("user_1", "advisor", tenant_id="univ_1")
        real_commit = db_session.commit
        calls = {"n": 0}

        def flaky_commit():
            calls["n"] += 1
            if calls["n"] == 1:
                raise StaleDataError("simulated concurrent update")
            real_commit()

        monkeypatch.setattr(db_session, "commit", flaky_commit)

        result = store.apply_change(
            RoleChange(identity_id="user_1", role=Role.STUDENT, tenant_id="univ_1"),
            source=RoleChangeSource.CLERK_WEBHOOK,
        )

        assert result.status is ApplyStatus.UPDATED
        assert calls["n"] == 2
        assert len(_audit_entries(db_session, "user_1")) == 1

    def test_gives_up_after_max_attempts(self, store, db_session, seed_record, monkeypatch):
        seed_record("user_1", "advisor", tenant_id="univ_1")

        def always_stale():
            raise StaleDataError("simulated concurrent update")

        monkeypatch.setattr(db_session, "commit", always_stale)

        with pytest.raises(RoleWriteConflictError) as exc_info:
            store.apply_change(
                RoleChange(identity_id="user_1", role=Role.STUDENT, tenant_id="univ_1"),
                source=RoleChangeSource.CLERK_WEBHOOK,
            )

        assert exc_info.value.attempts == MAX_WRITE_ATTEMPTS
        monkeypatch.undo()
        db_session.expire_all()
        assert store.get("user_1").role == "advisor"
        assert _audit_entries(db_session, "user_1") == []


class TestSourcePushAndPending:
    """Audit of pushes to the identity provider and the pending flag."""

    def test_record_source_push(self, store, db_session, seed_record):
        seed_record("user_1", "advisor", tenant_id="univ_1")
        store.set_remediation_pending("user_1", True)

        entry = store.record_source_push(
            "user_1",
            "student",
            "univ_1",
            performed_by=Performer("admin_1", "Founder"),
            reason="reconciliation",
        )

        assert entry.old_role == "student"
        assert entry.new_role == "advisor"
        assert entry.source == "reconciliation"
        record = store.get("user_1")
        assert record.role == "advisor"
        assert record.remediation_pending is False

    def test_record_source_push_unknown_identity(self, store):
        assert store.record_source_push(
            "missing", "student", None, performed_by=Performer("admin_1"), reason="reconciliation",
        ) is None

    def test_set_remediation_pending(self, store, db_session, seed_record):
        seed_record("user_1", "advisor", tenant_id="univ_1")

        assert store.set_remediation_pending("user_1", True) is True
        assert [r.identity_id for r in store.list_pending_remediation()] == ["user_1"]
        assert store.set_remediation_pending("user_1", False) is True
        assert store.list_pending_remediation() == []
        assert store.set_remediation_pending("missing", True) is False
        assert _audit_entries(db_session, "user_1") == []


class TestAuditAppendOnly:
    """Audit rows cannot be changed through the ORM."""

    @pytest.mark.security
    def test_update_rejected(self, store, db_session):
        result = store.apply_change(
            RoleChange(identity_id="user_1", role=Role.STUDENT, tenant_id="univ_1"),
            source=RoleChangeSource.CLERK_WEBHOOK,
        )
        entry = result.audit_entry
        entry.new_role = "super_admin"

        with pytest.raises(AppendOnlyViolationError):
            db_session.commit()
        db_session.rollback()

        db_session.expire_all()
        assert db_session.get(RoleAuditLogEntry, entry.id).new_role == "student"

    @pytest.mark.security
    def test_delete_rejected(self, store, db_session):
        result = store.apply_change(
            RoleChange(identity_id="user_1", role=Role.STUDENT, tenant_id="univ_1"),
            source=RoleChangeSource.CLERK_WEBHOOK,
        )
        db_session.delete(result.audit_entry)

        with pytest.raises(AppendOnlyViolationError):
            db_session.commit()
        db_session.rollback()

        assert db_session.query(RoleAuditLogEntry).count() == 1
        assert db_session.query(RoleRecord).count() == 1
