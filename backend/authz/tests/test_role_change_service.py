"""
Tests for admin role changes and role transition rules.
"""

import pytest

from authz.auth.actor import ActorContext
from authz.constants.permissions import Plan, Role
from authz.models.base import utc_now
from authz.models.role_audit_log import RoleAuditLogEntry
from authz.models.role_record import RoleRecord
from authz.platform.errors import (
    IdentitySourceError,
    InvalidRoleError,
    PermissionDeniedError,
    RoleTransitionError,
)
from authz.services.impersonation import ImpersonationSession
from authz.services.role_change_service import RoleChangeService
from authz.services.role_store import ApplyStatus
from authz.services.role_validation import validate_role_transition


@pytest.fixture
def admin():
    return ActorContext(
        identity_id="admin_1",
        role=Role.SUPER_ADMIN,
        session_id="sess_admin",
        email="founder@example.com",
        display_name="Founder",
    )


@pytest.fixture
def service(db_session, identity_source):
    return RoleChangeService(db_session, identity_source)


class TestValidateRoleTransition:
    """Transition rules."""

    @pytest.mark.parametrize("role", [Role.STUDENT, Role.ADVISOR, Role.UNIVERSITY_ADMIN])
    def test_university_role_requires_university(self, role):
        result = validate_role_transition(Role.INDIVIDUAL, role, None)
        assert not result.valid
        assert "requires a university affiliation" in result.error

    def test_super_admin_cannot_be_demoted(self):
        result = validate_role_transition(Role.SUPER_ADMIN, Role.STAFF, None)
        assert not result.valid
        assert "super_admin" in result.error

    def test_super_admin_unchanged_is_valid(self):
        assert validate_role_transition(Role.SUPER_ADMIN, Role.SUPER_ADMIN, None).valid

    def test_individual_with_university_warns(self):
        result = validate_role_transition(Role.STUDENT, Role.INDIVIDUAL, "univ_1")
        assert result.valid
        assert any("should not be affiliated" in w for w in result.warnings)
        assert "Remove university_id if transitioning to individual role" in result.required_actions

    def test_leaving_student(self):
        result = validate_role_transition(Role.STUDENT, Role.INDIVIDUAL, None)
        assert result.warnings == []
        assert result.required_actions == [
            "Student profile data will be preserved but user loses university access"
        ]

    def test_becoming_student(self):
        result = validate_role_transition(Role.INDIVIDUAL, Role.STUDENT, "univ_1")
        assert "Student profile will be created if it doesn't exist" in result.required_actions

    def test_losing_university_staff_role(self):
        result = validate_role_transition(Role.ADVISOR, Role.INDIVIDUAL, None)
        assert "University admin privileges will be revoked" in result.warnings

    def test_advisor_promoted_to_university_admin(self):
        result = validate_role_transition(Role.ADVISOR, Role.UNIVERSITY_ADMIN, "univ_1")
        assert result.valid
        assert result.warnings == []


class TestChangeRole:
    """RoleChangeService.change_role."""

    @pytest.mark.asyncio
    async def test_change_pushes_then_caches(self, service, admin, fake_clerk, seed_record, db_session):
        fake_clerk.add_user("user_1", "sam@example.com", role="student", university_id="univ_1")
        seed_record("user_1", "student", tenant_id="univ_1", email="sam@example.com")

        result = await service.change_role(admin, "user_1", "advisor", "univ_1", reason="Hired as advisor")

        assert result.status is ApplyStatus.UPDATED
        assert result.old_role == "student"
        assert result.new_role == "advisor"
        assert fake_clerk.role_of("user_1") == "advisor"
        assert db_session.get(RoleRecord, "user_1").role == "advisor"

        entry = db_session.query(RoleAuditLogEntry).one()
        assert entry.source == "admin_action"
        assert entry.performed_by_id == "admin_1"
        assert entry.performed_by_name == "Founder"
        assert entry.reason == "Hired as advisor"

    @pytest.mark.asyncio
    async def test_identity_without_cached_record(self, service, admin, fake_clerk, db_session):
        fake_clerk.add_user("user_1", "sam@example.com", role="student", university_id="univ_1")

        result = await service.change_role(admin, "user_1", "university_admin", "univ_1")

        assert result.old_role == "student"
        assert result.status is ApplyStatus.CREATED
        assert db_session.get(RoleRecord, "user_1").role == "university_admin"

    @pytest.mark.asyncio
    @pytest.mark.security
    async def test_non_admin_denied(self, service, fake_clerk):
        fake_clerk.add_user("user_1", "sam@example.com", role="student", university_id="univ_1")
        actor = ActorContext(identity_id="ua_1", role=Role.UNIVERSITY_ADMIN, tenant_id="univ_1")

        with pytest.raises(PermissionDeniedError):
            await service.change_role(actor, "user_1", "advisor", "univ_1")

        assert fake_clerk.count("PATCH") == 0

    @pytest.mark.asyncio
    @pytest.mark.security
    async def test_impersonating_admin_denied(self, service, admin, fake_clerk):
        """Checked against the effective role: viewing as a student cannot change roles."""
        fake_clerk.add_user("user_1", "sam@example.com", role="student", university_id="univ_1")
        overlay = ImpersonationSession(
            session_id="sess_admin",
            base_identity_id="admin_1",
            assumed_role=Role.STUDENT,
            assumed_tenant_id="univ_1",
            assumed_plan=Plan.UNIVERSITY,
            started_at=utc_now(),
            ttl_seconds=3600,
        )

        with pytest.raises(PermissionDeniedError):
            await service.change_role(admin.with_impersonation(overlay), "user_1", "advisor", "univ_1")

    @pytest.mark.asyncio
    async def test_invalid_role(self, service, admin):
        with pytest.raises(InvalidRoleError):
            await service.change_role(admin, "user_1", "owner")

    @pytest.mark.asyncio
    async def test_invalid_transition_not_pushed(self, service, admin, fake_clerk, seed_record):
        fake_clerk.add_user("user_1", "sam@example.com", role="individual")
        seed_record("user_1", "individual")

        with pytest.raises(RoleTransitionError):
            await service.change_role(admin, "user_1", "student", None)

        assert fake_clerk.count("PATCH") == 0

    @pytest.mark.asyncio
    async def test_push_failure_leaves_cache_untouched(self, service, admin, fake_clerk, seed_record, db_session):
        fake_clerk.add_user("user_1", "sam@example.com", role="student", university_id="univ_1")
        seed_record("user_1", "student", tenant_id="univ_1")
        fake_clerk.fail_next("PATCH", 422)

        with pytest.raises(IdentitySourceError):
            await service.change_role(admin, "user_1", "advisor", "univ_1")

        db_session.expire_all()
        assert db_session.get(RoleRecord, "user_1").role == "student"
        assert db_session.query(RoleAuditLogEntry).count() == 0

    @pytest.mark.asyncio
    async def test_warnings_returned(self, service, admin, fake_clerk, seed_record):
        fake_clerk.add_user("user_1", "sam@example.com", role="advisor", university_id="univ_1")
        seed_record("user_1", "advisor", tenant_id="univ_1")

        result = await service.change_role(admin, "user_1", "individual", None)

        assert "University admin privileges will be revoked" in result.warnings
        assert "university_id" not in fake_clerk.users["user_1"]["public_metadata"]
