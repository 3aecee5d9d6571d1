"""
RBAC evaluator tests.

CRITICAL: These tests verify that the single evaluator fails closed.
UI gating reads resolve_permission_map(), which is computed by the same
evaluator, so a regression here is a regression everywhere.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from authz.auth.actor import ActorContext
from authz.constants.permissions import (
    PERMISSION_MATRIX,
    Permission,
    PermissionScope,
    Plan,
    Role,
)
from authz.platform.rbac import (
    DecisionReason,
    check_permission,
    evaluate,
    evaluate_for_actor,
    resolve_permission_map,
)
from authz.services.impersonation import ImpersonationSession
from authz.models.base import utc_now


# ============================================================================
# EVALUATE
# ============================================================================

class TestEvaluate:
    """Core decision table."""

    def test_advisor_cannot_manage_students_in_own_university(self):
        """Advisor role is not in the rule for university.students.manage."""
        assert evaluate(
            Permission.UNIVERSITY_STUDENTS_MANAGE,
            actor_role="advisor",
            actor_id="user_1",
            actor_tenant_id="univ_1",
            resource_tenant_id="univ_1",
        ) is False

    def test_university_admin_manages_students_in_own_university(self):
        assert evaluate(
            Permission.UNIVERSITY_STUDENTS_MANAGE,
            actor_role="university_admin",
            actor_id="user_1",
            actor_tenant_id="univ_1",
            resource_tenant_id="univ_1",
        ) is True

    def test_tenant_mismatch_denied(self):
        decision = check_permission(
            Permission.UNIVERSITY_STUDENTS_VIEW,
            actor_role=Role.ADVISOR,
            actor_id="user_1",
            actor_tenant_id="univ_1",
            resource_tenant_id="univ_2",
        )
        assert not decision.allowed
        assert decision.reason is DecisionReason.TENANT_MISMATCH

    def test_tenant_scope_without_resource_context_allowed(self):
        """Role-level check passes when no resource tenant is given."""
        assert evaluate(
            Permission.UNIVERSITY_STUDENTS_VIEW,
            actor_role=Role.ADVISOR,
            actor_id="user_1",
            actor_tenant_id="univ_1",
        )

    def test_actor_without_tenant_denied_on_tenant_resource(self):
        assert not evaluate(
            Permission.UNIVERSITY_ANALYTICS_VIEW,
            actor_role=Role.UNIVERSITY_ADMIN,
            actor_id="user_1",
            actor_tenant_id=None,
            resource_tenant_id="univ_1",
        )

    def test_self_scope_other_owner_denied(self):
        decision = check_permission(
            Permission.RESUMES_MANAGE,
            actor_role=Role.STUDENT,
            actor_id="user_a",
            resource_owner_id="user_b",
        )
        assert not decision.allowed
        assert decision.reason is DecisionReason.NOT_RESOURCE_OWNER

    def test_self_scope_own_resource_allowed(self):
        decision = check_permission(
            Permission.RESUMES_MANAGE,
            actor_role=Role.STUDENT,
            actor_id="user_a",
            resource_owner_id="user_a",
        )
        assert decision.allowed
        assert decision.reason is DecisionReason.ALLOWED

    def test_super_admin_bypasses_scope(self):
        """Top admin is allowed regardless of owner and tenant."""
        owner = check_permission(
            Permission.RESUMES_MANAGE,
            actor_role=Role.SUPER_ADMIN,
            actor_id="admin_1",
            resource_owner_id="user_b",
        )
        tenant = check_permission(
            Permission.UNIVERSITY_STUDENTS_MANAGE,
            actor_role=Role.SUPER_ADMIN,
            actor_id="admin_1",
            resource_tenant_id="univ_9",
        )
        assert owner.allowed and owner.reason is DecisionReason.TOP_ADMIN
        assert tenant.allowed and tenant.reason is DecisionReason.TOP_ADMIN

    def test_unknown_permission_denied_as_configuration_error(self):
        """Unknown keys fail closed, even for the top admin."""
        decision = check_permission(
            "university.students.delete",
            actor_role=Role.SUPER_ADMIN,
            actor_id="admin_1",
        )
        assert not decision.allowed
        assert decision.is_configuration_error
        assert decision.reason is DecisionReason.UNKNOWN_PERMISSION

    @pytest.mark.parametrize("role", ["owner", "Admin", None, "", 42])
    def test_unrecognized_role_denied(self, role):
        assert not evaluate(Permission.CAREER_TOOLS_USE, actor_role=role, actor_id="user_1")

    def test_string_permission_key(self):
        assert evaluate("support.tickets.manage", actor_role="staff", actor_id="user_1")

    def test_decision_is_truthy_when_allowed(self):
        assert check_permission(Permission.PROFILE_MANAGE, Role.INDIVIDUAL, "user_1")
        assert not check_permission(Permission.ADMIN_USERS_MANAGE, Role.INDIVIDUAL, "user_1")


class TestEvaluateProperties:
    """Property-based checks over the whole matrix."""

    @settings(max_examples=200)
    @given(
        permission=st.sampled_from(list(Permission)),
        role=st.sampled_from(list(Role)),
        owner=st.one_of(st.none(), st.sampled_from(["user_a", "user_b"])),
        tenant=st.one_of(st.none(), st.sampled_from(["univ_1", "univ_2"])),
    )
    def test_role_outside_rule_always_denied(self, permission, role, owner, tenant):
        """No resource context can grant a role that the rule does not list."""
        rule = PERMISSION_MATRIX[permission]
        allowed = evaluate(
            permission,
            actor_role=role,
            actor_id="user_a",
            actor_tenant_id="univ_1",
            resource_owner_id=owner,
            resource_tenant_id=tenant,
        )
        if role not in rule.allowed_roles:
            assert allowed is False

    @settings(max_examples=200)
    @given(
        permission=st.sampled_from(list(Permission)),
        owner=st.one_of(st.none(), st.text(min_size=1, max_size=8)),
        tenant=st.one_of(st.none(), st.text(min_size=1, max_size=8)),
    )
    def test_super_admin_always_allowed(self, permission, owner, tenant):
        assert evaluate(
            permission,
            actor_role=Role.SUPER_ADMIN,
            actor_id="admin_1",
            resource_owner_id=owner,
            resource_tenant_id=tenant,
        )

    @settings(max_examples=100)
    @given(
        permission=st.sampled_from(
            [p for p, r in PERMISSION_MATRIX.items() if r.scope is PermissionScope.TENANT]
        ),
        role=st.sampled_from([Role.UNIVERSITY_ADMIN, Role.ADVISOR, Role.STUDENT]),
    )
    def test_cross_tenant_never_allowed_below_top_admin(self, permission, role):
        assert not evaluate(
            permission,
            actor_role=role,
            actor_id="user_a",
            actor_tenant_id="univ_1",
            resource_tenant_id="univ_2",
        )


# ============================================================================
# ACTOR HELPERS
# ============================================================================

def _overlay(role: Role, tenant_id=None) -> ImpersonationSession:
    return ImpersonationSession(
        session_id="sess_1",
        base_identity_id="admin_1",
        assumed_role=role,
        assumed_tenant_id=tenant_id,
        assumed_plan=Plan.UNIVERSITY,
        started_at=utc_now(),
        ttl_seconds=3600,
    )


class TestEvaluateForActor:
    """Evaluation uses the effective role and tenant."""

    def test_uses_real_role_without_overlay(self):
        actor = ActorContext(identity_id="admin_1", role=Role.SUPER_ADMIN, session_id="sess_1")
        assert evaluate_for_actor(actor, Permission.ADMIN_ROLES_CHANGE).allowed

    def test_overlay_narrows_permissions(self):
        """An admin viewing as an advisor is evaluated as that advisor."""
        actor = ActorContext(
            identity_id="admin_1",
            role=Role.SUPER_ADMIN,
            session_id="sess_1",
        ).with_impersonation(_overlay(Role.ADVISOR, "univ_1"))

        assert actor.effective_role is Role.ADVISOR
        assert not evaluate_for_actor(actor, Permission.ADMIN_ROLES_CHANGE).allowed
        assert not evaluate_for_actor(
            actor, Permission.UNIVERSITY_STUDENTS_VIEW, resource_tenant_id="univ_2"
        ).allowed
        assert evaluate_for_actor(
            actor, Permission.UNIVERSITY_STUDENTS_VIEW, resource_tenant_id="univ_1"
        ).allowed


class TestResolvePermissionMap:
    """The UI permission map is the evaluator applied to every key."""

    def test_contains_every_permission(self):
        actor = ActorContext(identity_id="user_1", role=Role.STUDENT, tenant_id="univ_1")
        permission_map = resolve_permission_map(actor)
        assert set(permission_map) == {p.value for p in Permission}

    def test_matches_evaluator(self):
        actor = ActorContext(identity_id="user_1", role=Role.ADVISOR, tenant_id="univ_1")
        permission_map = resolve_permission_map(actor)
        for permission in Permission:
            assert permission_map[permission.value] == evaluate_for_actor(actor, permission).allowed

    def test_student_map(self):
        actor = ActorContext(identity_id="user_1", role=Role.STUDENT, tenant_id="univ_1")
        permission_map = resolve_permission_map(actor)
        assert permission_map["career_tools.use"] is True
        assert permission_map["support.tickets.own"] is True
        assert permission_map["university.students.view"] is False
        assert permission_map["admin.audit_logs.view"] is False
