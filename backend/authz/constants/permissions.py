"""
Canonical permissions matrix for the career platform.

IMPORTANT: This is the single source of truth for all permissions.
Server-side guards and UI gating both evaluate against this table through
authz.platform.rbac.evaluate; nothing else may embed role checks.

Roles are defined in Clerk (public_metadata.role) and mapped here.

Role Hierarchy:
- Platform roles: SUPER_ADMIN (single founder account), STAFF
- University roles: UNIVERSITY_ADMIN > ADVISOR > STUDENT (tenant-scoped)
- Individual roles: INDIVIDUAL, USER (legacy alias of INDIVIDUAL)

Tenant = university. University roles always carry a university_id.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, FrozenSet, Optional

from authz.platform.errors import ConfigurationError, InvalidRoleError, UnknownPermissionError


class Role(str, Enum):
    """
    User roles from Clerk.

    Keep in sync with the role values written to Clerk public_metadata.
    """
    SUPER_ADMIN = "super_admin"
    UNIVERSITY_ADMIN = "university_admin"
    ADVISOR = "advisor"
    STUDENT = "student"
    INDIVIDUAL = "individual"
    STAFF = "staff"
    # Legacy individual role, being migrated to INDIVIDUAL
    USER = "user"


class Plan(str, Enum):
    """Subscription plans that can be simulated while impersonating."""
    FREE = "free"
    PREMIUM = "premium"
    UNIVERSITY = "university"


class PermissionScope(str, Enum):
    """
    How resource context narrows a permission.

    PLATFORM: no resource context is considered
    TENANT: resource must belong to the actor's university
    SELF: resource must be owned by the actor
    """
    PLATFORM = "platform"
    TENANT = "tenant"
    SELF = "self"


# Top platform-admin role; bypasses scope checks
TOP_ADMIN_ROLE = Role.SUPER_ADMIN

# Roles that only make sense with a university affiliation
TENANT_ROLES: FrozenSet[Role] = frozenset([
    Role.UNIVERSITY_ADMIN,
    Role.ADVISOR,
    Role.STUDENT,
])

# Roles a privileged actor may assume through the view-as overlay
IMPERSONATABLE_ROLES: FrozenSet[Role] = frozenset([
    Role.INDIVIDUAL,
    Role.STUDENT,
    Role.ADVISOR,
    Role.UNIVERSITY_ADMIN,
    Role.STAFF,
])

# Role assigned to identities whose Clerk metadata carries no role yet
DEFAULT_ROLE = Role.INDIVIDUAL

ALL_ROLES: FrozenSet[Role] = frozenset(Role)


class Permission(str, Enum):
    """
    All permissions in the system.

    Naming convention: area.resource.action
    """
    # Platform administration
    PLATFORM_SETTINGS_MANAGE = "platform.settings.manage"
    PLATFORM_ANALYTICS_VIEW = "platform.analytics.view"
    ADMIN_USERS_MANAGE = "admin.users.manage"
    ADMIN_UNIVERSITIES_MANAGE = "admin.universities.manage"
    ADMIN_AUDIT_LOGS_VIEW = "admin.audit_logs.view"
    ADMIN_ROLES_CHANGE = "admin.roles.change"
    ADMIN_ROLES_DIAGNOSE = "admin.roles.diagnose"
    ADMIN_ROLES_REMEDIATE = "admin.roles.remediate"
    # Dedicated "can impersonate" capability
    ADMIN_IMPERSONATE = "admin.impersonate"
    SUPPORT_TICKETS_MANAGE = "support.tickets.manage"

    # University (tenant) administration
    UNIVERSITY_SETTINGS_MANAGE = "university.settings.manage"
    UNIVERSITY_USERS_MANAGE = "university.users.manage"
    UNIVERSITY_STUDENTS_MANAGE = "university.students.manage"
    UNIVERSITY_STUDENTS_VIEW = "university.students.view"
    UNIVERSITY_ADVISORS_MANAGE = "university.advisors.manage"
    UNIVERSITY_ANALYTICS_VIEW = "university.analytics.view"
    UNIVERSITY_SUPPORT_TICKETS_VIEW = "university.support_tickets.view"

    # Career tools (own data)
    CAREER_TOOLS_USE = "career_tools.use"
    PROFILE_MANAGE = "profile.manage"
    APPLICATIONS_MANAGE = "applications.manage"
    RESUMES_MANAGE = "resumes.manage"
    SUPPORT_TICKETS_OWN = "support.tickets.own"


@dataclass(frozen=True)
class PermissionRule:
    """Immutable rule: who may exercise a permission and how it is scoped."""
    permission: Permission
    allowed_roles: FrozenSet[Role]
    scope: PermissionScope

    def allows_role(self, role: Role) -> bool:
        return role in self.allowed_roles


def _rule(permission: Permission, scope: PermissionScope, *roles: Role) -> PermissionRule:
    return PermissionRule(permission=permission, allowed_roles=frozenset(roles), scope=scope)


_UNIVERSITY_STAFF = (Role.SUPER_ADMIN, Role.UNIVERSITY_ADMIN, Role.ADVISOR)
_UNIVERSITY_ADMINS = (Role.SUPER_ADMIN, Role.UNIVERSITY_ADMIN)


# Permission matrix: Permission -> PermissionRule
# This is the canonical source of truth for RBAC
PERMISSION_MATRIX: dict[Permission, PermissionRule] = {
    rule.permission: rule
    for rule in (
        # --- Platform ---
        _rule(Permission.PLATFORM_SETTINGS_MANAGE, PermissionScope.PLATFORM, Role.SUPER_ADMIN),
        _rule(Permission.PLATFORM_ANALYTICS_VIEW, PermissionScope.PLATFORM, Role.SUPER_ADMIN),
        _rule(Permission.ADMIN_USERS_MANAGE, PermissionScope.PLATFORM, Role.SUPER_ADMIN),
        _rule(Permission.ADMIN_UNIVERSITIES_MANAGE, PermissionScope.PLATFORM, Role.SUPER_ADMIN),
        _rule(Permission.ADMIN_AUDIT_LOGS_VIEW, PermissionScope.PLATFORM, Role.SUPER_ADMIN),
        _rule(Permission.ADMIN_ROLES_CHANGE, PermissionScope.PLATFORM, Role.SUPER_ADMIN),
        _rule(Permission.ADMIN_ROLES_DIAGNOSE, PermissionScope.PLATFORM, Role.SUPER_ADMIN),
        _rule(Permission.ADMIN_ROLES_REMEDIATE, PermissionScope.PLATFORM, Role.SUPER_ADMIN),
        _rule(Permission.ADMIN_IMPERSONATE, PermissionScope.PLATFORM, Role.SUPER_ADMIN),
        _rule(
            Permission.SUPPORT_TICKETS_MANAGE,
            PermissionScope.PLATFORM,
            Role.SUPER_ADMIN, Role.STAFF,
        ),

        # --- University (tenant) ---
        _rule(Permission.UNIVERSITY_SETTINGS_MANAGE, PermissionScope.TENANT, *_UNIVERSITY_ADMINS),
        _rule(Permission.UNIVERSITY_USERS_MANAGE, PermissionScope.TENANT, *_UNIVERSITY_ADMINS),
        _rule(Permission.UNIVERSITY_STUDENTS_MANAGE, PermissionScope.TENANT, *_UNIVERSITY_ADMINS),
        _rule(Permission.UNIVERSITY_STUDENTS_VIEW, PermissionScope.TENANT, *_UNIVERSITY_STAFF),
        _rule(Permission.UNIVERSITY_ADVISORS_MANAGE, PermissionScope.TENANT, *_UNIVERSITY_ADMINS),
        _rule(Permission.UNIVERSITY_ANALYTICS_VIEW, PermissionScope.TENANT, *_UNIVERSITY_STAFF),
        _rule(Permission.UNIVERSITY_SUPPORT_TICKETS_VIEW, PermissionScope.TENANT, *_UNIVERSITY_STAFF),

        # --- Career tools (own data) ---
        _rule(Permission.CAREER_TOOLS_USE, PermissionScope.SELF, *ALL_ROLES),
        _rule(Permission.PROFILE_MANAGE, PermissionScope.SELF, *ALL_ROLES),
        _rule(Permission.APPLICATIONS_MANAGE, PermissionScope.SELF, *ALL_ROLES),
        _rule(Permission.RESUMES_MANAGE, PermissionScope.SELF, *ALL_ROLES),
        _rule(
            Permission.SUPPORT_TICKETS_OWN,
            PermissionScope.SELF,
            Role.SUPER_ADMIN, Role.STUDENT, Role.INDIVIDUAL, Role.USER,
        ),
    )
}


ROLE_DESCRIPTIONS: dict[Role, str] = {
    Role.SUPER_ADMIN: (
        "Full platform access: Manage all users, universities, system settings, "
        "and view all analytics and audit logs."
    ),
    Role.UNIVERSITY_ADMIN: (
        "University administrator: Manage students, advisors, and settings for "
        "assigned university only."
    ),
    Role.ADVISOR: "University advisor: View and assist students within assigned university.",
    Role.STUDENT: "University student: Access career tools with university subscription and support.",
    Role.INDIVIDUAL: "Individual user: Access career tools with free or premium subscription.",
    Role.USER: "Legacy individual user: Access career tools (being migrated to 'individual' role).",
    Role.STAFF: "Platform staff: Limited internal access to support and operational tools.",
}


# ============================================================================
# Lookup helpers
# ============================================================================


def parse_role(value: Any) -> Role:
    """
    Strictly convert a loosely-typed role claim into a Role.

    Accepts Role instances and exact lowercase strings (surrounding
    whitespace is ignored). Anything else raises InvalidRoleError; claims are
    never passed through unvalidated.
    """
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        raise InvalidRoleError(value)
    try:
        return Role(value.strip())
    except ValueError:
        raise InvalidRoleError(value) from None


def try_parse_role(value: Any) -> Optional[Role]:
    """Like parse_role, but returns None for missing or unrecognized values."""
    if value is None:
        return None
    try:
        return parse_role(value)
    except InvalidRoleError:
        return None


def get_permission_rule(permission: Any) -> PermissionRule:
    """
    Look up the rule for a permission key.

    Raises:
        UnknownPermissionError: If the key is not in the matrix
    """
    try:
        key = permission if isinstance(permission, Permission) else Permission(permission)
    except ValueError:
        raise UnknownPermissionError(str(permission)) from None
    rule = PERMISSION_MATRIX.get(key)
    if rule is None:
        raise UnknownPermissionError(key.value)
    return rule


def get_permissions_for_role(role: Role) -> FrozenSet[Permission]:
    """
    Get all permissions granted to a role, ignoring resource scope.

    Args:
        role: The role to look up

    Returns:
        Frozenset of permissions whose rule lists the role
    """
    return frozenset(
        permission
        for permission, rule in PERMISSION_MATRIX.items()
        if role in rule.allowed_roles
    )


def role_requires_tenant(role: Role) -> bool:
    """Check if a role must be paired with a university affiliation."""
    return role in TENANT_ROLES


def get_role_description(role: Role) -> str:
    """Get a human-readable description of what a role can access."""
    return ROLE_DESCRIPTIONS.get(role, "Unknown role")


def validate_permission_matrix() -> None:
    """
    Validate the static matrix. Called once at application startup.

    Raises:
        ConfigurationError: If a permission has no rule, a rule is keyed
            under the wrong permission, names no roles, or excludes the
            top admin role.
    """
    missing = [p.value for p in Permission if p not in PERMISSION_MATRIX]
    if missing:
        raise ConfigurationError(
            "Permissions without a matrix rule",
            details={"permissions": missing},
        )
    for permission, rule in PERMISSION_MATRIX.items():
        if rule.permission is not permission:
            raise ConfigurationError(
                f"Rule for {permission.value} is keyed as {rule.permission.value}"
            )
        if not rule.allowed_roles:
            raise ConfigurationError(f"Rule for {permission.value} allows no roles")
        if TOP_ADMIN_ROLE not in rule.allowed_roles:
            raise ConfigurationError(
                f"Rule for {permission.value} excludes {TOP_ADMIN_ROLE.value}"
            )
