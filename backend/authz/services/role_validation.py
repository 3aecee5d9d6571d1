"""
Role transition rules for admin role changes.

Checks that a requested role change is consistent (university roles need a
university) and safe (the founder's super_admin role cannot be removed
through the API), and collects warnings and follow-up actions for the
operator.
"""

from dataclasses import dataclass, field
from typing import Optional

from authz.constants.permissions import TOP_ADMIN_ROLE, Role, role_requires_tenant

_UNIVERSITY_STAFF_ROLES = frozenset({Role.UNIVERSITY_ADMIN, Role.ADVISOR})

_TENANT_ROLE_LABELS = {
    Role.STUDENT: "Student",
    Role.UNIVERSITY_ADMIN: "University admin",
    Role.ADVISOR: "Advisor",
}


@dataclass
class RoleValidationResult:
    valid: bool
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    required_actions: list[str] = field(default_factory=list)


def validate_role_transition(
    old_role: Optional[Role],
    new_role: Role,
    tenant_id: Optional[str],
) -> RoleValidationResult:
    """
    Validate changing an identity from old_role to new_role.

    Args:
        old_role: Current role (None for an identity with no cached role)
        new_role: Requested role
        tenant_id: University the identity will belong to after the change
    """
    if role_requires_tenant(new_role) and not tenant_id:
        return RoleValidationResult(
            valid=False,
            error=(
                f"{_TENANT_ROLE_LABELS[new_role]} role requires a university affiliation. "
                "Please assign a university first."
            ),
        )

    if old_role is TOP_ADMIN_ROLE and new_role is not TOP_ADMIN_ROLE:
        return RoleValidationResult(
            valid=False,
            error=(
                "Cannot change super_admin role. This role is reserved for the platform "
                "founder and cannot be modified through the admin interface. Use the "
                "Clerk Dashboard for emergency role changes."
            ),
        )

    result = RoleValidationResult(valid=True)

    if new_role is Role.INDIVIDUAL and tenant_id:
        result.warnings.append(
            "Individual users should not be affiliated with a university. "
            "Consider removing university affiliation."
        )
        result.required_actions.append(
            "Remove university_id if transitioning to individual role"
        )

    if old_role is Role.STUDENT and new_role is not Role.STUDENT:
        result.required_actions.append(
            "Student profile data will be preserved but user loses university access"
        )

    if old_role is not Role.STUDENT and new_role is Role.STUDENT:
        result.required_actions.append("Student profile will be created if it doesn't exist")

    if old_role in _UNIVERSITY_STAFF_ROLES and new_role not in _UNIVERSITY_STAFF_ROLES:
        result.warnings.append("University admin privileges will be revoked")
        result.required_actions.append("Remove from university admin/advisor groups")

    return result
