"""
Role-Based Access Control (RBAC) enforcement for the career platform.

CRITICAL SECURITY REQUIREMENTS:
- RBAC MUST be enforced server-side for every protected endpoint
- UI permission gating uses the SAME evaluate() function via
  resolve_permission_map(); there is no second rule table
- All permission checks MUST be centralized in this module
- evaluate() is pure: no I/O, safe on the hot path of every request

Usage:
    from authz.platform.rbac import evaluate, require_permission

    allowed = evaluate(
        Permission.UNIVERSITY_STUDENTS_MANAGE,
        actor_role="advisor",
        actor_id="user_1",
        actor_tenant_id="univ_1",
        resource_tenant_id="univ_1",
    )

    @router.get("/api/admin/audit")
    async def list_audit(actor: ActorContext = Depends(require_permission(Permission.ADMIN_AUDIT_LOGS_VIEW))):
        ...
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from fastapi import Depends, HTTPException, Request, status

from authz.auth.actor import ActorContext
from authz.constants.permissions import (
    PERMISSION_MATRIX,
    TOP_ADMIN_ROLE,
    PermissionScope,
    get_permission_rule,
    try_parse_role,
)
from authz.platform.errors import UnknownPermissionError

logger = logging.getLogger(__name__)


class DecisionReason(str, Enum):
    """Why a permission check resolved the way it did."""
    ALLOWED = "allowed"
    TOP_ADMIN = "top_admin"
    UNKNOWN_PERMISSION = "unknown_permission"
    ROLE_NOT_ALLOWED = "role_not_allowed"
    NOT_RESOURCE_OWNER = "not_resource_owner"
    TENANT_MISMATCH = "tenant_mismatch"


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of a single permission check."""
    allowed: bool
    reason: DecisionReason
    permission: str

    def __bool__(self) -> bool:
        return self.allowed

    @property
    def is_configuration_error(self) -> bool:
        return self.reason is DecisionReason.UNKNOWN_PERMISSION


def check_permission(
    permission: Any,
    actor_role: Any,
    actor_id: str,
    actor_tenant_id: Optional[str] = None,
    resource_owner_id: Optional[str] = None,
    resource_tenant_id: Optional[str] = None,
) -> PermissionDecision:
    """
    Evaluate a permission against role and resource context.

    Resolution order:
    1. Unknown permission key -> deny (configuration error, fails closed)
    2. Role not in allowed_roles -> deny
    3. Top admin role -> allow, scope is not checked
    4. SELF scope and owner given and owner != actor -> deny
    5. TENANT scope and resource tenant given and != actor tenant -> deny
    6. allow

    Args:
        permission: Permission enum member or its string key
        actor_role: Effective role of the actor (Role or string)
        actor_id: Effective identity id of the actor
        actor_tenant_id: Effective tenant (university) of the actor
        resource_owner_id: Owner of the resource, if any
        resource_tenant_id: Tenant the resource belongs to, if any

    Returns:
        PermissionDecision with the outcome and reason
    """
    try:
        rule = get_permission_rule(permission)
    except UnknownPermissionError as e:
        logger.error(
            "rbac.unknown_permission",
            extra={"permission": e.permission, "actor_id": actor_id},
        )
        return PermissionDecision(False, DecisionReason.UNKNOWN_PERMISSION, str(permission))

    key = rule.permission.value
    role = try_parse_role(actor_role)
    if role is None or not rule.allows_role(role):
        return PermissionDecision(False, DecisionReason.ROLE_NOT_ALLOWED, key)

    if role is TOP_ADMIN_ROLE:
        return PermissionDecision(True, DecisionReason.TOP_ADMIN, key)

    if (
        rule.scope is PermissionScope.SELF
        and resource_owner_id is not None
        and resource_owner_id != actor_id
    ):
        return PermissionDecision(False, DecisionReason.NOT_RESOURCE_OWNER, key)

    if (
        rule.scope is PermissionScope.TENANT
        and resource_tenant_id is not None
        and resource_tenant_id != actor_tenant_id
    ):
        return PermissionDecision(False, DecisionReason.TENANT_MISMATCH, key)

    return PermissionDecision(True, DecisionReason.ALLOWED, key)


def evaluate(
    permission: Any,
    actor_role: Any,
    actor_id: str,
    actor_tenant_id: Optional[str] = None,
    resource_owner_id: Optional[str] = None,
    resource_tenant_id: Optional[str] = None,
) -> bool:
    """Boolean form of check_permission()."""
    return check_permission(
        permission,
        actor_role,
        actor_id,
        actor_tenant_id=actor_tenant_id,
        resource_owner_id=resource_owner_id,
        resource_tenant_id=resource_tenant_id,
    ).allowed


def evaluate_for_actor(
    actor: ActorContext,
    permission: Any,
    resource_owner_id: Optional[str] = None,
    resource_tenant_id: Optional[str] = None,
) -> PermissionDecision:
    """Check a permission for an actor using its effective role and tenant."""
    return check_permission(
        permission,
        actor.effective_role,
        actor.identity_id,
        actor_tenant_id=actor.effective_tenant_id,
        resource_owner_id=resource_owner_id,
        resource_tenant_id=resource_tenant_id,
    )


def resolve_permission_map(
    actor: ActorContext,
    resource_owner_id: Optional[str] = None,
    resource_tenant_id: Optional[str] = None,
) -> dict[str, bool]:
    """
    Evaluate every permission for an actor.

    Used by UI-conditional rendering so the client never carries its own
    rule table.
    """
    return {
        permission.value: evaluate_for_actor(
            actor,
            permission,
            resource_owner_id=resource_owner_id,
            resource_tenant_id=resource_tenant_id,
        ).allowed
        for permission in PERMISSION_MATRIX
    }


def require_permission(permission: Any) -> Callable:
    """
    FastAPI dependency factory requiring a permission on the effective actor.

    Raises 403 if the actor doesn't have the permission. Resource context
    is checked inside the handler with evaluate_for_actor().

    Usage:
        @router.get("/api/admin/audit")
        async def view_audit(
            actor: ActorContext = Depends(require_permission(Permission.ADMIN_AUDIT_LOGS_VIEW)),
        ):
            ...
    """
    from authz.auth.actor_context import get_effective_actor

    # Fail at import time for typos in route declarations
    rule = get_permission_rule(permission)

    def dependency(
        request: Request,
        actor: ActorContext = Depends(get_effective_actor),
    ) -> ActorContext:
        decision = evaluate_for_actor(actor, rule.permission)
        if not decision.allowed:
            logger.warning(
                "Permission denied",
                extra={
                    "user_id": actor.identity_id,
                    "required_permission": rule.permission.value,
                    "effective_role": actor.effective_role.value,
                    "impersonating": actor.is_impersonating,
                    "reason": decision.reason.value,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to perform this action",
            )

        logger.debug(
            "Permission check passed",
            extra={"user_id": actor.identity_id, "permission": rule.permission.value},
        )
        return actor

    return dependency
