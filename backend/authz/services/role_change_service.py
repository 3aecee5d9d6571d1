"""
Admin role changes.

Clerk is the source of truth, so a change is pushed to Clerk first and only
then applied to the role cache (with its audit entry, source=admin_action).
If the push fails the cache is left untouched and the error propagates.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session

from authz.auth.actor import ActorContext
from authz.constants.permissions import Permission, Role, parse_role
from authz.models.role_audit_log import RoleChangeSource
from authz.platform.errors import PermissionDeniedError, RoleTransitionError
from authz.platform.rbac import evaluate_for_actor
from authz.services.clerk_identity_source import ClerkIdentitySource
from authz.services.role_store import ApplyStatus, Performer, RoleChange, RoleStore
from authz.services.role_validation import validate_role_transition

logger = logging.getLogger(__name__)


@dataclass
class RoleChangeResult:
    identity_id: str
    old_role: Optional[str]
    new_role: str
    tenant_id: Optional[str]
    status: ApplyStatus
    warnings: list[str] = field(default_factory=list)
    required_actions: list[str] = field(default_factory=list)


class RoleChangeService:
    """
    Change an identity's role on behalf of an administrator.

    Usage:
        service = RoleChangeService(db, identity_source)
        result = await service.change_role(actor, "user_123", "advisor", "univ_1", "Hired")
    """

    def __init__(self, session: Session, identity_source: ClerkIdentitySource):
        self.session = session
        self.identity_source = identity_source
        self.role_store = RoleStore(session)

    async def change_role(
        self,
        actor: ActorContext,
        identity_id: str,
        new_role: Any,
        tenant_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> RoleChangeResult:
        """
        Raises:
            PermissionDeniedError: If the actor may not change roles
            InvalidRoleError: If new_role is not a role
            RoleTransitionError: If the transition is not allowed
            IdentityNotFoundError: If Clerk has no such identity
            IdentitySourceError: If the push to Clerk failed
        """
        if not evaluate_for_actor(actor, Permission.ADMIN_ROLES_CHANGE):
            logger.warning(
                "Role change denied",
                extra={"user_id": actor.identity_id, "target_identity_id": identity_id},
            )
            raise PermissionDeniedError(Permission.ADMIN_ROLES_CHANGE.value, actor.identity_id)

        role = parse_role(new_role)
        tenant_id = tenant_id or None

        record = self.role_store.get(identity_id)
        if record is None:
            claim = await self.identity_source.fetch_user(identity_id)
            old_role: Optional[Role] = claim.role
        else:
            old_role = record.role_enum

        validation = validate_role_transition(old_role, role, tenant_id)
        if not validation.valid:
            raise RoleTransitionError(
                validation.error,
                details={
                    "identity_id": identity_id,
                    "old_role": old_role.value if old_role else None,
                    "new_role": role.value,
                },
            )

        updated = await self.identity_source.push_role(identity_id, role, tenant_id)

        result = self.role_store.apply_change(
            RoleChange(
                identity_id=identity_id,
                role=role,
                tenant_id=tenant_id,
                email=updated.email,
                display_name=updated.display_name,
                source_updated_at_ms=updated.updated_at_ms,
            ),
            source=RoleChangeSource.ADMIN_ACTION,
            performed_by=Performer(
                identity_id=actor.identity_id,
                display_name=actor.display_name or actor.email,
            ),
            reason=reason,
        )

        logger.info(
            "Admin role change",
            extra={
                "user_id": actor.identity_id,
                "target_identity_id": identity_id,
                "old_role": old_role.value if old_role else None,
                "new_role": role.value,
                "tenant_id": tenant_id,
                "status": result.status.value,
            },
        )
        return RoleChangeResult(
            identity_id=identity_id,
            old_role=old_role.value if old_role else None,
            new_role=role.value,
            tenant_id=tenant_id,
            status=result.status,
            warnings=validation.warnings,
            required_actions=validation.required_actions,
        )
