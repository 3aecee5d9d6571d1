"""
Caller-facing authorization routes.

The frontend gates UI on the permission map returned here instead of
carrying its own role checks; it is computed with the same evaluator the
server-side guards use.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from authz.api.schemas.authz import MeResponse
from authz.auth.actor import ActorContext
from authz.auth.actor_context import get_effective_actor
from authz.constants.permissions import get_role_description
from authz.platform.rbac import evaluate_for_actor, resolve_permission_map

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/authz", tags=["authz"])


class PermissionCheckResponse(BaseModel):
    permission: str
    allowed: bool
    reason: str


@router.get("/me", response_model=MeResponse)
async def get_me(actor: ActorContext = Depends(get_effective_actor)):
    """Effective role and permission map for the caller."""
    return MeResponse(
        identity_id=actor.identity_id,
        role=actor.role.value,
        tenant_id=actor.tenant_id,
        effective_role=actor.effective_role.value,
        effective_tenant_id=actor.effective_tenant_id,
        effective_plan=actor.effective_plan.value if actor.effective_plan else None,
        impersonating=actor.is_impersonating,
        role_description=get_role_description(actor.effective_role),
        permissions=resolve_permission_map(actor),
    )


@router.get("/check", response_model=PermissionCheckResponse)
async def check(
    permission: str = Query(..., description="Permission key, e.g. university.students.view"),
    resource_owner_id: Optional[str] = Query(None, alias="resourceOwnerId"),
    resource_tenant_id: Optional[str] = Query(None, alias="resourceTenantId"),
    actor: ActorContext = Depends(get_effective_actor),
):
    """Check one permission against a specific resource."""
    decision = evaluate_for_actor(
        actor,
        permission,
        resource_owner_id=resource_owner_id,
        resource_tenant_id=resource_tenant_id,
    )
    return PermissionCheckResponse(
        permission=permission,
        allowed=decision.allowed,
        reason=decision.reason.value,
    )
