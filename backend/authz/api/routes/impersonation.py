"""
View-as impersonation API routes.

The overlay is bound to the caller's Clerk session (sid claim). Starting one
is checked against the caller's REAL role, never against an active overlay.
Nothing here writes the role cache or the role audit log.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status

from authz.api.schemas.impersonation import (
    ImpersonationStatusResponse,
    StartImpersonationRequest,
)
from authz.auth.actor import ActorContext
from authz.auth.actor_context import get_actor
from authz.platform.errors import ImpersonationError, PermissionDeniedError
from authz.services.container import AuthzServices, get_services
from authz.services.impersonation import ImpersonationSession

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/impersonation", tags=["impersonation"])


def _status(
    session: Optional[ImpersonationSession],
    message: Optional[str] = None,
) -> ImpersonationStatusResponse:
    if session is None:
        return ImpersonationStatusResponse(active=False, message=message)
    return ImpersonationStatusResponse(
        active=True,
        role=session.assumed_role.value,
        tenant_id=session.assumed_tenant_id,
        plan=session.assumed_plan.value,
        started_at=session.started_at,
        expires_at=session.expires_at,
        message=message,
    )


@router.post("/start", response_model=ImpersonationStatusResponse)
async def start_impersonation(
    body: StartImpersonationRequest,
    actor: ActorContext = Depends(get_actor),
    services: AuthzServices = Depends(get_services),
):
    """View the product as another role for the rest of this session."""
    try:
        session = services.impersonation.start(
            actor,
            actor.session_id,
            body.role,
            assumed_tenant_id=body.tenant_id,
            assumed_plan=body.plan,
            ttl_seconds=body.ttl_seconds,
        )
    except PermissionDeniedError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to perform this action",
        )
    except ImpersonationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message,
        )
    except ValueError:
        # InvalidRoleError or an unknown plan
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unrecognized role or plan",
        )

    if session is None:
        return _status(None, message="Select a university to view as this role")
    return _status(session)


@router.post("/stop", response_model=ImpersonationStatusResponse)
async def stop_impersonation(
    actor: ActorContext = Depends(get_actor),
    services: AuthzServices = Depends(get_services),
):
    """Return to the caller's own role."""
    stopped = services.impersonation.stop(actor.session_id)
    return _status(None, message="Impersonation stopped" if stopped else "No active impersonation")


@router.get("", response_model=ImpersonationStatusResponse)
async def get_impersonation(
    actor: ActorContext = Depends(get_actor),
    services: AuthzServices = Depends(get_services),
):
    """Current overlay for this session, if any."""
    return _status(services.impersonation.apply(actor).impersonation)
