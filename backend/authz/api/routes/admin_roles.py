"""
Admin role management API routes.

Provides super-admin endpoints for:
- Diagnosing role drift between Clerk and the role cache
- Remediating drift in either direction, for one identity or in bulk
- Changing an identity's role

SECURITY: Every route is guarded by require_permission() with a dedicated
admin.roles.* permission, evaluated against the caller's effective role.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from authz.api.schemas.role_admin import (
    BulkSyncDetailResponse,
    BulkSyncRequest,
    BulkSyncResponse,
    DiagnosedUser,
    DiagnoseRequest,
    DiagnoseResponse,
    RemediateRequest,
    RemediationAckResponse,
    RoleChangeRequest,
    RoleChangeResponse,
)
from authz.auth.actor import ActorContext
from authz.constants.permissions import Permission
from authz.database.session import get_db_session
from authz.platform.errors import (
    IdentityNotFoundError,
    IdentitySourceError,
    InvalidRoleError,
    PermissionDeniedError,
    RoleTransitionError,
)
from authz.platform.rbac import require_permission
from authz.services.container import AuthzServices, get_services
from authz.services.reconciliation import RemediationStatus, Suggestion
from authz.services.role_change_service import RoleChangeService
from authz.services.role_store import Performer, RoleWriteConflictError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin/roles",
    tags=["admin-roles"],
)


def _performer(actor: ActorContext) -> Performer:
    return Performer(
        identity_id=actor.identity_id,
        display_name=actor.display_name or actor.email,
    )


def _identity_provider_unavailable(e: IdentitySourceError) -> HTTPException:
    logger.error(
        "Identity provider call failed",
        extra={"error": e.message, "status_code": e.status_code},
    )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail="Identity provider unavailable",
    )


@router.post("/diagnose", response_model=DiagnoseResponse)
async def diagnose_role(
    body: DiagnoseRequest,
    actor: ActorContext = Depends(require_permission(Permission.ADMIN_ROLES_DIAGNOSE)),
    services: AuthzServices = Depends(get_services),
):
    """Compare the Clerk role and the cached role for the identity with this email."""
    try:
        claim = await services.reconciliation.resolve_identity(body.email)
        outcome = await services.workflow.check(claim.identity_id)
    except IdentityNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    except IdentitySourceError as e:
        raise _identity_provider_unavailable(e)

    logger.info(
        "Role diagnostic requested",
        extra={
            "user_id": actor.identity_id,
            "target_identity_id": claim.identity_id,
            "state": outcome.state.value,
            "blocked": outcome.blocked,
        },
    )

    diagnosis = outcome.diagnosis
    if diagnosis is None:
        return DiagnoseResponse(
            user=DiagnosedUser(id=claim.identity_id, email=claim.email, name=claim.display_name),
            identity_role=claim.role.value if claim.role else None,
            identity_tenant_id=claim.tenant_id,
            mismatch=True,
            issues=["A remediation for this user is in progress"],
            suggestion=Suggestion.NONE.value,
            state=outcome.state.value,
            blocked=outcome.blocked,
        )

    return DiagnoseResponse(
        user=DiagnosedUser(
            id=diagnosis.identity_id,
            email=diagnosis.email,
            name=diagnosis.display_name,
        ),
        identity_role=diagnosis.source_role,
        cached_role=diagnosis.cached_role,
        identity_tenant_id=diagnosis.source_tenant_id,
        cached_tenant_id=diagnosis.cached_tenant_id,
        mismatch=diagnosis.mismatch,
        issues=diagnosis.issues,
        suggestions=diagnosis.suggestions,
        suggestion=diagnosis.suggestion.value,
        state=outcome.state.value,
        blocked=outcome.blocked,
        last_synced_at=diagnosis.last_synced_at,
        remediation_pending=diagnosis.remediation_pending,
    )


@router.post(
    "/remediate",
    response_model=RemediationAckResponse,
    responses={
        202: {"description": "Remediation still running after the client timeout"},
        409: {"description": "Another remediation for this identity is in progress"},
    },
)
async def remediate_role(
    body: RemediateRequest,
    response: Response,
    actor: ActorContext = Depends(require_permission(Permission.ADMIN_ROLES_REMEDIATE)),
    services: AuthzServices = Depends(get_services),
):
    """Repair role drift for one identity in the requested direction."""
    try:
        ack = await services.workflow.remediate(
            body.identity, body.direction, performed_by=_performer(actor)
        )
    except IdentityNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    except IdentitySourceError as e:
        raise _identity_provider_unavailable(e)

    if ack.status is RemediationStatus.PENDING:
        response.status_code = status.HTTP_202_ACCEPTED
    elif ack.status is RemediationStatus.IN_PROGRESS:
        response.status_code = status.HTTP_409_CONFLICT

    logger.info(
        "Role remediation requested",
        extra={
            "user_id": actor.identity_id,
            "target_identity_id": body.identity,
            "direction": body.direction.value,
            "status": ack.status.value,
            "conflict": ack.conflict,
        },
    )
    return RemediationAckResponse(
        identity=ack.identity_id,
        direction=ack.direction,
        status=ack.status.value,
        message=ack.message,
        state=ack.state.value,
        in_flight_direction=ack.in_flight_direction,
        conflict=ack.conflict,
    )


@router.post("/sync", response_model=BulkSyncResponse)
async def sync_all_roles(
    body: BulkSyncRequest,
    actor: ActorContext = Depends(require_permission(Permission.ADMIN_ROLES_REMEDIATE)),
    services: AuthzServices = Depends(get_services),
):
    """Reconcile every cached identity, or only those pending remediation."""
    if services.session_factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )

    report = await services.reconciliation.sync_all(
        body.direction,
        dry_run=body.dry_run,
        pending_only=body.pending_only,
        performed_by=_performer(actor),
    )

    logger.info(
        "Bulk role sync requested",
        extra={
            "user_id": actor.identity_id,
            "direction": body.direction.value,
            "dry_run": body.dry_run,
            "pending_only": body.pending_only,
            "synced": report.synced,
            "errors": report.errors,
        },
    )
    return BulkSyncResponse(
        direction=report.direction,
        dry_run=report.dry_run,
        total=report.total,
        synced=report.synced,
        skipped=report.skipped,
        errors=report.errors,
        details=[
            BulkSyncDetailResponse(
                identity_id=d.identity_id,
                email=d.email,
                cached_role=d.cached_role,
                identity_role=d.source_role,
                action=d.action.value,
                message=d.message,
            )
            for d in report.details
        ],
    )

@router.put("/{identity_id}", response_model=RoleChangeResponse)
async def change_role(
    identity_id: str,
    body: RoleChangeRequest,
    actor: ActorContext = Depends(require_permission(Permission.ADMIN_ROLES_CHANGE)),
    services: AuthzServices = Depends(get_services),
    db: Session = Depends(get_db_session),
):
    """Change an identity's role in Clerk and in the role cache."""
    service = RoleChangeService(db, services.identity_source)
    try:
        result = await service.change_role(
            actor,
            identity_id,
            body.role,
            tenant_id=body.tenant_id,
            reason=body.reason,
        )
    except PermissionDeniedError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to perform this action",
        )
    except InvalidRoleError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unrecognized role: {body.role}",
        )
    except RoleTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=e.message,
        )
    except IdentityNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    except IdentitySourceError as e:
        raise _identity_provider_unavailable(e)
    except RoleWriteConflictError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Role was changed concurrently, retry",
        )

    return RoleChangeResponse(
        identity_id=result.identity_id,
        old_role=result.old_role,
        new_role=result.new_role,
        tenant_id=result.tenant_id,
        status=result.status.value,
        warnings=result.warnings,
        required_actions=result.required_actions,
    )
