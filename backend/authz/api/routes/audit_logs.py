"""
Role audit log API routes.

- GET /api/admin/audit/role-changes         paginated history, newest first
- GET /api/admin/audit/role-changes/export  CSV download

SECURITY: Requires admin.audit_logs.view. The audit table is read-only
through this API.
"""

import logging
from datetime import datetime
from typing import Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from authz.api.schemas.role_audit import RoleAuditEntryResponse, RoleAuditPageResponse
from authz.auth.actor import ActorContext
from authz.constants.permissions import Permission
from authz.database.session import get_db_session, session_scope
from authz.platform.rbac import require_permission
from authz.services.container import AuthzServices, get_services
from authz.services.role_audit_log import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    AuditFilters,
    RoleAuditLog,
    export_filename,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin/audit",
    tags=["admin-audit"],
)


def get_audit_filters(
    identity: Optional[str] = Query(None, description="Target identity id"),
    performed_by: Optional[str] = Query(None, alias="performedBy", description="Actor identity id"),
    start: Optional[datetime] = Query(None, alias="from", description="Inclusive start (ISO 8601)"),
    end: Optional[datetime] = Query(None, alias="to", description="Inclusive end (ISO 8601)"),
) -> AuditFilters:
    if start and end and start > end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'from' must not be after 'to'",
        )
    return AuditFilters(
        identity_id=identity or None,
        performed_by=performed_by or None,
        start=start,
        end=end,
    )


@router.get("/role-changes", response_model=RoleAuditPageResponse)
async def list_role_changes(
    filters: AuditFilters = Depends(get_audit_filters),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, alias="pageSize", ge=1, le=MAX_PAGE_SIZE),
    actor: ActorContext = Depends(require_permission(Permission.ADMIN_AUDIT_LOGS_VIEW)),
    db: Session = Depends(get_db_session),
):
    """List role changes matching the filters, newest first."""
    result = RoleAuditLog(db).list_entries(filters, page=page, page_size=page_size)
    return RoleAuditPageResponse(
        entries=[RoleAuditEntryResponse.model_validate(e) for e in result.entries],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        has_more=result.has_more,
    )


@router.get("/role-changes/export")
async def export_role_changes(
    filters: AuditFilters = Depends(get_audit_filters),
    actor: ActorContext = Depends(require_permission(Permission.ADMIN_AUDIT_LOGS_VIEW)),
    services: AuthzServices = Depends(get_services),
):
    """Download matching role changes as CSV."""
    if services.session_factory is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )

    logger.info(
        "Role audit export requested",
        extra={"user_id": actor.identity_id, "identity_id": filters.identity_id},
    )

    # Own session: the response body is produced after the request scope ends
    def rows() -> Iterator[str]:
        with session_scope(services.session_factory) as session:
            yield from RoleAuditLog(session).export_csv(filters)

    filename = export_filename()
    return StreamingResponse(
        rows(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
