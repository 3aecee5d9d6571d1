"""
Role administration API schemas.

Request/response models for the diagnostic workflow (diagnose, remediate),
bulk sync and admin role changes. JSON field names follow the admin console's
camelCase contract where it has one.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from authz.services.reconciliation import RemediationDirection


class DiagnoseRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, description="Email of the identity to check")


class DiagnosedUser(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


class DiagnoseResponse(BaseModel):
    """Clerk vs cached role comparison for one identity."""

    user: DiagnosedUser
    identity_role: Optional[str] = Field(
        None,
        serialization_alias="identityRole",
        description="Role claim in Clerk public_metadata",
    )
    cached_role: Optional[str] = Field(
        None,
        serialization_alias="cachedRole",
        description="Role in the local role cache",
    )
    identity_tenant_id: Optional[str] = Field(None, serialization_alias="identityTenantId")
    cached_tenant_id: Optional[str] = Field(None, serialization_alias="cachedTenantId")
    mismatch: bool
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    suggestion: str = Field(description="none, sync-to-cache or sync-to-source")
    state: str = Field(description="Diagnostic workflow state for this identity")
    blocked: bool = Field(
        False,
        description="True when a remediation in flight prevented a fresh check",
    )
    last_synced_at: Optional[datetime] = Field(None, serialization_alias="lastSync")
    remediation_pending: bool = Field(False, serialization_alias="remediationPending")


class RemediateRequest(BaseModel):
    identity: str = Field(min_length=1, max_length=255, description="Clerk user id")
    direction: RemediationDirection


class RemediationAckResponse(BaseModel):
    identity: str
    direction: RemediationDirection
    status: str = Field(description="applied, noop, in_progress, failed or pending")
    message: str
    state: str
    in_flight_direction: Optional[RemediationDirection] = Field(
        None, serialization_alias="inFlightDirection"
    )
    conflict: bool = False


class RoleChangeRequest(BaseModel):
    role: str = Field(min_length=1, max_length=50)
    tenant_id: Optional[str] = Field(None, max_length=255, description="University id")
    reason: Optional[str] = Field(None, max_length=1000)


class RoleChangeResponse(BaseModel):
    identity_id: str
    old_role: Optional[str] = None
    new_role: str
    tenant_id: Optional[str] = None
    status: str
    warnings: list[str] = Field(default_factory=list)
    required_actions: list[str] = Field(default_factory=list)


class BulkSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    direction: RemediationDirection = RemediationDirection.TO_SOURCE
    dry_run: bool = Field(False, alias="dryRun", description="Report what would change without writing")
    pending_only: bool = Field(
        False,
        alias="pendingOnly",
        description="Only identities whose last push to Clerk failed",
    )


class BulkSyncDetailResponse(BaseModel):
    identity_id: str = Field(serialization_alias="identityId")
    email: Optional[str] = None
    cached_role: Optional[str] = Field(None, serialization_alias="cachedRole")
    identity_role: Optional[str] = Field(None, serialization_alias="identityRole")
    action: str = Field(description="synced, skipped or error")
    message: str


class BulkSyncResponse(BaseModel):
    direction: RemediationDirection
    dry_run: bool = Field(serialization_alias="dryRun")
    total: int
    synced: int
    skipped: int
    errors: int
    details: list[BulkSyncDetailResponse] = Field(default_factory=list)
