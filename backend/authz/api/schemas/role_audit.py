"""Role audit log API schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RoleAuditEntryResponse(BaseModel):
    """Single role change."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    target_identity_id: str
    target_name: Optional[str] = None
    target_email: Optional[str] = None
    old_role: Optional[str] = None
    new_role: str
    old_tenant_id: Optional[str] = None
    new_tenant_id: Optional[str] = None
    performed_by_id: str
    performed_by_name: Optional[str] = None
    source: str
    reason: Optional[str] = None
    timestamp: datetime


class RoleAuditPageResponse(BaseModel):
    entries: list[RoleAuditEntryResponse] = Field(default_factory=list)
    total: int
    page: int
    page_size: int = Field(serialization_alias="pageSize")
    has_more: bool = Field(serialization_alias="hasMore")
