"""View-as impersonation API schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class StartImpersonationRequest(BaseModel):
    role: str = Field(min_length=1, max_length=50, description="Role to view the product as")
    tenant_id: Optional[str] = Field(
        None, max_length=255, description="University id (required for university roles)"
    )
    plan: Optional[str] = Field(None, description="free, premium or university")
    ttl_seconds: Optional[int] = Field(None, gt=0, description="Capped by the configured maximum")


class ImpersonationStatusResponse(BaseModel):
    active: bool
    role: Optional[str] = None
    tenant_id: Optional[str] = None
    plan: Optional[str] = None
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    message: Optional[str] = None
