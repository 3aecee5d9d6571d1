"""Schemas for the caller's own authorization view."""

from typing import Optional

from pydantic import BaseModel, Field


class MeResponse(BaseModel):
    """Effective role and permission map used for UI gating."""

    identity_id: str
    role: str = Field(description="Real role from the role cache")
    tenant_id: Optional[str] = None
    effective_role: str
    effective_tenant_id: Optional[str] = None
    effective_plan: Optional[str] = None
    impersonating: bool = False
    role_description: str
    permissions: dict[str, bool] = Field(
        default_factory=dict,
        description="Permission key -> allowed, evaluated with the effective role",
    )
