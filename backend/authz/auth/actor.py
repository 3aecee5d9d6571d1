"""
Authenticated actor as seen by authorization checks.

ActorContext carries the actor's real role (from the role store) and,
when a view-as overlay is active for the actor's session, the overlay.
The evaluator only ever sees effective_role / effective_tenant_id.
"""

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Optional

from authz.constants.permissions import Plan, Role

if TYPE_CHECKING:
    from authz.services.impersonation import ImpersonationSession


@dataclass(frozen=True)
class ActorContext:
    """Immutable actor for a single request."""

    identity_id: str
    role: Role
    tenant_id: Optional[str] = None
    session_id: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None
    impersonation: Optional["ImpersonationSession"] = None

    @property
    def is_impersonating(self) -> bool:
        return self.impersonation is not None

    @property
    def effective_role(self) -> Role:
        if self.impersonation is not None:
            return self.impersonation.assumed_role
        return self.role

    @property
    def effective_tenant_id(self) -> Optional[str]:
        if self.impersonation is not None:
            return self.impersonation.assumed_tenant_id
        return self.tenant_id

    @property
    def effective_plan(self) -> Optional[Plan]:
        if self.impersonation is not None:
            return self.impersonation.assumed_plan
        return None

    def with_impersonation(self, session: Optional["ImpersonationSession"]) -> "ActorContext":
        return replace(self, impersonation=session)

    def without_impersonation(self) -> "ActorContext":
        return replace(self, impersonation=None)

    def __repr__(self) -> str:
        return (
            f"ActorContext(identity_id={self.identity_id}, role={self.role.value}, "
            f"tenant_id={self.tenant_id}, effective_role={self.effective_role.value})"
        )
