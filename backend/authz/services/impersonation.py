"""
View-as impersonation overlay.

A privileged actor can temporarily see the product as another role (and
optionally another university or plan). The overlay:
- is keyed by the actor's auth session id, so other sessions never see it
- lives in memory only; RoleRecord is never touched
- expires after a bounded TTL
- is not a role change and is never written to the role audit log

Only the actor's REAL role is checked against admin.impersonate, so an
overlay can never be used to start another overlay.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from authz.auth.actor import ActorContext
from authz.constants.permissions import (
    IMPERSONATABLE_ROLES,
    Permission,
    Plan,
    Role,
    parse_role,
    role_requires_tenant,
)
from authz.models.base import utc_now
from authz.platform.errors import ImpersonationError, PermissionDeniedError
from authz.platform.rbac import evaluate

logger = logging.getLogger(__name__)

# Expired overlays of sessions that never come back are swept at most this often
PURGE_INTERVAL = timedelta(minutes=5)


def default_plan_for(role: Role) -> Plan:
    """University roles run on the university plan; everyone else starts free."""
    if role_requires_tenant(role):
        return Plan.UNIVERSITY
    return Plan.FREE


@dataclass(frozen=True)
class ImpersonationSession:
    """One active overlay."""
    session_id: str
    base_identity_id: str
    assumed_role: Role
    assumed_tenant_id: Optional[str]
    assumed_plan: Plan
    started_at: datetime
    ttl_seconds: int

    @property
    def expires_at(self) -> datetime:
        return self.started_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


def can_impersonate(actor: ActorContext) -> bool:
    return evaluate(Permission.ADMIN_IMPERSONATE, actor.role, actor.identity_id)


class ImpersonationOverlay:
    """
    In-memory overlay store.

    Created once per process by the service container.
    """

    def __init__(
        self,
        ttl_seconds: int,
        max_ttl_seconds: int,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_ttl_seconds = max_ttl_seconds
        self._clock = clock
        self._sessions: dict[str, ImpersonationSession] = {}
        self._last_purge_at: Optional[datetime] = None

    def start(
        self,
        actor: ActorContext,
        session_id: Optional[str],
        assumed_role: Any,
        assumed_tenant_id: Optional[str] = None,
        assumed_plan: Optional[Any] = None,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[ImpersonationSession]:
        """
        Activate an overlay for the actor's session.

        Returns:
            The new session, or None when a university role was chosen
            without a university (nothing is activated)

        Raises:
            PermissionDeniedError: If the actor's real role cannot impersonate
            InvalidRoleError: If assumed_role is not a role
            ImpersonationError: If the role cannot be assumed or there is no session
        """
        self._maybe_purge()
        if not can_impersonate(actor):
            logger.warning(
                "security.impersonation_denied",
                extra={
                    "user_id": actor.identity_id,
                    "role": actor.role.value,
                    "requested_role": str(assumed_role),
                },
            )
            raise PermissionDeniedError(Permission.ADMIN_IMPERSONATE.value, actor.identity_id)

        if not session_id:
            raise ImpersonationError("Impersonation requires an authenticated session")

        role = parse_role(assumed_role)
        if role not in IMPERSONATABLE_ROLES:
            raise ImpersonationError(
                f"Role '{role.value}' cannot be impersonated",
                details={"role": role.value},
            )

        tenant_id = assumed_tenant_id or None
        if role_requires_tenant(role) and tenant_id is None:
            logger.info(
                "Impersonation not started: university required",
                extra={"user_id": actor.identity_id, "requested_role": role.value},
            )
            return None
        if not role_requires_tenant(role):
            tenant_id = None

        plan = Plan(assumed_plan) if assumed_plan is not None else default_plan_for(role)
        ttl = min(ttl_seconds or self.ttl_seconds, self.max_ttl_seconds)
        if ttl <= 0:
            raise ImpersonationError("Impersonation TTL must be positive")

        session = ImpersonationSession(
            session_id=session_id,
            base_identity_id=actor.identity_id,
            assumed_role=role,
            assumed_tenant_id=tenant_id,
            assumed_plan=plan,
            started_at=self._clock(),
            ttl_seconds=ttl,
        )
        self._sessions[session_id] = session

        logger.info(
            "Impersonation started",
            extra={
                "user_id": actor.identity_id,
                "assumed_role": role.value,
                "assumed_tenant_id": tenant_id,
                "assumed_plan": plan.value,
                "expires_at": session.expires_at.isoformat(),
            },
        )
        return session

    def stop(self, session_id: Optional[str]) -> bool:
        """Clear the overlay for a session. Returns True if one was active."""
        if not session_id:
            return False
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.info(
                "Impersonation stopped",
                extra={"user_id": session.base_identity_id, "assumed_role": session.assumed_role.value},
            )
        return session is not None

    def get_active(self, session_id: Optional[str]) -> Optional[ImpersonationSession]:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if session.is_expired(self._clock()):
            self._sessions.pop(session_id, None)
            logger.info(
                "Impersonation expired",
                extra={"user_id": session.base_identity_id, "assumed_role": session.assumed_role.value},
            )
            return None
        return session

    def apply(self, actor: ActorContext) -> ActorContext:
        """
        Return the actor with its session's overlay attached, if any.

        An overlay is only honored for the identity that started it and
        while that identity's real role may still impersonate.
        """
        self._maybe_purge()
        session = self.get_active(actor.session_id)
        if session is None or session.base_identity_id != actor.identity_id:
            return actor.without_impersonation()
        if not can_impersonate(actor):
            self._sessions.pop(session.session_id, None)
            logger.warning(
                "security.impersonation_revoked",
                extra={"user_id": actor.identity_id, "role": actor.role.value},
            )
            return actor.without_impersonation()
        return actor.with_impersonation(session)

    def _maybe_purge(self) -> None:
        now = self._clock()
        if self._last_purge_at is None or now - self._last_purge_at >= PURGE_INTERVAL:
            self.purge_expired()

    def purge_expired(self) -> int:
        now = self._clock()
        self._last_purge_at = now
        expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for sid in expired:
            self._sessions.pop(sid, None)
        if expired:
            logger.info("Expired impersonation overlays purged", extra={"count": len(expired)})
        return len(expired)

    @property
    def active_count(self) -> int:
        return len(self._sessions)
