"""
Exception hierarchy for the authorization engine.

Services raise these; routes translate them to HTTP responses. Messages are
safe to log but routes return generic details to clients.
"""

from typing import Any, Optional


class AuthzError(Exception):
    """Base exception for authorization engine errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(AuthzError):
    """Static configuration (permission matrix, settings) is invalid."""
    pass


class UnknownPermissionError(ConfigurationError):
    """A permission key was used that the matrix does not define."""

    def __init__(self, permission: str):
        super().__init__(
            f"Unknown permission key: {permission}",
            details={"permission": permission},
        )
        self.permission = permission


class InvalidRoleError(AuthzError, ValueError):
    """A role value is not one of the closed set of roles."""

    def __init__(self, value: Any):
        super().__init__(
            f"Unrecognized role value: {value!r}",
            details={"value": repr(value)},
        )
        self.value = value


class PermissionDeniedError(AuthzError):
    """The actor is not allowed to perform the requested operation."""

    def __init__(self, permission: str, actor_id: Optional[str] = None):
        super().__init__(
            "You do not have permission to perform this action",
            details={"required": permission},
        )
        self.permission = permission
        self.actor_id = actor_id


class IdentityNotFoundError(AuthzError):
    """Identity does not exist in the identity provider or the role store."""

    def __init__(self, identity: str):
        super().__init__(f"Identity not found: {identity}", details={"identity": identity})
        self.identity = identity


class IdentitySourceError(AuthzError):
    """Call to the identity provider failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        is_retryable: bool = False,
    ):
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code
        self.is_retryable = is_retryable


class AppendOnlyViolationError(AuthzError):
    """Attempt to update or delete an audit row."""
    pass


class RoleTransitionError(AuthzError):
    """Requested role change violates a role transition rule."""
    pass


class ImpersonationError(AuthzError):
    """A view-as overlay request cannot be honored."""
    pass
