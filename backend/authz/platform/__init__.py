"""
Platform-level modules for authorization enforcement.

This package contains:
- rbac: the permission evaluator and the FastAPI permission guard
- errors: the exception hierarchy shared by services and routes

rbac is imported from its module directly; this package only re-exports
errors so that constants can depend on it without an import cycle.
"""

from authz.platform.errors import (
    AuthzError,
    ConfigurationError,
    UnknownPermissionError,
    InvalidRoleError,
    PermissionDeniedError,
    IdentityNotFoundError,
    IdentitySourceError,
    AppendOnlyViolationError,
    RoleTransitionError,
)

__all__ = [
    "AuthzError",
    "ConfigurationError",
    "UnknownPermissionError",
    "InvalidRoleError",
    "PermissionDeniedError",
    "IdentityNotFoundError",
    "IdentitySourceError",
    "AppendOnlyViolationError",
    "RoleTransitionError",
]
