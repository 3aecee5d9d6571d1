"""
Runtime settings for the authorization engine.

All configuration comes from environment variables, read once at process
start by AuthzSettings.from_env() and passed to the service container.

Usage:
    from authz.config.settings import AuthzSettings

    settings = AuthzSettings.from_env()
    settings.impersonation_ttl_seconds
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from authz.platform.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CLERK_API_URL = "https://api.clerk.com/v1"

# Impersonation overlay lifetime (1 hour default, 8 hour ceiling)
DEFAULT_IMPERSONATION_TTL_SECONDS = 3600
DEFAULT_IMPERSONATION_MAX_TTL_SECONDS = 8 * 3600

# Diagnostic API: how long a client waits before being told "pending"
DEFAULT_DIAGNOSTIC_CLIENT_TIMEOUT_SECONDS = 5.0
# How long an in-flight remediation blocks new checks for the identity
DEFAULT_REMEDIATION_TIMEOUT_SECONDS = 60.0

DEFAULT_IDENTITY_SOURCE_MAX_RETRIES = 3
DEFAULT_IDENTITY_SOURCE_TIMEOUT_SECONDS = 10.0


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def normalize_database_url(database_url: str) -> str:
    """Handle Render's postgres:// URL format (SQLAlchemy requires postgresql://)."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


@dataclass(frozen=True)
class AuthzSettings:
    """Immutable settings snapshot."""

    database_url: Optional[str] = None
    clerk_secret_key: Optional[str] = None
    clerk_api_url: str = DEFAULT_CLERK_API_URL
    clerk_webhook_secret: Optional[str] = None
    clerk_frontend_api: Optional[str] = None
    impersonation_ttl_seconds: int = DEFAULT_IMPERSONATION_TTL_SECONDS
    impersonation_max_ttl_seconds: int = DEFAULT_IMPERSONATION_MAX_TTL_SECONDS
    diagnostic_client_timeout_seconds: float = DEFAULT_DIAGNOSTIC_CLIENT_TIMEOUT_SECONDS
    remediation_timeout_seconds: float = DEFAULT_REMEDIATION_TIMEOUT_SECONDS
    identity_source_max_retries: int = DEFAULT_IDENTITY_SOURCE_MAX_RETRIES
    identity_source_timeout_seconds: float = DEFAULT_IDENTITY_SOURCE_TIMEOUT_SECONDS

    def __post_init__(self):
        if self.impersonation_ttl_seconds <= 0:
            raise ConfigurationError("IMPERSONATION_TTL_SECONDS must be positive")
        if self.impersonation_ttl_seconds > self.impersonation_max_ttl_seconds:
            raise ConfigurationError(
                "IMPERSONATION_TTL_SECONDS exceeds IMPERSONATION_MAX_TTL_SECONDS"
            )
        if self.diagnostic_client_timeout_seconds <= 0:
            raise ConfigurationError("DIAGNOSTIC_CLIENT_TIMEOUT_SECONDS must be positive")
        if self.identity_source_max_retries < 0:
            raise ConfigurationError("IDENTITY_SOURCE_MAX_RETRIES cannot be negative")

    @classmethod
    def from_env(cls) -> "AuthzSettings":
        """Build settings from environment variables."""
        database_url = os.getenv("DATABASE_URL")
        settings = cls(
            database_url=normalize_database_url(database_url) if database_url else None,
            clerk_secret_key=os.getenv("CLERK_SECRET_KEY"),
            clerk_api_url=os.getenv("CLERK_API_URL", DEFAULT_CLERK_API_URL).rstrip("/"),
            clerk_webhook_secret=os.getenv("CLERK_WEBHOOK_SECRET"),
            clerk_frontend_api=os.getenv("CLERK_FRONTEND_API"),
            impersonation_ttl_seconds=_get_int(
                "IMPERSONATION_TTL_SECONDS", DEFAULT_IMPERSONATION_TTL_SECONDS
            ),
            impersonation_max_ttl_seconds=_get_int(
                "IMPERSONATION_MAX_TTL_SECONDS", DEFAULT_IMPERSONATION_MAX_TTL_SECONDS
            ),
            diagnostic_client_timeout_seconds=_get_float(
                "DIAGNOSTIC_CLIENT_TIMEOUT_SECONDS", DEFAULT_DIAGNOSTIC_CLIENT_TIMEOUT_SECONDS
            ),
            remediation_timeout_seconds=_get_float(
                "REMEDIATION_TIMEOUT_SECONDS", DEFAULT_REMEDIATION_TIMEOUT_SECONDS
            ),
            identity_source_max_retries=_get_int(
                "IDENTITY_SOURCE_MAX_RETRIES", DEFAULT_IDENTITY_SOURCE_MAX_RETRIES
            ),
            identity_source_timeout_seconds=_get_float(
                "IDENTITY_SOURCE_TIMEOUT_SECONDS", DEFAULT_IDENTITY_SOURCE_TIMEOUT_SECONDS
            ),
        )

        env_status = {
            "DATABASE_URL": "set" if settings.database_url else "missing",
            "CLERK_SECRET_KEY": "set" if settings.clerk_secret_key else "missing",
            "CLERK_WEBHOOK_SECRET": "set" if settings.clerk_webhook_secret else "missing",
            "CLERK_FRONTEND_API": "set" if settings.clerk_frontend_api else "missing",
        }
        logger.info("Loaded authz settings", extra={"env_status": env_status})
        return settings
