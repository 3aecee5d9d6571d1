"""
Clerk identity source adapter.

Clerk is the source of truth for roles. The role lives in the user's
public_metadata.role, the university in public_metadata.university_id.

Outbound calls use the Clerk Backend API:
- GET   /users/{user_id}                   fetch one identity
- GET   /users?email_address=...           look up by email
- PATCH /users/{user_id}/metadata          merge public_metadata (idempotent)

Transient failures (network errors, 429, 5xx) are retried with exponential
backoff; everything else fails immediately.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from authz.constants.permissions import Role, parse_role, try_parse_role
from authz.platform.errors import IdentityNotFoundError, IdentitySourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 0.5
DEFAULT_MAX_DELAY_SECONDS = 8.0
DEFAULT_TIMEOUT_SECONDS = 10.0

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

ROLE_METADATA_KEY = "role"
TENANT_METADATA_KEY = "university_id"


def get_primary_email(user_data: dict[str, Any]) -> Optional[str]:
    """
    Extract primary email from Clerk user data.

    Clerk stores emails in email_addresses array with one marked as primary.
    """
    email_addresses = user_data.get("email_addresses") or []

    for email_obj in email_addresses:
        if email_obj.get("id") == user_data.get("primary_email_address_id"):
            return email_obj.get("email_address")

    if email_addresses:
        return email_addresses[0].get("email_address")

    return None


def get_display_name(user_data: dict[str, Any]) -> Optional[str]:
    parts = [user_data.get("first_name"), user_data.get("last_name")]
    name = " ".join(p.strip() for p in parts if p and p.strip())
    return name or user_data.get("username") or None


@dataclass(frozen=True)
class IdentityClaim:
    """
    Read-only view of an identity as Clerk reports it.

    role_claim is the raw metadata value; it is only trusted after parsing.
    """
    identity_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    role_claim: Any = None
    tenant_id: Optional[str] = None
    updated_at_ms: Optional[int] = None

    @classmethod
    def from_clerk_user(cls, user_data: dict[str, Any]) -> "IdentityClaim":
        identity_id = user_data.get("id")
        if not identity_id or not isinstance(identity_id, str):
            raise ValueError("Clerk user payload has no id")

        metadata = user_data.get("public_metadata") or {}
        tenant_id = metadata.get(TENANT_METADATA_KEY)
        updated_at = user_data.get("updated_at")

        return cls(
            identity_id=identity_id,
            email=get_primary_email(user_data),
            display_name=get_display_name(user_data),
            role_claim=metadata.get(ROLE_METADATA_KEY),
            tenant_id=str(tenant_id) if tenant_id else None,
            updated_at_ms=int(updated_at) if isinstance(updated_at, (int, float)) else None,
        )

    @property
    def has_role_claim(self) -> bool:
        return self.role_claim is not None

    @property
    def role(self) -> Optional[Role]:
        """Parsed role, or None if the claim is missing or unrecognized."""
        return try_parse_role(self.role_claim)

    def parse_role_claim(self) -> Optional[Role]:
        """
        Strictly parse the role claim.

        Returns:
            The role, or None if the identity carries no role claim

        Raises:
            InvalidRoleError: If a claim is present but not a known role
        """
        if self.role_claim is None:
            return None
        return parse_role(self.role_claim)


class ClerkIdentitySource:
    """
    Async client for the Clerk Backend API.

    Usage:
        async with ClerkIdentitySource(secret_key) as source:
            claim = await source.fetch_user("user_123")
    """

    def __init__(
        self,
        secret_key: Optional[str],
        api_url: str = "https://api.clerk.com/v1",
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client with auth headers."""
        if not self.secret_key:
            raise IdentitySourceError("CLERK_SECRET_KEY is not configured")
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # =========================================================================
    # Retry
    # =========================================================================

    def _calculate_backoff_delay(self, attempt: int) -> float:
        """
        Calculate exponential backoff delay.

        Args:
            attempt: Current attempt number (0-indexed)
        """
        delay = self.base_delay_seconds * (2 ** attempt)
        return min(delay, self.max_delay_seconds)

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await call()
            except IdentitySourceError as e:
                if not e.is_retryable or attempt >= self.max_retries:
                    logger.error(
                        "identity_source.call_failed",
                        extra={
                            "operation": operation,
                            "attempts": attempt + 1,
                            "status_code": e.status_code,
                            "error": e.message,
                        },
                    )
                    raise
                delay = self._calculate_backoff_delay(attempt)
                logger.warning(
                    "identity_source.retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt + 1,
                        "delay_seconds": delay,
                        "status_code": e.status_code,
                    },
                )
                attempt += 1
                await asyncio.sleep(delay)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise IdentitySourceError(
                f"Clerk request failed: {type(e).__name__}",
                is_retryable=True,
            ) from e

        if response.status_code >= 400 and response.status_code != 404:
            raise IdentitySourceError(
                f"Clerk API returned {response.status_code}",
                status_code=response.status_code,
                is_retryable=response.status_code in RETRYABLE_STATUS_CODES,
            )
        return response

    # =========================================================================
    # Operations
    # =========================================================================

    async def fetch_user(self, identity_id: str) -> IdentityClaim:
        """
        Fetch an identity by Clerk user id.

        Raises:
            IdentityNotFoundError: If Clerk has no such user
            IdentitySourceError: On non-retryable or exhausted failures
        """
        async def call() -> IdentityClaim:
            response = await self._request("GET", f"/users/{identity_id}")
            if response.status_code == 404:
                raise IdentityNotFoundError(identity_id)
            return IdentityClaim.from_clerk_user(response.json())

        return await self._with_retry("fetch_user", call)

    async def find_user_by_email(self, email: str) -> Optional[IdentityClaim]:
        """Look up an identity by email address. Returns None if absent."""
        normalized = email.strip().lower()

        async def call() -> Optional[IdentityClaim]:
            response = await self._request(
                "GET", "/users", params={"email_address": normalized}
            )
            if response.status_code == 404:
                return None
            users = response.json()
            if isinstance(users, dict):
                users = users.get("data") or []
            if not users:
                return None
            return IdentityClaim.from_clerk_user(users[0])

        return await self._with_retry("find_user_by_email", call)

    async def push_role(
        self,
        identity_id: str,
        role: Role,
        tenant_id: Optional[str],
    ) -> IdentityClaim:
        """
        Write role and university to the identity's public_metadata.

        Clerk merges public_metadata, so repeating the call is harmless.
        A null university_id removes the key.

        Returns:
            The identity as Clerk reports it after the update
        """
        payload = {
            "public_metadata": {
                ROLE_METADATA_KEY: role.value,
                TENANT_METADATA_KEY: tenant_id,
            }
        }

        async def call() -> IdentityClaim:
            response = await self._request(
                "PATCH", f"/users/{identity_id}/metadata", json=payload
            )
            if response.status_code == 404:
                raise IdentityNotFoundError(identity_id)
            return IdentityClaim.from_clerk_user(response.json())

        claim = await self._with_retry("push_role", call)
        logger.info(
            "Pushed role to Clerk",
            extra={"identity_id": identity_id, "role": role.value, "tenant_id": tenant_id},
        )
        return claim
