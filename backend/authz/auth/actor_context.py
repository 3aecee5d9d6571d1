"""
Actor resolution for authenticated requests.

Every protected route resolves its actor through these dependencies:

    get_authenticated_identity  Clerk session JWT -> (identity id, session id)
    get_actor                   + real role from the role store
    get_effective_actor         + view-as overlay for this session, if any

Clerk JWT Claims:
- sub: Clerk user id (identity id)
- sid: Clerk session id (keys the impersonation overlay)

The role is never taken from the token; the role store is authoritative for
request-time checks.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient, PyJWKClientError
from jwt.exceptions import InvalidTokenError
from sqlalchemy.orm import Session

from authz.auth.actor import ActorContext
from authz.database.session import get_db_session
from authz.services.role_store import RoleStore

logger = logging.getLogger(__name__)

# Security scheme for extracting Bearer token
security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Verified claims of a Clerk session token."""
    identity_id: str
    session_id: Optional[str] = None


class ClerkSessionVerifier:
    """
    Verifies Clerk session JWTs against the instance JWKS.

    Uses PyJWT's PyJWKClient for JWKS fetching and caching.

    Clerk JWKS endpoint: https://<clerk-frontend-api>/.well-known/jwks.json
    """

    def __init__(self, clerk_frontend_api: str):
        self.clerk_frontend_api = clerk_frontend_api.rstrip("/")
        if not self.clerk_frontend_api.startswith("http"):
            self.clerk_frontend_api = f"https://{self.clerk_frontend_api}"
        # Clerk issuer is the frontend API URL
        self.issuer = self.clerk_frontend_api
        self.jwks_url = f"{self.clerk_frontend_api}/.well-known/jwks.json"
        self._jwks_client = PyJWKClient(self.jwks_url)
        logger.info("Clerk JWKS client initialized", extra={"jwks_url": self.jwks_url})

    def verify(self, token: str) -> AuthenticatedIdentity:
        """
        Verify a session token.

        Raises:
            InvalidTokenError: If the token is invalid, expired or has no subject
            PyJWKClientError: If the signing key cannot be resolved
        """
        signing_key = self._jwks_client.get_signing_key_from_jwt(token)
        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            issuer=self.issuer,
            options={
                "verify_signature": True,
                "verify_aud": False,  # Clerk doesn't always include aud claim
                "verify_iss": True,
                "verify_exp": True,
            },
        )
        identity_id = payload.get("sub")
        if not identity_id:
            raise InvalidTokenError("Token has no subject")
        return AuthenticatedIdentity(identity_id=identity_id, session_id=payload.get("sid"))


def get_authenticated_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthenticatedIdentity:
    """
    FastAPI dependency: verify the Bearer token.

    Raises 401 for a missing or invalid token, 503 if Clerk is not configured.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    services = getattr(request.app.state, "services", None)
    verifier = services.session_verifier if services is not None else None
    if verifier is None:
        logger.error("CLERK_FRONTEND_API not configured; cannot verify session tokens")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication not configured",
        )

    try:
        identity = verifier.verify(credentials.credentials)
    except (InvalidTokenError, PyJWKClientError) as e:
        logger.warning(
            "Invalid session token",
            extra={"error": str(e), "path": request.url.path},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    request.state.identity_id = identity.identity_id
    return identity


def get_actor(
    identity: AuthenticatedIdentity = Depends(get_authenticated_identity),
    db: Session = Depends(get_db_session),
) -> ActorContext:
    """
    FastAPI dependency: the caller with their REAL role.

    Raises 403 when the identity has no usable cached role.
    """
    record = RoleStore(db).get(identity.identity_id)
    role = record.role_enum if record is not None else None
    if role is None:
        logger.warning(
            "Authenticated identity has no usable role",
            extra={
                "user_id": identity.identity_id,
                "cached_role": record.role if record is not None else None,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No role assigned to this account",
        )

    return ActorContext(
        identity_id=identity.identity_id,
        role=role,
        tenant_id=record.tenant_id,
        session_id=identity.session_id,
        email=record.email,
        display_name=record.display_name,
    )


def get_effective_actor(
    request: Request,
    actor: ActorContext = Depends(get_actor),
) -> ActorContext:
    """FastAPI dependency: the caller with any active view-as overlay applied."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        return actor
    return services.impersonation.apply(actor)
