"""
Clerk Webhook Handler for role synchronization.

Handles the following event types:
- user.created, user.updated

Other event types are acknowledged and ignored.

Deliveries are at-least-once and may arrive out of order. Each user payload
carries Clerk's updated_at (epoch ms); a notification older than the state
already cached is discarded, and a repeat of the cached state is a no-op.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session
from svix.webhooks import Webhook, WebhookVerificationError

from authz.constants.permissions import DEFAULT_ROLE, role_requires_tenant, try_parse_role
from authz.models.role_audit_log import RoleChangeSource
from authz.services.clerk_identity_source import IdentityClaim
from authz.services.role_store import (
    ApplyStatus,
    Performer,
    RoleChange,
    RoleStore,
    SYSTEM_PERFORMER,
)

logger = logging.getLogger(__name__)

SUPPORTED_EVENTS = frozenset({"user.created", "user.updated"})

WEBHOOK_PERFORMER = Performer(
    identity_id=SYSTEM_PERFORMER.identity_id,
    display_name="Clerk webhook",
)


class WebhookSignatureError(Exception):
    """Webhook signature is missing or does not verify."""
    pass


def verify_clerk_webhook(
    payload: bytes,
    svix_id: Optional[str],
    svix_timestamp: Optional[str],
    svix_signature: Optional[str],
    webhook_secret: str,
) -> dict[str, Any]:
    """
    Verify a Clerk webhook signature using Svix and return the parsed body.

    Clerk uses Svix for webhook delivery. The signature covers:
    - svix-id: Unique message identifier
    - svix-timestamp: Unix timestamp of the message (replay window enforced)
    - svix-signature: Signature(s) to verify

    Raises:
        WebhookSignatureError: If any header is missing or the signature is
            invalid or malformed
        ValueError: If the verified body is not JSON
    """
    if not all([svix_id, svix_timestamp, svix_signature]):
        raise WebhookSignatureError("Missing Svix headers")

    try:
        Webhook(webhook_secret).verify(
            payload,
            {
                "svix-id": svix_id,
                "svix-timestamp": svix_timestamp,
                "svix-signature": svix_signature,
            },
        )
    except (WebhookVerificationError, ValueError) as e:
        # Malformed signature headers surface as ValueError (binascii.Error)
        raise WebhookSignatureError(str(e) or type(e).__name__) from e

    return json.loads(payload)


@dataclass
class WebhookResult:
    """Outcome of one webhook event."""
    status: str
    identity_id: Optional[str] = None
    role: Optional[str] = None
    reason: Optional[str] = None


class ClerkWebhookHandler:
    """
    Handler for Clerk webhook events.

    Applies user role state to the role store; the store writes the matching
    audit entry in the same transaction.
    """

    def __init__(self, session: Session):
        self.session = session
        self.role_store = RoleStore(session)

    def handle_event(self, event_type: str, payload: dict[str, Any]) -> WebhookResult:
        """
        Route webhook event to the appropriate handler.

        Raises:
            ValueError: If the payload is malformed
            InvalidRoleError: If the role claim is not a known role
        """
        if event_type not in SUPPORTED_EVENTS:
            logger.info("Ignoring Clerk webhook event", extra={"event_type": event_type})
            return WebhookResult(status="ignored", reason=f"Unsupported event type: {event_type}")

        data = payload.get("data")
        if not isinstance(data, dict):
            raise ValueError("Missing user data in payload")

        return self.handle_user_event(event_type, data)

    def handle_user_event(self, event_type: str, data: dict[str, Any]) -> WebhookResult:
        """
        Handle user.created / user.updated.

        A user without a role claim is created with the default role; an
        existing record keeps its role and only has profile fields refreshed.
        """
        claim = IdentityClaim.from_clerk_user(data)
        role = claim.parse_role_claim()
        existing = self.role_store.get(claim.identity_id)

        if role is None:
            if existing is None:
                role, tenant_id = DEFAULT_ROLE, None
            else:
                role = try_parse_role(existing.role) or DEFAULT_ROLE
                tenant_id = existing.tenant_id
        else:
            tenant_id = claim.tenant_id

        if role_requires_tenant(role) and not tenant_id:
            logger.warning(
                "Clerk user has university role without university_id",
                extra={"identity_id": claim.identity_id, "role": role.value},
            )

        result = self.role_store.apply_change(
            RoleChange(
                identity_id=claim.identity_id,
                role=role,
                tenant_id=tenant_id,
                email=claim.email,
                display_name=claim.display_name,
                source_updated_at_ms=claim.updated_at_ms,
            ),
            source=RoleChangeSource.CLERK_WEBHOOK,
            performed_by=WEBHOOK_PERFORMER,
            reason=f"Synced from Clerk ({event_type})",
        )

        logger.info(
            "Processed Clerk user event",
            extra={
                "event_type": event_type,
                "identity_id": claim.identity_id,
                "status": result.status.value,
            },
        )
        return WebhookResult(
            status=result.status.value,
            identity_id=claim.identity_id,
            role=result.record.role if result.record else None,
            reason="Older than cached state" if result.status is ApplyStatus.STALE else None,
        )
