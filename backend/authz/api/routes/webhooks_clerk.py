"""
Clerk webhook endpoint for role synchronization.

SECURITY: All webhooks MUST verify the Svix signature before processing.
Clerk uses Svix for webhook delivery and signature verification.

Documentation: https://clerk.com/docs/webhooks

Supported Events:
- user.created, user.updated

Responses:
- 401: missing/invalid signature (logged as a security event, nothing applied)
- 400: malformed payload or unrecognized role claim (nothing applied)
- 503: webhook secret not configured, or persistent write conflicts (Clerk retries)
- 200: processed, ignored, unchanged or stale
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from authz.database.session import get_db_session
from authz.platform.errors import InvalidRoleError
from authz.services.clerk_webhook_handler import (
    ClerkWebhookHandler,
    WebhookSignatureError,
    verify_clerk_webhook,
)
from authz.services.container import AuthzServices, get_services
from authz.services.role_store import RoleWriteConflictError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    status: str = "processed"
    message: Optional[str] = None


@router.post("/clerk", response_model=WebhookResponse)
async def handle_clerk_webhook(
    request: Request,
    svix_id: Optional[str] = Header(None, alias="svix-id"),
    svix_timestamp: Optional[str] = Header(None, alias="svix-timestamp"),
    svix_signature: Optional[str] = Header(None, alias="svix-signature"),
    services: AuthzServices = Depends(get_services),
    db: Session = Depends(get_db_session),
):
    """
    Handle incoming Clerk webhooks.

    Does not require JWT authentication (webhooks are server-to-server);
    the Svix signature is the only credential.
    """
    webhook_secret = services.settings.clerk_webhook_secret
    if not webhook_secret:
        logger.error("CLERK_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook handler not configured",
        )

    body = await request.body()

    try:
        payload = verify_clerk_webhook(
            payload=body,
            svix_id=svix_id,
            svix_timestamp=svix_timestamp,
            svix_signature=svix_signature,
            webhook_secret=webhook_secret,
        )
    except WebhookSignatureError as e:
        logger.warning(
            "security.webhook_signature_invalid",
            extra={
                "svix_id": svix_id,
                "has_timestamp": bool(svix_timestamp),
                "has_signature": bool(svix_signature),
                "error": str(e),
                "client_host": request.client.host if request.client else None,
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )
    except ValueError as e:
        logger.warning(f"Invalid JSON in webhook payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )

    event_type = payload.get("type")
    if not event_type:
        logger.warning("Missing event type in webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing event type",
        )

    logger.info(
        "Received Clerk webhook",
        extra={"event_type": event_type, "svix_id": svix_id},
    )

    try:
        result = ClerkWebhookHandler(db).handle_event(event_type, payload)
    except InvalidRoleError as e:
        logger.warning(
            "clerk_webhook.invalid_role",
            extra={"event_type": event_type, "svix_id": svix_id, "value": e.details.get("value")},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unrecognized role in user metadata",
        )
    except ValueError as e:
        logger.warning(f"Invalid webhook data: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )
    except RoleWriteConflictError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Concurrent update, retry later",
        )

    return WebhookResponse(
        received=True,
        status=result.status,
        message=result.reason or f"Event {event_type} processed",
    )
