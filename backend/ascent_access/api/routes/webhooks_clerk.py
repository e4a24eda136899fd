"""
Clerk session webhooks.

SECURITY: All webhooks MUST verify the Svix signature before processing.
Clerk uses Svix for webhook delivery and signature verification.

Documentation: https://clerk.com/docs/webhooks

Sessions that end in Clerk (sign-out on any device, expiry, revocation from
the dashboard) are reported here so that the impersonation overlay owned by
that session is dropped. Other event types are acknowledged and ignored.

Supported Events:
- session.ended, session.removed, session.revoked
"""

import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from svix.webhooks import Webhook, WebhookVerificationError

from ascent_access.api.dependencies.guards import get_access_engine
from ascent_access.platform.guard import AccessEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SESSION_END_EVENTS = frozenset({"session.ended", "session.removed", "session.revoked"})


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    status: str = "processed"
    message: Optional[str] = None


def verify_clerk_webhook(
    payload: bytes,
    svix_id: str,
    svix_timestamp: str,
    svix_signature: str,
    webhook_secret: str,
) -> Optional[dict]:
    """
    Verify a Clerk webhook signature using Svix.

    Args:
        payload: Raw request body bytes
        svix_id: Svix-Id header
        svix_timestamp: Svix-Timestamp header
        svix_signature: Svix-Signature header
        webhook_secret: Clerk webhook signing secret (whsec_...)

    Returns:
        The parsed payload if the signature is valid, None otherwise
    """
    if not all([svix_id, svix_timestamp, svix_signature]):
        logger.warning("Missing Svix headers")
        return None

    try:
        return Webhook(webhook_secret).verify(
            payload,
            {
                "svix-id": svix_id,
                "svix-timestamp": svix_timestamp,
                "svix-signature": svix_signature,
            },
        )
    except WebhookVerificationError as e:
        logger.warning("Webhook signature verification failed", extra={"error": str(e)})
        return None


@router.post("/clerk", response_model=WebhookResponse)
async def handle_clerk_webhook(
    request: Request,
    engine: AccessEngine = Depends(get_access_engine),
    svix_id: Optional[str] = Header(None, alias="svix-id"),
    svix_timestamp: Optional[str] = Header(None, alias="svix-timestamp"),
    svix_signature: Optional[str] = Header(None, alias="svix-signature"),
):
    """
    Handle Clerk session webhooks.

    Security:
    - Verifies Svix signature using CLERK_WEBHOOK_SECRET
    - Rejects requests with invalid or missing signatures
    - Does not require JWT authentication (webhooks are server-to-server)

    Returns:
        WebhookResponse with processing status
    """
    webhook_secret = os.getenv("CLERK_WEBHOOK_SECRET")
    if not webhook_secret:
        logger.error("CLERK_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook handler not configured",
        )

    body = await request.body()
    payload = verify_clerk_webhook(
        payload=body,
        svix_id=svix_id or "",
        svix_timestamp=svix_timestamp or "",
        svix_signature=svix_signature or "",
        webhook_secret=webhook_secret,
    )
    if payload is None:
        logger.warning(
            "Clerk webhook signature verification failed",
            extra={
                "svix_id": svix_id,
                "has_timestamp": bool(svix_timestamp),
                "has_signature": bool(svix_signature),
            },
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    event_type = payload.get("type")
    if not event_type:
        logger.warning("Missing event type in webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing event type",
        )

    logger.info("Received Clerk webhook", extra={"event_type": event_type, "svix_id": svix_id})

    if event_type not in SESSION_END_EVENTS:
        return WebhookResponse(status="ignored", message=f"Event {event_type} not handled")

    data = payload.get("data") or {}
    session_id = data.get("id")
    subject_id = data.get("user_id")
    if not session_id or not subject_id:
        logger.warning(
            "Session webhook without session or user id",
            extra={"event_type": event_type, "svix_id": svix_id},
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Session event requires data.id and data.user_id",
        )

    engine.end_session_for(subject_id, session_id)
    logger.info(
        "Processed Clerk session end",
        extra={"event_type": event_type, "subject_id": subject_id, "session_id": session_id},
    )
    return WebhookResponse(message=f"Event {event_type} processed successfully")
