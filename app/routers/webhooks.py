"""
Gateway webhooks.

The signature is verified against the raw body before anything is parsed or
stored. Processed events answer 200 even on redelivery; transient failures
answer 500 so the gateway redelivers.
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional
import json
import logging

import stripe

from ..config import settings
from ..container import ServiceContainer
from ..database import get_db
from ..schemas.payment import WebhookAck
from ..utils.dependencies import get_container
from ..utils.metrics import record_webhook_event
from ..utils.rate_limiter import limiter, get_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=WebhookAck)
@limiter.limit(get_rate_limit("webhook"))
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container)
):
    if not settings.stripe_webhook_secret:
        logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook secret not configured"
        )
    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing signature")

    payload = await request.body()
    try:
        stripe.Webhook.construct_event(payload, stripe_signature, settings.stripe_webhook_secret)
    except stripe.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        record_webhook_event("unknown", "rejected")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    # Plain dicts from here on, the payload is verified
    event = json.loads(payload)
    request_id = getattr(request.state, "request_id", None)

    received = container.webhook_receiver(db, request_id=request_id).receive(event)
    if not received.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=received.error)

    if received.already_processed:
        record_webhook_event(event.get("type") or "unknown", "duplicate")
        return WebhookAck(
            event_id=event.get("id"),
            status="duplicate",
            action=received.event_log.result_action if received.event_log else None,
            booking_id=received.event_log.result_booking_id if received.event_log else None,
        )

    result = container.webhook_processor(db).process_event(received.event_log, event)
    ack = WebhookAck(
        event_id=event.get("id"),
        status="processed" if result.success else "failed",
        action=result.action,
        booking_id=result.booking_id,
    )
    if not result.success and result.retryable:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=ack.model_dump())
    return ack
