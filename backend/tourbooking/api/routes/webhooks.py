"""
Stripe webhook receiver.

Signature failures are rejected with 400. Any processing error returns 500
so Stripe redelivers; handlers are idempotent, so a redelivery is safe.
"""

import json

import stripe
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from tourbooking.api.deps import get_notifier
from tourbooking.core.config import get_settings
from tourbooking.core.logging import get_logger
from tourbooking.db.session import get_db
from tourbooking.services.notification_service import Notifier
from tourbooking.services.payment_service import handle_webhook_event

logger = get_logger(__name__)
router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    payload = await request.body()
    if not stripe_signature:
        logger.warning("webhook_missing_signature")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": "Missing signature"})
    try:
        stripe.Webhook.construct_event(payload, stripe_signature, get_settings().STRIPE_WEBHOOK_SECRET)
    except ValueError:
        logger.warning("webhook_invalid_payload")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": "Invalid payload"})
    except stripe.SignatureVerificationError:
        logger.warning("webhook_invalid_signature")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": "Invalid signature"})

    event = json.loads(payload)
    try:
        result = await handle_webhook_event(db, event, notifier)
    except Exception as e:
        logger.exception("webhook_processing_failed", event_type=event.get("type"), event_id=event.get("id"), error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Webhook processing failed"},
        )

    return {"received": True, "result": result}
