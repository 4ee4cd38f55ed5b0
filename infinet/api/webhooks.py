"""
Billing webhook endpoint.

POST /api/webhook/stripe - no auth, verified by signature
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.config import settings
from infinet.db import get_db
from infinet.errors import ReconciliationError, WebhookVerificationError
from infinet.services.reconciler import SubscriptionReconciler
from infinet.services.stripe_service import verify_webhook, to_billing_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


@router.post("/stripe", status_code=200)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Stripe webhook endpoint.
    Verifies the signature, then reconciles the subscription. Payloads that
    can never be applied are acknowledged so Stripe stops retrying them.
    """
    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        event = verify_webhook(payload, sig_header)
    except WebhookVerificationError as e:
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    try:
        billing_event = to_billing_event(event)
        result = await SubscriptionReconciler(db).apply(billing_event)
    except ReconciliationError as e:
        logger.warning(f"Billing event {e.external_event_id} not applied: {e}")
        return {"received": True, "status": "ignored"}

    return {"received": True, "status": result.status}
