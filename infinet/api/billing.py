"""
Billing endpoints - Stripe checkout and customer portal.

POST /api/subscribe        - start a checkout session for a paid tier
POST /api/billing/portal   - open the Stripe billing portal
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.api.auth import get_current_identity
from infinet.config import settings
from infinet.db import get_db
from infinet.schemas import SubscribeRequest, CheckoutResponse, PortalRequest, PortalResponse
from infinet.services.auth_service import Identity
from infinet.services.stripe_service import create_checkout_session, create_portal_session
from infinet.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


@router.post("/subscribe", response_model=CheckoutResponse)
async def subscribe(
    body: SubscribeRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Create a Stripe Checkout Session for the selected tier."""
    sub = await SubscriptionService(db).get_or_create(identity.user_id)

    # Stripe substitutes {CHECKOUT_SESSION_ID} itself
    success_url = body.success_url or f"{settings.billing_return_url}?session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = body.cancel_url or settings.billing_return_url

    try:
        session = create_checkout_session(
            user_id=identity.user_id,
            user_email=identity.email,
            tier=body.tier.value,
            success_url=success_url,
            cancel_url=cancel_url,
            customer_id=sub.stripe_customer_id,
        )
    except ValueError as exc:
        logger.error(f"Checkout misconfigured: {exc}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except Exception as exc:
        logger.exception("Stripe checkout creation failed: %s", exc)
        raise HTTPException(status_code=502, detail="Payment service unavailable")

    return CheckoutResponse(session_id=session["id"], url=session["url"])


@router.post("/billing/portal", response_model=PortalResponse)
async def billing_portal(
    body: PortalRequest,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    """Open the Stripe billing portal for the caller's customer account."""
    sub = await SubscriptionService(db).get(identity.user_id)
    if sub is None or not sub.stripe_customer_id:
        raise HTTPException(status_code=404, detail="No billing account found")

    try:
        session = create_portal_session(sub.stripe_customer_id, body.return_url)
    except ValueError as exc:
        logger.error(f"Billing portal misconfigured: {exc}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    except Exception as exc:
        logger.exception("Stripe portal creation failed: %s", exc)
        raise HTTPException(status_code=502, detail="Payment service unavailable")

    return PortalResponse(url=session["url"])
