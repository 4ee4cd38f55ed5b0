"""
Stripe integration helpers: webhook verification, event conversion,
checkout and billing-portal sessions.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from infinet.config import settings
from infinet.errors import ReconciliationError, WebhookVerificationError
from infinet.services.reconciler import BillingEvent

logger = logging.getLogger(__name__)

# Map paid tiers to Stripe Price IDs from config
PLAN_PRICE_MAP = {
    "starter": "stripe_starter_price_id",
    "premium": "stripe_premium_price_id",
    "limitless": "stripe_limitless_price_id",
}


def _get_stripe_client() -> stripe.StripeClient:
    if not settings.stripe_secret_key:
        raise ValueError("STRIPE_SECRET_KEY is not configured")
    return stripe.StripeClient(settings.stripe_secret_key)


def _from_epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def create_checkout_session(
    user_id: str,
    user_email: Optional[str],
    tier: str,
    success_url: str,
    cancel_url: str,
    customer_id: Optional[str] = None,
) -> dict:
    """
    Create a Stripe Checkout Session for a subscription tier.

    Returns ``{"id": "cs_...", "url": "https://checkout.stripe.com/..."}``.
    user_id travels in subscription metadata so the webhook can find the
    user before the customer id is known locally.
    """
    client = _get_stripe_client()

    price_id_attr = PLAN_PRICE_MAP.get(tier)
    if not price_id_attr:
        raise ValueError(f"Unknown tier: {tier}")

    stripe_price_id: str = getattr(settings, price_id_attr, "")
    if not stripe_price_id:
        raise ValueError(
            f"Stripe price ID for tier '{tier}' is not configured "
            f"(set {price_id_attr.upper()} in environment)"
        )

    params: Dict[str, Any] = {
        "mode": "subscription",
        "line_items": [{"price": stripe_price_id, "quantity": 1}],
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": {"user_id": user_id, "tier": tier},
        "subscription_data": {"metadata": {"user_id": user_id, "tier": tier}},
    }
    if customer_id:
        params["customer"] = customer_id
    elif user_email:
        params["customer_email"] = user_email

    session = client.checkout.sessions.create(params=params)
    return {"id": session.id, "url": session.url}


def create_portal_session(customer_id: str, return_url: Optional[str] = None) -> dict:
    """Create a Stripe billing portal session for an existing customer."""
    client = _get_stripe_client()
    session = client.billing_portal.sessions.create(
        params={
            "customer": customer_id,
            "return_url": return_url or settings.billing_return_url,
        }
    )
    return {"url": session.url}


def verify_webhook(payload: bytes, sig_header: Optional[str]) -> dict:
    """
    Verify a Stripe webhook signature and return the parsed event as plain dicts.

    Raises WebhookVerificationError on a missing/invalid signature.
    """
    if not sig_header:
        raise WebhookVerificationError("Missing stripe-signature header")

    try:
        stripe.Webhook.construct_event(payload, sig_header, settings.stripe_webhook_secret)
    except stripe.SignatureVerificationError as e:
        logger.warning("Stripe webhook signature verification failed")
        raise WebhookVerificationError(str(e)) from e
    except ValueError as e:
        logger.warning(f"Stripe webhook payload is not valid JSON: {e}")
        raise WebhookVerificationError("Invalid payload") from e

    return json.loads(payload)


def to_billing_event(event: dict) -> BillingEvent:
    """Convert a verified Stripe event into a BillingEvent."""
    try:
        event_id = event["id"]
        event_type = event["type"]
        obj = event["data"]["object"]
    except (KeyError, TypeError) as e:
        raise ReconciliationError(f"Malformed Stripe event: missing {e}") from e

    if event_id in (None, ""):
        raise ReconciliationError("Malformed Stripe event: id is empty")
    event_id = str(event_id)
    if not isinstance(event_type, str) or not event_type:
        raise ReconciliationError("Malformed Stripe event: type is not a string", event_id)
    if not isinstance(obj, dict):
        raise ReconciliationError("Malformed Stripe event: data.object is not an object", event_id)

    try:
        return _convert(event_id, event_type, obj)
    except (AttributeError, TypeError, ValueError, OverflowError, OSError) as e:
        raise ReconciliationError(f"Malformed Stripe {event_type} event: {e}", event_id) from e


def _convert(event_id: str, event_type: str, obj: dict) -> BillingEvent:
    metadata = dict(obj.get("metadata") or {})
    billing = BillingEvent(
        external_event_id=event_id,
        event_type=event_type,
        customer_ref=obj.get("customer"),
        user_id=metadata.get("user_id"),
    )

    if event_type.startswith("customer.subscription."):
        items = (obj.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        billing.subscription_ref = obj.get("id")
        billing.provider_status = obj.get("status")
        billing.price_ref = (first_item.get("price") or {}).get("id")
        # Newer API versions carry the period on the subscription item
        billing.period_start = _from_epoch(
            obj.get("current_period_start") or first_item.get("current_period_start")
        )
        billing.period_end = _from_epoch(
            obj.get("current_period_end") or first_item.get("current_period_end")
        )
        billing.trial_end = _from_epoch(obj.get("trial_end"))
        billing.metadata = metadata

    elif event_type.startswith("invoice."):
        subscription_ref = obj.get("subscription")
        if not subscription_ref:
            details = ((obj.get("parent") or {}).get("subscription_details") or {})
            subscription_ref = details.get("subscription")
            billing.user_id = billing.user_id or (details.get("metadata") or {}).get("user_id")
        billing.subscription_ref = subscription_ref
        billing.metadata = {
            "invoice_id": obj.get("id"),
            "attempt_count": obj.get("attempt_count"),
        }

    return billing
