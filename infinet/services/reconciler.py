"""
Subscription State Reconciler

Applies billing-provider events to subscription rows. Every applied
event leaves a subscription_audit row keyed by the provider's event id,
which makes redelivery of the same event a no-op.

Handled events:
    customer.subscription.created / .updated   tier, status, period
    customer.subscription.deleted               back to free, canceled
    invoice.payment_failed                      past_due, tier untouched
    customer.subscription.trial_will_end        audit only
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.config import settings
from infinet.db.models import Subscription, SubscriptionAudit, SubscriptionStatus, SubscriptionTier
from infinet.errors import ReconciliationError
from infinet.services.subscription_service import SubscriptionService
from infinet.services.usage_aggregate import UsageAggregateCache

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
TRIAL_WILL_END = "customer.subscription.trial_will_end"

HANDLED_EVENTS = {
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_UPDATED,
    SUBSCRIPTION_DELETED,
    INVOICE_PAYMENT_FAILED,
    TRIAL_WILL_END,
}

# Provider subscription status -> local status. Anything unlisted suspends.
STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE.value,
    "trialing": SubscriptionStatus.ACTIVE.value,
    "past_due": SubscriptionStatus.PAST_DUE.value,
    "canceled": SubscriptionStatus.CANCELED.value,
    "unpaid": SubscriptionStatus.CANCELED.value,
}

# Tiers an unmapped price may fall back to
SAFE_FALLBACK_TIERS = {SubscriptionTier.FREE.value, SubscriptionTier.STARTER.value}


def map_status(provider_status: Optional[str]) -> str:
    return STATUS_MAP.get(provider_status or "", SubscriptionStatus.SUSPENDED.value)


@dataclass
class BillingEvent:
    """Provider-neutral view of one billing webhook."""
    external_event_id: str
    event_type: str
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    price_ref: Optional[str] = None
    provider_status: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    user_id: Optional[str] = None  # From provider metadata, last-resort lookup
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconcileResult:
    status: str  # applied | duplicate | ignored
    user_id: Optional[str] = None
    tier: Optional[str] = None
    subscription_status: Optional[str] = None
    aggregate_invalidated: bool = False


class PriceTierMap:
    """Explicit price id -> tier table. Unmapped prices never grant more than the fallback tier."""

    def __init__(self, prices: Dict[str, str], fallback_tier: str = SubscriptionTier.STARTER.value):
        self.prices = {k: v for k, v in prices.items() if k}
        if fallback_tier not in SAFE_FALLBACK_TIERS:
            logger.warning(f"Unmapped price fallback '{fallback_tier}' not allowed, using starter")
            fallback_tier = SubscriptionTier.STARTER.value
        self.fallback_tier = fallback_tier

    @classmethod
    def from_settings(cls) -> "PriceTierMap":
        return cls(
            {
                settings.stripe_starter_price_id: SubscriptionTier.STARTER.value,
                settings.stripe_premium_price_id: SubscriptionTier.PREMIUM.value,
                settings.stripe_limitless_price_id: SubscriptionTier.LIMITLESS.value,
            },
            fallback_tier=settings.unmapped_price_tier,
        )

    def tier_for(self, price_id: Optional[str], external_event_id: Optional[str] = None) -> str:
        tier = self.prices.get(price_id or "")
        if tier is None:
            logger.warning(
                f"Unmapped price id '{price_id}' in event {external_event_id}, "
                f"assigning {self.fallback_tier}"
            )
            return self.fallback_tier
        return tier


class SubscriptionReconciler:
    def __init__(self, db: AsyncSession, price_map: Optional[PriceTierMap] = None):
        self.db = db
        self.price_map = price_map or PriceTierMap.from_settings()
        self.subscriptions = SubscriptionService(db)
        self.aggregates = UsageAggregateCache(db)

    async def _already_applied(self, external_event_id: str) -> bool:
        result = await self.db.execute(
            select(SubscriptionAudit.id).where(SubscriptionAudit.external_event_id == external_event_id)
        )
        return result.scalar_one_or_none() is not None

    async def _find_subscription(self, event: BillingEvent) -> Subscription:
        sub = None
        if event.customer_ref:
            sub = await self.subscriptions.get_by_customer(event.customer_ref)
        if sub is None and event.subscription_ref:
            sub = await self.subscriptions.get_by_external_subscription(event.subscription_ref)
        if sub is None and event.user_id:
            sub = await self.subscriptions.get_or_create(event.user_id)
        if sub is None:
            raise ReconciliationError(
                f"No user for customer {event.customer_ref} / subscription {event.subscription_ref}",
                external_event_id=event.external_event_id,
            )
        return sub

    async def apply(self, event: BillingEvent) -> ReconcileResult:
        """Apply one billing event. Safe to call again with the same event."""
        if await self._already_applied(event.external_event_id):
            logger.info(f"Billing event {event.external_event_id} already applied, skipping")
            return ReconcileResult(status="duplicate")

        if event.event_type not in HANDLED_EVENTS:
            logger.info(f"Ignoring billing event type {event.event_type} ({event.external_event_id})")
            return ReconcileResult(status="ignored")

        sub = await self._find_subscription(event)
        user_id = sub.user_id
        previous_tier = sub.tier
        previous_start = sub.current_period_start
        metadata: Dict[str, Any] = {}

        if event.event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
            if event.period_start is None or event.period_end is None:
                raise ReconciliationError(
                    f"Billing event {event.external_event_id} has no billing period",
                    external_event_id=event.external_event_id,
                )
            if event.period_end <= event.period_start:
                raise ReconciliationError(
                    f"Billing event {event.external_event_id} has an empty billing period",
                    external_event_id=event.external_event_id,
                )
            sub.tier = self.price_map.tier_for(event.price_ref, event.external_event_id)
            sub.status = map_status(event.provider_status)
            sub.current_period_start = event.period_start
            sub.current_period_end = event.period_end
            sub.trial_ends_at = event.trial_end
            if event.customer_ref:
                sub.stripe_customer_id = event.customer_ref
            if event.subscription_ref:
                sub.stripe_subscription_id = event.subscription_ref
            metadata = {"price_id": event.price_ref, "provider_status": event.provider_status}

        elif event.event_type == SUBSCRIPTION_DELETED:
            sub.tier = SubscriptionTier.FREE.value
            sub.status = SubscriptionStatus.CANCELED.value
            metadata = {"previous_subscription_id": event.subscription_ref, "previous_tier": previous_tier}

        elif event.event_type == INVOICE_PAYMENT_FAILED:
            sub.status = SubscriptionStatus.PAST_DUE.value
            metadata = {k: v for k, v in event.metadata.items() if k in ("invoice_id", "attempt_count")}

        elif event.event_type == TRIAL_WILL_END:
            metadata = {"trial_end": event.trial_end.isoformat() if event.trial_end else None}

        tier, status = sub.tier, sub.status
        await self.subscriptions.record_audit(
            user_id,
            event.event_type,
            tier=tier,
            status=status,
            external_event_id=event.external_event_id,
            metadata=metadata,
            commit=False,
        )
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event won
            await self.db.rollback()
            logger.info(f"Billing event {event.external_event_id} applied concurrently, skipping")
            return ReconcileResult(status="duplicate")

        invalidate = tier != previous_tier or sub.current_period_start > previous_start
        if invalidate:
            await self.aggregates.invalidate(user_id)

        logger.info(
            f"Applied {event.event_type} ({event.external_event_id}) for {user_id}: "
            f"{previous_tier} -> {tier}, status {status}"
        )
        return ReconcileResult(
            status="applied",
            user_id=user_id,
            tier=tier,
            subscription_status=status,
            aggregate_invalidated=invalidate,
        )
