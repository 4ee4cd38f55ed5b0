"""
Subscription Service - subscription rows, snapshots and the audit trail.

A subscription row is created lazily on first authenticated access (free
tier, synthetic 30-day period) or by the billing reconciler. Rows are
never deleted; cancellation only changes tier and status.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.config import settings
from infinet.db.models import (
    Subscription, SubscriptionAudit, SubscriptionTier, SubscriptionStatus, utcnow
)
from infinet.services.usage_aggregate import UsageAggregateCache
from infinet.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionSnapshot:
    """Immutable view of a subscription taken by the gate, reused by accounting."""
    user_id: str
    tier: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    is_trialing: bool = False
    trial_ends_at: Optional[datetime] = None
    taken_at: Optional[datetime] = None  # Gate decision time

    def billing_timestamp(self, now: Optional[datetime] = None) -> datetime:
        """
        Timestamp a usage event is recorded under.

        The request belongs to the period that was active when it was
        admitted, even if it finishes after that period has ended. The
        result always falls inside [current_period_start, current_period_end).
        """
        moment = self.taken_at or now or utcnow()
        if moment < self.current_period_start:
            return self.current_period_start
        if moment >= self.current_period_end:
            return self.current_period_end - timedelta(microseconds=1)
        return moment

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "tier": self.tier,
            "status": self.status,
            "currentPeriodStart": self.current_period_start.isoformat(),
            "currentPeriodEnd": self.current_period_end.isoformat(),
            "isTrialing": self.is_trialing,
            "trialEndsAt": self.trial_ends_at.isoformat() if self.trial_ends_at else None,
        }


def snapshot_for(subscription: Subscription, taken_at: Optional[datetime] = None) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        user_id=subscription.user_id,
        tier=subscription.tier,
        status=subscription.status,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        is_trialing=subscription.status == SubscriptionStatus.TRIAL.value,
        trial_ends_at=subscription.trial_ends_at,
        taken_at=taken_at,
    )


def developer_snapshot(user_id: str, now: Optional[datetime] = None) -> SubscriptionSnapshot:
    """Synthetic unlimited snapshot for allow-listed identities. Nothing is persisted."""
    now = now or utcnow()
    return SubscriptionSnapshot(
        user_id=user_id,
        tier=SubscriptionTier.DEVELOPER.value,
        status=SubscriptionStatus.ACTIVE.value,
        current_period_start=now,
        current_period_end=now + timedelta(days=settings.synthetic_period_days),
        taken_at=now,
    )


class SubscriptionService:
    def __init__(self, db: AsyncSession):
        self.db = db

    @property
    def period_length(self) -> timedelta:
        return timedelta(days=settings.synthetic_period_days)

    async def get(self, user_id: str) -> Optional[Subscription]:
        return await self.db.get(Subscription, user_id)

    async def get_or_create(self, user_id: str, now: Optional[datetime] = None) -> Subscription:
        """Fetch the user's subscription, creating a free one on first access."""
        existing = await self.get(user_id)
        if existing is not None:
            return existing

        now = now or utcnow()
        sub = Subscription(
            user_id=user_id,
            tier=SubscriptionTier.FREE.value,
            status=SubscriptionStatus.ACTIVE.value,
            current_period_start=now,
            current_period_end=now + self.period_length,
        )
        self.db.add(sub)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another request created it first
            await self.db.rollback()
            return await self.get(user_id)

        logger.info(f"Created free subscription for {user_id}")
        return sub

    async def get_by_customer(self, customer_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.stripe_customer_id == customer_id)
        )
        return result.scalars().first()

    async def get_by_external_subscription(self, subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.stripe_subscription_id == subscription_id)
        )
        return result.scalars().first()

    async def list_all(self) -> List[Subscription]:
        result = await self.db.execute(select(Subscription).order_by(Subscription.created_at.desc()))
        return list(result.scalars().all())

    async def record_audit(
        self,
        user_id: str,
        event_type: str,
        tier: Optional[str] = None,
        status: Optional[str] = None,
        external_event_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        commit: bool = True,
    ) -> SubscriptionAudit:
        entry = SubscriptionAudit(
            user_id=user_id,
            event_type=event_type,
            tier=tier,
            status=status,
            external_event_id=external_event_id,
            metadata_json=metadata,
        )
        self.db.add(entry)
        if commit:
            await self.db.commit()
        return entry

    async def set_tier(
        self,
        user_id: str,
        tier: str,
        operator: Optional[str] = None,
        reset_usage: bool = False,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Admin override: move a user to ``tier`` with a fresh synthetic period.

        The aggregate is invalidated. Ledger history is kept unless
        ``reset_usage`` is set.
        """
        if tier not in {t.value for t in SubscriptionTier} or tier == SubscriptionTier.DEVELOPER.value:
            raise ValueError(f"Invalid tier: {tier}")

        now = now or utcnow()
        sub = await self.get_or_create(user_id, now=now)
        previous_tier = sub.tier

        sub.tier = tier
        sub.status = SubscriptionStatus.ACTIVE.value
        sub.current_period_start = now
        sub.current_period_end = now + self.period_length
        sub.trial_ends_at = None

        await self.record_audit(
            user_id,
            "admin.set_tier",
            tier=tier,
            status=sub.status,
            metadata={"operator": operator, "previous_tier": previous_tier, "reset_usage": reset_usage},
            commit=False,
        )
        await self.db.commit()

        deleted = 0
        if reset_usage:
            deleted = await UsageLedger(self.db).delete_for_user(user_id)
        await UsageAggregateCache(self.db).invalidate(user_id)

        logger.warning(
            f"Admin {operator} set tier for {user_id}: {previous_tier} -> {tier}"
            f" (usage events deleted: {deleted})"
        )
        return sub

    async def roll_over_expired(self, now: Optional[datetime] = None) -> int:
        """
        Advance expired periods of subscriptions with no billing-provider
        subscription behind them. Periods move forward in whole lengths so
        the new window contains ``now``. Returns the number of rows rolled.
        """
        now = now or utcnow()
        result = await self.db.execute(
            select(Subscription).where(
                and_(
                    Subscription.stripe_subscription_id.is_(None),
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.current_period_end <= now,
                )
            )
        )
        expired = list(result.scalars().all())
        if not expired:
            return 0

        for sub in expired:
            length = sub.current_period_end - sub.current_period_start
            if length <= timedelta(0):
                length = self.period_length
            periods = (now - sub.current_period_start) // length
            sub.current_period_start = sub.current_period_start + periods * length
            sub.current_period_end = sub.current_period_start + length

        await self.db.commit()

        cache = UsageAggregateCache(self.db)
        for sub in expired:
            await cache.invalidate(sub.user_id)

        logger.info(f"Rolled over {len(expired)} expired subscription period(s)")
        return len(expired)
