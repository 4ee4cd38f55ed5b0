"""
Usage Aggregate Cache

Per-user summary of ledger usage in the subscription's current billing
period. Always recomputed from the ledger, never incremented, so a stale
or missing row is repaired by calling ``refresh``.
"""

import logging
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.db.models import Subscription, UsageAggregate, utcnow
from infinet.services.tiers import policy
from infinet.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


class UsageAggregateCache:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = UsageLedger(db)

    async def _load_subscription(self, user_id: str, subscription: Optional[Subscription]) -> Subscription:
        if subscription is not None:
            return subscription
        found = await self.db.get(Subscription, user_id)
        if found is None:
            raise LookupError(f"No subscription for user {user_id}")
        return found

    async def peek(self, user_id: str) -> Optional[UsageAggregate]:
        """The stored row as-is, or None. Never recomputes."""
        result = await self.db.execute(
            select(UsageAggregate)
            .where(UsageAggregate.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def refresh(self, user_id: str, subscription: Optional[Subscription] = None) -> UsageAggregate:
        """Recompute from the ledger over the current period and upsert."""
        sub = await self._load_subscription(user_id, subscription)
        totals = await self.ledger.sum(user_id, sub.current_period_start, sub.current_period_end)
        quota = policy(sub.tier).monthly_token_quota
        remaining = None if quota is None else max(0, quota - totals.total_tokens)

        values = dict(
            period_start=sub.current_period_start,
            period_end=sub.current_period_end,
            total_tokens=totals.total_tokens,
            total_requests=totals.total_requests,
            tokens_remaining=remaining,
            last_updated=utcnow(),
        )

        row = await self.peek(user_id)
        if row is None:
            row = UsageAggregate(user_id=user_id, **values)
            self.db.add(row)
        else:
            for key, value in values.items():
                setattr(row, key, value)

        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent refresh inserted first; both computed from the same ledger
            await self.db.rollback()
            row = await self.peek(user_id)
            for key, value in values.items():
                setattr(row, key, value)
            await self.db.commit()

        return row

    async def get(self, user_id: str, subscription: Optional[Subscription] = None) -> UsageAggregate:
        """Cached aggregate for the current period, refreshed on miss or window change."""
        sub = await self._load_subscription(user_id, subscription)
        row = await self.peek(user_id)
        if (
            row is None
            or row.period_start != sub.current_period_start
            or row.period_end != sub.current_period_end
        ):
            return await self.refresh(user_id, sub)
        return row

    async def invalidate(self, user_id: str) -> None:
        await self.db.execute(delete(UsageAggregate).where(UsageAggregate.user_id == user_id))
        await self.db.commit()

    async def invalidate_all(self) -> int:
        result = await self.db.execute(delete(UsageAggregate))
        await self.db.commit()
        return result.rowcount or 0
