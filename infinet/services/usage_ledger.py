"""
Usage Ledger - append-only record of accounted requests

Each completed request produces one UsageEvent. Retries carrying the same
(user_id, message_id) are no-ops, so a request is never counted twice.
Totals are always computed from the ledger; anything derived from it
(the usage aggregate) can be thrown away and rebuilt.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select, delete, update, func, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.db.models import UsageEvent, Subscription, SubscriptionTier
from infinet.errors import AccountingError

logger = logging.getLogger(__name__)


@dataclass
class LedgerTotals:
    total_tokens: int = 0
    total_requests: int = 0


@dataclass
class AnomalyPolicy:
    """Thresholds for the operator-triggered overcount correction."""
    free_tier_cap: int = 100
    overcount_threshold: int = 1000
    overcount_divisor: int = 10
    extreme_cap: int = 500


class UsageLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, event: UsageEvent) -> bool:
        """
        Insert one usage event and commit.

        Returns False (and writes nothing) when an event with the same
        user_id and message_id already exists. Raises AccountingError if
        the database rejects the write for any other reason.
        """
        if (event.tokens_used or 0) < 0 or (event.tokens_estimated or 0) < 0:
            raise ValueError("token counts must be non-negative")

        try:
            if event.message_id:
                existing = await self.db.execute(
                    select(UsageEvent.id).where(
                        and_(
                            UsageEvent.user_id == event.user_id,
                            UsageEvent.message_id == event.message_id,
                        )
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    logger.info(f"Duplicate usage event for message {event.message_id}, skipping")
                    return False

            self.db.add(event)
            await self.db.commit()
        except IntegrityError:
            # Lost the race against a concurrent retry of the same message
            await self.db.rollback()
            logger.info(f"Duplicate usage event for message {event.message_id}, skipping")
            return False
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to append usage event for {event.user_id}: {e}")
            raise AccountingError(str(e)) from e

        return True

    async def sum(self, user_id: str, period_start: datetime, period_end: datetime) -> LedgerTotals:
        """Total tokens and request count with timestamp in [period_start, period_end)."""
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(UsageEvent.tokens_used), 0),
                func.count(UsageEvent.id),
            ).where(
                and_(
                    UsageEvent.user_id == user_id,
                    UsageEvent.timestamp >= period_start,
                    UsageEvent.timestamp < period_end,
                )
            )
        )
        tokens, requests = result.one()
        return LedgerTotals(total_tokens=int(tokens or 0), total_requests=int(requests or 0))

    # ─── Administrative operations ───────────────────────────────

    async def stats(self, user_id: Optional[str] = None) -> Dict[str, int]:
        """Row count, token sum, distinct users and average tokens per request."""
        query = select(
            func.count(UsageEvent.id),
            func.coalesce(func.sum(UsageEvent.tokens_used), 0),
            func.count(func.distinct(UsageEvent.user_id)),
        )
        if user_id:
            query = query.where(UsageEvent.user_id == user_id)

        records, tokens, users = (await self.db.execute(query)).one()
        records = int(records or 0)
        tokens = int(tokens or 0)
        return {
            "records": records,
            "total_tokens": tokens,
            "users": int(users or 0),
            "avg_tokens_per_request": round(tokens / records) if records else 0,
        }

    async def delete_for_user(
        self,
        user_id: str,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> int:
        """Delete a user's events, optionally only those inside [start, end)."""
        conditions = [UsageEvent.user_id == user_id]
        if period_start is not None:
            conditions.append(UsageEvent.timestamp >= period_start)
        if period_end is not None:
            conditions.append(UsageEvent.timestamp < period_end)

        result = await self.db.execute(delete(UsageEvent).where(and_(*conditions)))
        await self.db.commit()
        return result.rowcount or 0

    async def wipe_all(self) -> int:
        result = await self.db.execute(delete(UsageEvent))
        await self.db.commit()
        return result.rowcount or 0

    async def correct_anomalies(self, policy: Optional[AnomalyPolicy] = None) -> Dict[str, int]:
        """
        Repair historically overcounted events.

        1. Free-tier users: cap each event at ``free_tier_cap``.
        2. Any event above ``overcount_threshold``: divide by ``overcount_divisor``.
        3. Any event still above ``extreme_cap``: cap it.

        Returns the number of rows touched by each fix.
        """
        policy = policy or AnomalyPolicy()

        free_users = select(Subscription.user_id).where(
            Subscription.tier == SubscriptionTier.FREE.value
        )
        free_fix = await self.db.execute(
            update(UsageEvent)
            .where(
                and_(
                    UsageEvent.user_id.in_(free_users),
                    UsageEvent.tokens_used > policy.free_tier_cap,
                )
            )
            .values(tokens_used=policy.free_tier_cap)
            .execution_options(synchronize_session=False)
        )

        overcount_fix = await self.db.execute(
            update(UsageEvent)
            .where(UsageEvent.tokens_used > policy.overcount_threshold)
            .values(tokens_used=UsageEvent.tokens_used // policy.overcount_divisor)
            .execution_options(synchronize_session=False)
        )

        extreme_fix = await self.db.execute(
            update(UsageEvent)
            .where(UsageEvent.tokens_used > policy.extreme_cap)
            .values(tokens_used=policy.extreme_cap)
            .execution_options(synchronize_session=False)
        )

        await self.db.commit()
        return {
            "free_users_affected": free_fix.rowcount or 0,
            "overcounted_fixed": overcount_fix.rowcount or 0,
            "extreme_values_fixed": extreme_fix.rowcount or 0,
        }

    async def prune_before(self, cutoff: datetime) -> int:
        """Drop events older than ``cutoff`` (retention housekeeping)."""
        result = await self.db.execute(delete(UsageEvent).where(UsageEvent.timestamp < cutoff))
        await self.db.commit()
        return result.rowcount or 0
