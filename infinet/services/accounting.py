"""
Usage Accounting - post-hoc metering of a completed (or aborted) request.

Runs after the response has been produced: estimate the real cost from
the full exchange, append it to the ledger, refresh the aggregate and
raise usage alerts when a quota threshold is crossed for the first time
in the billing period.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.config import settings
from infinet.db.models import (
    RequestKind, SubscriptionTier, UsageAggregate, UsageAlert, UsageEvent
)
from infinet.services import token_estimator
from infinet.services.subscription_service import SubscriptionSnapshot
from infinet.services.tiers import policy
from infinet.services.usage_aggregate import UsageAggregateCache
from infinet.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


@dataclass
class AccountingResult:
    tokens_used: int
    snapshot: SubscriptionSnapshot
    aggregate: Optional[UsageAggregate] = None
    recorded: bool = False
    usage: Optional[Dict[str, Any]] = None
    alerts: Optional[List[str]] = None

    def to_frame(self) -> Dict[str, Any]:
        """Trailing usage frame sent to the client after the response."""
        return {
            "type": "usage",
            "tokensUsed": self.tokens_used,
            "subscription": self.snapshot.to_dict(),
            "usage": self.usage,
        }


class UsageAccountant:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = UsageLedger(db)
        self.aggregates = UsageAggregateCache(db)

    async def record(
        self,
        snapshot: SubscriptionSnapshot,
        user_text: str,
        response_text: str,
        tokens_estimated: int = 0,
        kind: RequestKind = RequestKind.CHAT,
        model: Optional[str] = None,
        chat_id: Optional[str] = None,
        message_id: Optional[str] = None,
        includes_image: bool = False,
        now: Optional[datetime] = None,
    ) -> AccountingResult:
        """
        Account one request against the period captured in ``snapshot``.

        ``now`` is when the response finished. The event is timestamped at
        admission time (``snapshot.taken_at``) so it stays in that period.

        Raises AccountingError when the ledger write fails. A duplicate
        message_id is not an error: nothing is counted twice and the
        current aggregate is returned.
        """
        tokens_used = token_estimator.estimate_exchange(user_text, response_text, includes_image)
        result = AccountingResult(tokens_used=tokens_used, snapshot=snapshot)

        if snapshot.tier == SubscriptionTier.DEVELOPER.value:
            logger.debug(f"Developer usage for {snapshot.user_id} not metered ({tokens_used} tokens)")
            return result

        event = UsageEvent(
            user_id=snapshot.user_id,
            tokens_used=tokens_used,
            tokens_estimated=tokens_estimated,
            timestamp=snapshot.billing_timestamp(now),
            period_start=snapshot.current_period_start,
            period_end=snapshot.current_period_end,
            chat_id=chat_id,
            message_id=message_id,
            message_type=kind.value if isinstance(kind, RequestKind) else str(kind),
            model_used=model,
        )
        result.recorded = await self.ledger.append(event)
        result.aggregate = await self.aggregates.refresh(snapshot.user_id)
        result.usage = {
            "totalTokens": result.aggregate.total_tokens,
            "totalRequests": result.aggregate.total_requests,
            "tokensRemaining": result.aggregate.tokens_remaining,
            "tokenLimit": policy(snapshot.tier).monthly_token_quota,
        }
        logger.info(
            f"Accounted {tokens_used} tokens for {snapshot.user_id} "
            f"(estimated {tokens_estimated}, remaining {result.aggregate.tokens_remaining})"
        )
        result.alerts = await self.check_alerts(snapshot, result.aggregate)
        return result

    async def check_alerts(self, snapshot: SubscriptionSnapshot, aggregate: UsageAggregate) -> List[str]:
        """Record each newly crossed threshold once per billing period."""
        quota = policy(snapshot.tier).monthly_token_quota
        if not quota:
            return []

        total_tokens = aggregate.total_tokens
        period_start = aggregate.period_start
        percent = total_tokens / quota * 100
        crossed = [t for t in sorted(settings.usage_alert_thresholds) if percent >= t]
        if not crossed:
            return []

        existing = await self.db.execute(
            select(UsageAlert.alert_type).where(
                and_(
                    UsageAlert.user_id == snapshot.user_id,
                    UsageAlert.period_start == period_start,
                )
            )
        )
        already_sent = set(existing.scalars().all())

        sent = []
        for threshold in crossed:
            alert_type = f"{threshold}_percent"
            if alert_type in already_sent:
                continue
            self.db.add(UsageAlert(
                user_id=snapshot.user_id,
                alert_type=alert_type,
                tokens_used=total_tokens,
                tokens_limit=quota,
                period_start=period_start,
            ))
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                continue
            sent.append(alert_type)
            logger.warning(
                f"Usage alert {alert_type} for {snapshot.user_id}: "
                f"{total_tokens}/{quota} tokens"
            )
        return sent
