"""
Entitlement Gate - decides whether a metered request may proceed.

Checks run in a fixed order and the first failing check wins:

    1. identity present                     NO_AUTH               401
    2. developer allow-list                 (allow, unlimited)
    3. subscription canceled/suspended      SUBSCRIPTION_INACTIVE 402
    4. trial past its end                   TRIAL_EXPIRED         402
    5. payment past due                     PAYMENT_PAST_DUE      402
    6. billing period ended                 BILLING_PERIOD_ENDED  402
    7. token quota exhausted                TOKEN_LIMIT_EXCEEDED  429
    8. daily request quota reached          RATE_LIMIT_EXCEEDED   429

An allowed request is logged in the rate window and receives a
subscription snapshot, which accounting reuses after the response so
the policy is read exactly once per request.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from infinet.db.models import SubscriptionStatus, utcnow
from infinet.services.auth_service import Identity
from infinet.services.rate_limiter import RequestRateLimiter
from infinet.services.subscription_service import (
    SubscriptionService, SubscriptionSnapshot, snapshot_for, developer_snapshot
)
from infinet.services.tiers import policy, is_developer
from infinet.services.usage_aggregate import UsageAggregateCache

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_SECONDS = 86400


class DenyReason(str, Enum):
    NO_AUTH = "NO_AUTH"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    PAYMENT_PAST_DUE = "PAYMENT_PAST_DUE"
    BILLING_PERIOD_ENDED = "BILLING_PERIOD_ENDED"
    TOKEN_LIMIT_EXCEEDED = "TOKEN_LIMIT_EXCEEDED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


@dataclass
class Allow:
    snapshot: SubscriptionSnapshot
    allowed: bool = True


@dataclass
class Deny:
    reason: DenyReason
    http_status: int
    error: str
    user_message: str = ""
    redirect: Optional[str] = None
    subscription: Optional[Dict[str, Any]] = None
    retry_after: Optional[int] = None
    allowed: bool = False

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error, "code": self.reason.value}
        if self.user_message:
            body["message"] = self.user_message
        if self.redirect:
            body["redirect"] = self.redirect
        if self.subscription is not None:
            body["subscription"] = self.subscription
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


Decision = Union[Allow, Deny]


class EntitlementGate:
    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.subscriptions = SubscriptionService(db)
        self.aggregates = UsageAggregateCache(db)
        self.rate_limiter = RequestRateLimiter(db)

    async def check(self, identity: Optional[Identity], endpoint: str) -> Decision:
        if identity is None or not identity.user_id:
            return Deny(DenyReason.NO_AUTH, 401, "Unauthorized")

        now = self.clock()
        user_id = identity.user_id

        if is_developer(user_id, identity.email):
            return Allow(developer_snapshot(user_id, now))

        sub = await self.subscriptions.get_or_create(user_id, now=now)
        tier_policy = policy(sub.tier)

        if sub.status in (SubscriptionStatus.CANCELED.value, SubscriptionStatus.SUSPENDED.value):
            return Deny(
                DenyReason.SUBSCRIPTION_INACTIVE,
                402,
                "Subscription Inactive",
                "Your subscription is no longer active. Please reactivate to continue.",
                redirect="/pricing",
            )

        if sub.status == SubscriptionStatus.TRIAL.value and sub.trial_ends_at and now > sub.trial_ends_at:
            return Deny(
                DenyReason.TRIAL_EXPIRED,
                402,
                "Trial Expired",
                "Your trial has expired. Please subscribe to continue.",
                redirect="/pricing",
            )

        if sub.status == SubscriptionStatus.PAST_DUE.value:
            return Deny(
                DenyReason.PAYMENT_PAST_DUE,
                402,
                "Payment Past Due",
                "Your payment is past due. Please update your payment method.",
                redirect="/billing",
            )

        if now > sub.current_period_end:
            return Deny(
                DenyReason.BILLING_PERIOD_ENDED,
                402,
                "Billing Period Ended",
                "Your billing period has ended. Awaiting renewal.",
                redirect="/billing",
            )

        if not tier_policy.unlimited_tokens:
            aggregate = await self.aggregates.get(user_id, sub)
            if aggregate.is_exhausted:
                return Deny(
                    DenyReason.TOKEN_LIMIT_EXCEEDED,
                    429,
                    "Token Limit Exceeded",
                    "You have exceeded your monthly token limit. Please upgrade your plan "
                    "or wait for the next billing period.",
                    redirect="/pricing",
                    subscription={
                        "tier": sub.tier,
                        "periodEnd": sub.current_period_end.isoformat(),
                    },
                )

        if not tier_policy.unlimited_requests:
            recent = await self.rate_limiter.count_recent(user_id, now=now)
            if recent >= tier_policy.daily_request_quota:
                return Deny(
                    DenyReason.RATE_LIMIT_EXCEEDED,
                    429,
                    "Rate Limit Exceeded",
                    "You have reached your daily request limit. Please wait before making more requests.",
                    retry_after=RATE_LIMIT_RETRY_SECONDS,
                )

        await self.rate_limiter.record(user_id, endpoint, now=now)
        return Allow(snapshot_for(sub, taken_at=now))
