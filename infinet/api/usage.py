"""Usage API - the caller's quota position for the current billing period"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.api.auth import get_current_identity
from infinet.db import get_db, utcnow
from infinet.schemas import UsageResponse
from infinet.services import token_estimator
from infinet.services.auth_service import Identity
from infinet.services.rate_limiter import RequestRateLimiter
from infinet.services.subscription_service import SubscriptionService, developer_snapshot
from infinet.services.tiers import policy, is_developer
from infinet.services.usage_aggregate import UsageAggregateCache

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("", response_model=UsageResponse)
async def get_usage(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db),
):
    now = utcnow()
    requests_today = await RequestRateLimiter(db).count_recent(identity.user_id, now=now)

    if is_developer(identity.user_id, identity.email):
        snap = developer_snapshot(identity.user_id, now)
        return UsageResponse(
            tier=snap.tier,
            status=snap.status,
            periodStart=snap.current_period_start.isoformat(),
            periodEnd=snap.current_period_end.isoformat(),
            tokensUsed=0,
            tokenLimit=None,
            tokensRemaining=None,
            percentUsed=0.0,
            usageStatus="safe",
            daysUntilReset=token_estimator.days_until_reset(snap.current_period_end, now),
            totalRequests=0,
            requestsToday=requests_today,
            dailyRequestLimit=None,
        )

    sub = await SubscriptionService(db).get_or_create(identity.user_id, now=now)
    aggregate = await UsageAggregateCache(db).get(identity.user_id, sub)
    tier_policy = policy(sub.tier)
    limit = tier_policy.monthly_token_quota
    percent, status_label = token_estimator.usage_status(aggregate.total_tokens, limit)
    period_days = max(1, (sub.current_period_end - sub.current_period_start).days)

    return UsageResponse(
        tier=sub.tier,
        status=sub.status,
        periodStart=sub.current_period_start.isoformat(),
        periodEnd=sub.current_period_end.isoformat(),
        tokensUsed=aggregate.total_tokens,
        tokenLimit=limit,
        tokensRemaining=aggregate.tokens_remaining,
        percentUsed=percent,
        usageStatus=status_label,
        daysUntilReset=token_estimator.days_until_reset(sub.current_period_end, now),
        recommendedDailyPace=token_estimator.recommended_daily_pace(limit, period_days),
        totalRequests=aggregate.total_requests,
        requestsToday=requests_today,
        dailyRequestLimit=tier_policy.daily_request_quota,
    )
