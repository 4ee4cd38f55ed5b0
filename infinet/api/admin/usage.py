"""
Admin - subscriptions and usage ledger operations

Every mutating endpoint reports ledger counts before and after the
change and leaves a subscription_audit row naming the operator.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.db import get_db
from infinet.api.admin.deps import require_admin
from infinet.schemas import AdminTier
from infinet.services.auth_service import Identity
from infinet.services.subscription_service import SubscriptionService
from infinet.services.tiers import policy
from infinet.services.usage_aggregate import UsageAggregateCache
from infinet.services.usage_ledger import UsageLedger, AnomalyPolicy

logger = logging.getLogger(__name__)

# ─── Schemas ───────────────────────────────────────────────────

class LedgerStats(BaseModel):
    records: int
    total_tokens: int
    users: int
    avg_tokens_per_request: int


class UserUsageResponse(BaseModel):
    user_id: str
    tier: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    tokens_used: int
    token_limit: Optional[int]
    tokens_remaining: Optional[int]
    total_requests: int
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None


class UserUsageListResponse(BaseModel):
    users: List[UserUsageResponse]
    total: int
    ledger: LedgerStats


class ResetUsageRequest(BaseModel):
    all_history: bool = False  # False: current period only


class SetTierRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    tier: AdminTier
    reset_usage: bool = False


class FixTokensRequest(BaseModel):
    free_tier_cap: int = Field(default=100, ge=0)
    overcount_threshold: int = Field(default=1000, ge=1)
    overcount_divisor: int = Field(default=10, ge=2)
    extreme_cap: int = Field(default=500, ge=0)


class AdminActionResponse(BaseModel):
    message: str
    before: LedgerStats
    after: LedgerStats
    details: Dict[str, Any] = {}


# ─── Admin Router (protected) ─────────────────────────────────

router = APIRouter(prefix="/admin", tags=["Admin - Usage"])


@router.get("/users", response_model=UserUsageListResponse)
async def list_users(
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """All subscriptions with their current-period usage."""
    subscriptions = await SubscriptionService(db).list_all()
    cache = UsageAggregateCache(db)

    users = []
    for sub in subscriptions:
        aggregate = await cache.get(sub.user_id, sub)
        users.append(UserUsageResponse(
            user_id=sub.user_id,
            tier=sub.tier,
            status=sub.status,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            tokens_used=aggregate.total_tokens,
            token_limit=policy(sub.tier).monthly_token_quota,
            tokens_remaining=aggregate.tokens_remaining,
            total_requests=aggregate.total_requests,
            stripe_customer_id=sub.stripe_customer_id,
            stripe_subscription_id=sub.stripe_subscription_id,
        ))

    ledger_stats = await UsageLedger(db).stats()
    return UserUsageListResponse(users=users, total=len(users), ledger=LedgerStats(**ledger_stats))


@router.post("/users/{user_id}/reset-usage", response_model=AdminActionResponse)
async def reset_user_usage(
    user_id: str,
    body: Optional[ResetUsageRequest] = None,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Delete a user's usage events for the current period (or all history)."""
    body = body or ResetUsageRequest()
    subscriptions = SubscriptionService(db)
    sub = await subscriptions.get(user_id)
    if sub is None:
        raise HTTPException(status_code=404, detail="Subscription not found")

    ledger = UsageLedger(db)
    before = await ledger.stats(user_id)
    if body.all_history:
        deleted = await ledger.delete_for_user(user_id)
    else:
        deleted = await ledger.delete_for_user(user_id, sub.current_period_start, sub.current_period_end)
    await UsageAggregateCache(db).invalidate(user_id)
    after = await ledger.stats(user_id)

    await subscriptions.record_audit(
        user_id,
        "admin.reset_usage",
        tier=sub.tier,
        status=sub.status,
        metadata={"operator": admin.email, "deleted": deleted, "all_history": body.all_history},
    )
    logger.warning(
        f"Admin {admin.email} reset usage for {user_id}: "
        f"{before['records']} -> {after['records']} events",
        extra={"extra_data": {"action": "reset_usage", "before": before, "after": after, "deleted": deleted}},
    )
    return AdminActionResponse(
        message="Usage reset",
        before=LedgerStats(**before),
        after=LedgerStats(**after),
        details={"deleted": deleted},
    )


@router.post("/set-tier", response_model=AdminActionResponse)
async def set_tier(
    body: SetTierRequest,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Override a user's tier. Starts a fresh period; optionally wipes their history."""
    ledger = UsageLedger(db)
    before = await ledger.stats(body.user_id)
    try:
        sub = await SubscriptionService(db).set_tier(
            body.user_id, body.tier.value, operator=admin.email, reset_usage=body.reset_usage
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    after = await ledger.stats(body.user_id)

    return AdminActionResponse(
        message=f"Tier set to {sub.tier}",
        before=LedgerStats(**before),
        after=LedgerStats(**after),
        details={
            "user_id": sub.user_id,
            "tier": sub.tier,
            "current_period_start": sub.current_period_start.isoformat(),
            "current_period_end": sub.current_period_end.isoformat(),
        },
    )


@router.post("/fix-tokens", response_model=AdminActionResponse)
async def fix_tokens(
    body: Optional[FixTokensRequest] = None,
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Correct historically overcounted usage events and rebuild all aggregates."""
    body = body or FixTokensRequest()
    ledger = UsageLedger(db)
    before = await ledger.stats()
    fixes = await ledger.correct_anomalies(AnomalyPolicy(**body.model_dump()))
    await UsageAggregateCache(db).invalidate_all()
    after = await ledger.stats()

    await SubscriptionService(db).record_audit(
        admin.user_id,
        "admin.fix_tokens",
        metadata={"operator": admin.email, "fixes": fixes, "policy": body.model_dump()},
    )
    logger.warning(
        f"Admin {admin.email} corrected token counts: {fixes}; "
        f"tokens {before['total_tokens']} -> {after['total_tokens']}",
        extra={"extra_data": {"action": "fix_tokens", "before": before, "after": after, "fixes": fixes}},
    )
    return AdminActionResponse(
        message="Token counts fixed successfully",
        before=LedgerStats(**before),
        after=LedgerStats(**after),
        details=fixes,
    )


@router.post("/wipe-tokens", response_model=AdminActionResponse)
async def wipe_tokens(
    admin: Identity = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Delete every usage event and every aggregate."""
    ledger = UsageLedger(db)
    before = await ledger.stats()
    deleted = await ledger.wipe_all()
    await UsageAggregateCache(db).invalidate_all()
    after = await ledger.stats()

    await SubscriptionService(db).record_audit(
        admin.user_id,
        "admin.wipe_tokens",
        metadata={"operator": admin.email, "records": before["records"], "total_tokens": before["total_tokens"]},
    )
    logger.warning(
        f"Admin {admin.email} wiped all usage: {before['records']} events, "
        f"{before['total_tokens']} tokens",
        extra={"extra_data": {"action": "wipe_tokens", "before": before, "after": after, "deleted": deleted}},
    )
    return AdminActionResponse(
        message="All token usage data wiped",
        before=LedgerStats(**before),
        after=LedgerStats(**after),
        details={"deleted": deleted},
    )
