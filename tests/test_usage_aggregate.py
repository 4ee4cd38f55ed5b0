"""
Tests for the Usage Aggregate Cache
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from infinet.db import init_db, drop_db
from infinet.db.models import Subscription, UsageEvent
from infinet.services.usage_aggregate import UsageAggregateCache
from infinet.services.usage_ledger import UsageLedger

PERIOD_START = datetime(2026, 3, 1)
PERIOD_END = datetime(2026, 3, 31)


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    await init_db()
    yield
    await drop_db()


async def make_subscription(db: AsyncSession, user_id="user-1", tier="free") -> Subscription:
    sub = Subscription(
        user_id=user_id,
        tier=tier,
        status="active",
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
    )
    db.add(sub)
    await db.commit()
    return sub


async def spend(db: AsyncSession, tokens: int, user_id="user-1", at=None):
    await UsageLedger(db).append(UsageEvent(
        user_id=user_id,
        tokens_used=tokens,
        timestamp=at or PERIOD_START + timedelta(days=2),
        period_start=PERIOD_START,
        period_end=PERIOD_END,
    ))


@pytest.mark.asyncio
async def test_refresh_computes_remaining(db_session: AsyncSession):
    await make_subscription(db_session)
    await spend(db_session, 120)
    await spend(db_session, 30)

    agg = await UsageAggregateCache(db_session).refresh("user-1")
    assert agg.total_tokens == 150
    assert agg.total_requests == 2
    assert agg.tokens_remaining == 350
    assert agg.period_start == PERIOD_START
    assert agg.period_end == PERIOD_END
    assert not agg.is_exhausted


@pytest.mark.asyncio
async def test_remaining_is_clamped_at_zero(db_session: AsyncSession):
    await make_subscription(db_session)
    await spend(db_session, 700)

    agg = await UsageAggregateCache(db_session).refresh("user-1")
    assert agg.total_tokens == 700
    assert agg.tokens_remaining == 0
    assert agg.is_exhausted


@pytest.mark.asyncio
async def test_unlimited_tier_has_no_remaining(db_session: AsyncSession):
    await make_subscription(db_session, tier="developer")
    await spend(db_session, 10_000_000)

    agg = await UsageAggregateCache(db_session).refresh("user-1")
    assert agg.tokens_remaining is None
    assert agg.is_unlimited
    assert not agg.is_exhausted


@pytest.mark.asyncio
async def test_refresh_without_subscription_raises(db_session: AsyncSession):
    with pytest.raises(LookupError):
        await UsageAggregateCache(db_session).refresh("ghost")


@pytest.mark.asyncio
async def test_get_returns_cached_row_until_invalidated(db_session: AsyncSession):
    await make_subscription(db_session)
    cache = UsageAggregateCache(db_session)
    await spend(db_session, 100)

    first = await cache.get("user-1")
    assert first.total_tokens == 100

    # New spend is not visible until refreshed
    await spend(db_session, 50)
    assert (await cache.get("user-1")).total_tokens == 100

    await cache.invalidate("user-1")
    assert await cache.peek("user-1") is None
    assert (await cache.get("user-1")).total_tokens == 150


@pytest.mark.asyncio
async def test_get_refreshes_when_period_moves(db_session: AsyncSession):
    sub = await make_subscription(db_session)
    cache = UsageAggregateCache(db_session)
    await spend(db_session, 400)
    assert (await cache.get("user-1")).tokens_remaining == 100

    sub.current_period_start = PERIOD_END
    sub.current_period_end = PERIOD_END + timedelta(days=30)
    await db_session.commit()

    agg = await cache.get("user-1")
    assert agg.period_start == PERIOD_END
    assert agg.total_tokens == 0
    assert agg.tokens_remaining == 500


@pytest.mark.asyncio
async def test_invalidate_all(db_session: AsyncSession):
    cache = UsageAggregateCache(db_session)
    for user_id in ("a", "b", "c"):
        await make_subscription(db_session, user_id=user_id)
        await cache.refresh(user_id)

    assert await cache.invalidate_all() == 3
    assert await cache.peek("a") is None
