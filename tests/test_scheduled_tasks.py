"""
Tests for the metering housekeeping jobs
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from infinet.db import init_db, drop_db, utcnow
from infinet.db.models import RequestLog, Subscription
from infinet.scripts import scheduled_tasks
from infinet.services.rate_limiter import RequestRateLimiter
from infinet.services.subscription_service import SubscriptionService
from infinet.services.usage_aggregate import UsageAggregateCache


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    await init_db()
    yield
    await drop_db()


@pytest.mark.asyncio
async def test_roll_over_advances_whole_periods(db_session: AsyncSession):
    start = datetime(2026, 1, 1)
    db_session.add(Subscription(
        user_id="free-user",
        tier="free",
        status="active",
        current_period_start=start,
        current_period_end=start + timedelta(days=30),
    ))
    db_session.add(Subscription(
        user_id="paid-user",
        tier="premium",
        status="active",
        current_period_start=start,
        current_period_end=start + timedelta(days=30),
        stripe_subscription_id="sub_1",
    ))
    await db_session.commit()
    await UsageAggregateCache(db_session).refresh("free-user")

    now = start + timedelta(days=65)
    rolled = await SubscriptionService(db_session).roll_over_expired(now)
    assert rolled == 1

    free = await db_session.get(Subscription, "free-user")
    assert free.current_period_start == start + timedelta(days=60)
    assert free.current_period_end == start + timedelta(days=90)
    assert free.current_period_start <= now < free.current_period_end
    assert await UsageAggregateCache(db_session).peek("free-user") is None

    # Provider-backed periods are only moved by billing events
    paid = await db_session.get(Subscription, "paid-user")
    assert paid.current_period_end == start + timedelta(days=30)


@pytest.mark.asyncio
async def test_roll_over_skips_inactive_and_current(db_session: AsyncSession):
    now = datetime(2026, 6, 1)
    db_session.add(Subscription(
        user_id="canceled-user",
        tier="free",
        status="canceled",
        current_period_start=now - timedelta(days=60),
        current_period_end=now - timedelta(days=30),
    ))
    db_session.add(Subscription(
        user_id="current-user",
        tier="free",
        status="active",
        current_period_start=now - timedelta(days=1),
        current_period_end=now + timedelta(days=29),
    ))
    await db_session.commit()

    assert await SubscriptionService(db_session).roll_over_expired(now) == 0


@pytest.mark.asyncio
async def test_run_period_rollover_job(db_session: AsyncSession):
    now = utcnow()
    db_session.add(Subscription(
        user_id="free-user",
        tier="free",
        status="active",
        current_period_start=now - timedelta(days=40),
        current_period_end=now - timedelta(days=10),
    ))
    await db_session.commit()

    assert await scheduled_tasks.run_period_rollover() == 1

    sub = await db_session.get(Subscription, "free-user")
    await db_session.refresh(sub)
    assert sub.current_period_start == now - timedelta(days=10)
    assert sub.current_period_end == now + timedelta(days=20)


@pytest.mark.asyncio
async def test_run_rate_log_pruning_job(db_session: AsyncSession):
    now = utcnow()
    db_session.add(RequestLog(user_id="u", endpoint="/api/chat", request_timestamp=now - timedelta(days=3)))
    db_session.add(RequestLog(user_id="u", endpoint="/api/chat", request_timestamp=now - timedelta(hours=1)))
    await db_session.commit()

    assert await scheduled_tasks.run_rate_log_pruning() == 1
    assert await RequestRateLimiter(db_session).count_recent("u") == 1


@pytest.mark.asyncio
async def test_ledger_retention_is_off_by_default():
    assert await scheduled_tasks.run_ledger_retention() == 0


def test_setup_scheduler_registers_jobs():
    sched = scheduled_tasks.setup_scheduler(rollover_interval_minutes=5)
    job_ids = {job.id for job in sched.get_jobs()}
    assert {"period_rollover", "rate_log_pruning"} <= job_ids
    assert not sched.running
