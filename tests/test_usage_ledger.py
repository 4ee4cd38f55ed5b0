"""
Tests for the Usage Ledger

Covers window arithmetic, idempotent appends and the operator
correction tools (reset, wipe, anomaly fixes, retention).
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.db import init_db, drop_db
from infinet.db.models import Subscription, UsageEvent
from infinet.errors import AccountingError
from infinet.services.usage_ledger import UsageLedger, AnomalyPolicy

PERIOD_START = datetime(2026, 3, 1)
PERIOD_END = datetime(2026, 3, 31)


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create a fresh database for each test"""
    await init_db()
    yield
    await drop_db()


@pytest_asyncio.fixture
async def ledger(db_session: AsyncSession):
    return UsageLedger(db_session)


def make_event(user_id="user-1", tokens=10, at=None, message_id=None) -> UsageEvent:
    return UsageEvent(
        user_id=user_id,
        tokens_used=tokens,
        tokens_estimated=tokens,
        timestamp=at or PERIOD_START + timedelta(days=1),
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        message_id=message_id,
    )


# ============ Append / Sum ============

@pytest.mark.asyncio
async def test_sum_of_empty_ledger_is_zero(ledger: UsageLedger):
    totals = await ledger.sum("nobody", PERIOD_START, PERIOD_END)
    assert totals.total_tokens == 0
    assert totals.total_requests == 0


@pytest.mark.asyncio
async def test_sum_counts_only_events_inside_window(ledger: UsageLedger):
    await ledger.append(make_event(tokens=100, at=PERIOD_START))                       # included
    await ledger.append(make_event(tokens=20, at=PERIOD_START + timedelta(days=10)))   # included
    await ledger.append(make_event(tokens=7, at=PERIOD_START - timedelta(seconds=1)))  # before
    await ledger.append(make_event(tokens=9, at=PERIOD_END))                           # end is exclusive
    await ledger.append(make_event(user_id="user-2", tokens=50))                       # other user

    totals = await ledger.sum("user-1", PERIOD_START, PERIOD_END)
    assert totals.total_tokens == 120
    assert totals.total_requests == 2


@pytest.mark.asyncio
async def test_append_same_message_is_counted_once(ledger: UsageLedger):
    assert await ledger.append(make_event(tokens=30, message_id="msg-1")) is True
    assert await ledger.append(make_event(tokens=30, message_id="msg-1")) is False

    totals = await ledger.sum("user-1", PERIOD_START, PERIOD_END)
    assert totals.total_tokens == 30
    assert totals.total_requests == 1


@pytest.mark.asyncio
async def test_same_message_id_for_different_users_is_allowed(ledger: UsageLedger):
    assert await ledger.append(make_event(user_id="user-1", message_id="msg-1"))
    assert await ledger.append(make_event(user_id="user-2", message_id="msg-1"))


@pytest.mark.asyncio
async def test_negative_tokens_rejected(ledger: UsageLedger):
    with pytest.raises(ValueError):
        await ledger.append(make_event(tokens=-1))


@pytest.mark.asyncio
async def test_failed_write_raises_accounting_error(db_session: AsyncSession, ledger: UsageLedger, monkeypatch):
    async def failing_commit():
        raise OperationalError("INSERT INTO usage_events", {}, Exception("disk I/O error"))

    monkeypatch.setattr(db_session, "commit", failing_commit)
    with pytest.raises(AccountingError):
        await ledger.append(make_event(message_id="m-9"))

    monkeypatch.undo()
    assert (await ledger.sum("user-1", PERIOD_START, PERIOD_END)).total_tokens == 0


# ============ Administrative operations ============

@pytest.mark.asyncio
async def test_stats(ledger: UsageLedger):
    for tokens in (10, 20, 30):
        await ledger.append(make_event(tokens=tokens))
    await ledger.append(make_event(user_id="user-2", tokens=40))

    stats = await ledger.stats()
    assert stats == {"records": 4, "total_tokens": 100, "users": 2, "avg_tokens_per_request": 25}

    user_stats = await ledger.stats("user-1")
    assert user_stats["records"] == 3
    assert user_stats["total_tokens"] == 60


@pytest.mark.asyncio
async def test_wipe_all_reports_exact_counts(ledger: UsageLedger):
    for i in range(10):
        await ledger.append(make_event(user_id=f"user-{i % 3}", tokens=5))

    before = await ledger.stats()
    deleted = await ledger.wipe_all()
    after = await ledger.stats()

    assert before["records"] == 10
    assert before["total_tokens"] == 50
    assert deleted == 10
    assert after["records"] == 0
    assert after["total_tokens"] == 0


@pytest.mark.asyncio
async def test_delete_for_user_within_window(ledger: UsageLedger):
    await ledger.append(make_event(tokens=10, at=PERIOD_START - timedelta(days=5)))
    await ledger.append(make_event(tokens=20, at=PERIOD_START + timedelta(days=1)))
    await ledger.append(make_event(user_id="user-2", tokens=30))

    deleted = await ledger.delete_for_user("user-1", PERIOD_START, PERIOD_END)
    assert deleted == 1

    assert (await ledger.stats("user-1"))["total_tokens"] == 10
    assert (await ledger.stats("user-2"))["total_tokens"] == 30

    assert await ledger.delete_for_user("user-1") == 1
    assert (await ledger.stats("user-1"))["records"] == 0


@pytest.mark.asyncio
async def test_correct_anomalies(db_session: AsyncSession, ledger: UsageLedger):
    db_session.add(Subscription(
        user_id="free-user",
        tier="free",
        status="active",
        current_period_start=PERIOD_START,
        current_period_end=PERIOD_END,
    ))
    await db_session.commit()

    await ledger.append(make_event(user_id="free-user", tokens=250))   # free cap -> 100
    await ledger.append(make_event(user_id="paid-user", tokens=4000))  # /10 -> 400
    await ledger.append(make_event(user_id="paid-user", tokens=9000))  # /10 -> 900 -> cap 500
    await ledger.append(make_event(user_id="paid-user", tokens=80))    # untouched

    fixes = await ledger.correct_anomalies(AnomalyPolicy())
    assert fixes == {"free_users_affected": 1, "overcounted_fixed": 2, "extreme_values_fixed": 1}

    result = await db_session.execute(
        select(UsageEvent.user_id, UsageEvent.tokens_used).order_by(UsageEvent.tokens_used)
    )
    rows = [tuple(r) for r in result.all()]
    assert rows == [
        ("paid-user", 80),
        ("free-user", 100),
        ("paid-user", 400),
        ("paid-user", 500),
    ]


@pytest.mark.asyncio
async def test_prune_before(ledger: UsageLedger):
    old = datetime(2025, 1, 1)
    await ledger.append(make_event(tokens=1, at=old))
    await ledger.append(make_event(tokens=2))

    assert await ledger.prune_before(datetime(2026, 1, 1)) == 1
    assert (await ledger.stats())["records"] == 1
