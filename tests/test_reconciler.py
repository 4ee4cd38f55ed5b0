"""
Tests for the Subscription State Reconciler and Stripe event conversion
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.db import init_db, drop_db
from infinet.db.models import Subscription, SubscriptionAudit, UsageEvent
from infinet.errors import ReconciliationError
from infinet.services.reconciler import (
    BillingEvent, PriceTierMap, SubscriptionReconciler, map_status,
)
from infinet.services.stripe_service import to_billing_event
from infinet.services.usage_aggregate import UsageAggregateCache
from infinet.services.usage_ledger import UsageLedger

OLD_START = datetime(2026, 3, 1)
OLD_END = datetime(2026, 3, 31)
NEW_START = datetime(2026, 3, 10)
NEW_END = datetime(2026, 4, 10)


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    await init_db()
    yield
    await drop_db()


@pytest_asyncio.fixture
async def free_user(db_session: AsyncSession) -> Subscription:
    sub = Subscription(
        user_id="user-1",
        tier="free",
        status="active",
        current_period_start=OLD_START,
        current_period_end=OLD_END,
        stripe_customer_id="cus_1",
    )
    db_session.add(sub)
    await db_session.commit()
    return sub


def subscription_event(event_id="evt_1", price="price_premium", status="active", **overrides) -> BillingEvent:
    values = dict(
        external_event_id=event_id,
        event_type="customer.subscription.updated",
        customer_ref="cus_1",
        subscription_ref="sub_1",
        price_ref=price,
        provider_status=status,
        period_start=NEW_START,
        period_end=NEW_END,
    )
    values.update(overrides)
    return BillingEvent(**values)


async def audit_count(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(SubscriptionAudit.id)))).scalar()


# ============ Status / price mapping ============

@pytest.mark.parametrize(
    "provider,local",
    [
        ("active", "active"),
        ("trialing", "active"),
        ("past_due", "past_due"),
        ("canceled", "canceled"),
        ("unpaid", "canceled"),
        ("incomplete", "suspended"),
        (None, "suspended"),
    ],
)
def test_map_status(provider, local):
    assert map_status(provider) == local


def test_price_map_falls_back_to_safe_tier():
    prices = PriceTierMap({"price_a": "premium"}, fallback_tier="limitless")
    assert prices.fallback_tier == "starter"
    assert prices.tier_for("price_a") == "premium"
    assert prices.tier_for("price_unknown") == "starter"
    assert PriceTierMap({}, fallback_tier="free").tier_for(None) == "free"


# ============ Apply ============

@pytest.mark.asyncio
async def test_upgrade_moves_window_and_invalidates_aggregate(db_session: AsyncSession, free_user):
    await UsageLedger(db_session).append(UsageEvent(
        user_id="user-1",
        tokens_used=450,
        timestamp=OLD_START + timedelta(days=2),
        period_start=OLD_START,
        period_end=OLD_END,
    ))
    cache = UsageAggregateCache(db_session)
    assert (await cache.refresh("user-1")).tokens_remaining == 50

    result = await SubscriptionReconciler(db_session).apply(subscription_event())
    assert result.status == "applied"
    assert result.tier == "premium"
    assert result.subscription_status == "active"
    assert result.aggregate_invalidated
    assert await cache.peek("user-1") is None

    sub = await db_session.get(Subscription, "user-1")
    assert sub.tier == "premium"
    assert sub.current_period_start == NEW_START
    assert sub.current_period_end == NEW_END
    assert sub.stripe_subscription_id == "sub_1"

    # Old-window usage no longer counts against the new period
    agg = await cache.get("user-1")
    assert agg.total_tokens == 0
    assert agg.tokens_remaining == 50_000


@pytest.mark.asyncio
async def test_duplicate_event_is_noop(db_session: AsyncSession, free_user):
    reconciler = SubscriptionReconciler(db_session)
    assert (await reconciler.apply(subscription_event())).status == "applied"
    assert await audit_count(db_session) == 1

    again = await reconciler.apply(subscription_event(price="price_starter"))
    assert again.status == "duplicate"
    assert await audit_count(db_session) == 1
    assert (await db_session.get(Subscription, "user-1")).tier == "premium"


@pytest.mark.asyncio
async def test_unmapped_price_never_grants_more_than_starter(db_session, free_user):
    result = await SubscriptionReconciler(db_session).apply(subscription_event(price="price_mystery"))
    assert result.tier == "starter"


@pytest.mark.asyncio
async def test_trialing_maps_to_active_and_keeps_trial_end(db_session, free_user):
    trial_end = NEW_START + timedelta(days=7)
    result = await SubscriptionReconciler(db_session).apply(
        subscription_event(status="trialing", trial_end=trial_end)
    )
    assert result.subscription_status == "active"
    assert (await db_session.get(Subscription, "user-1")).trial_ends_at == trial_end


@pytest.mark.asyncio
async def test_deleted_returns_to_free_and_canceled(db_session, free_user):
    reconciler = SubscriptionReconciler(db_session)
    await reconciler.apply(subscription_event())

    result = await reconciler.apply(BillingEvent(
        external_event_id="evt_2",
        event_type="customer.subscription.deleted",
        customer_ref="cus_1",
        subscription_ref="sub_1",
    ))
    assert result.tier == "free"
    assert result.subscription_status == "canceled"
    assert result.aggregate_invalidated


@pytest.mark.asyncio
async def test_payment_failed_sets_past_due_and_keeps_tier(db_session, free_user):
    reconciler = SubscriptionReconciler(db_session)
    await reconciler.apply(subscription_event())

    result = await reconciler.apply(BillingEvent(
        external_event_id="evt_3",
        event_type="invoice.payment_failed",
        customer_ref="cus_1",
        subscription_ref="sub_1",
        metadata={"invoice_id": "in_1", "attempt_count": 2},
    ))
    assert result.tier == "premium"
    assert result.subscription_status == "past_due"
    assert not result.aggregate_invalidated

    audit = (await db_session.execute(
        select(SubscriptionAudit).where(SubscriptionAudit.external_event_id == "evt_3")
    )).scalar_one()
    assert audit.metadata_json == {"invoice_id": "in_1", "attempt_count": 2}


@pytest.mark.asyncio
async def test_lookup_by_subscription_ref_then_metadata(db_session: AsyncSession):
    result = await SubscriptionReconciler(db_session).apply(
        subscription_event(customer_ref="cus_new", user_id="user-9")
    )
    assert result.user_id == "user-9"
    sub = await db_session.get(Subscription, "user-9")
    assert sub.stripe_customer_id == "cus_new"
    assert sub.tier == "premium"

    # Next event finds the row by subscription id even with an unknown customer
    result = await SubscriptionReconciler(db_session).apply(
        subscription_event(event_id="evt_2", customer_ref="cus_other")
    )
    assert result.user_id == "user-9"


@pytest.mark.asyncio
async def test_unknown_customer_raises(db_session: AsyncSession):
    with pytest.raises(ReconciliationError):
        await SubscriptionReconciler(db_session).apply(
            subscription_event(customer_ref="cus_ghost", subscription_ref="sub_ghost")
        )
    assert await audit_count(db_session) == 0


@pytest.mark.asyncio
async def test_event_without_period_raises(db_session, free_user):
    with pytest.raises(ReconciliationError):
        await SubscriptionReconciler(db_session).apply(subscription_event(period_start=None))
    with pytest.raises(ReconciliationError):
        await SubscriptionReconciler(db_session).apply(subscription_event(period_end=NEW_START))


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ignored(db_session, free_user):
    result = await SubscriptionReconciler(db_session).apply(
        BillingEvent(external_event_id="evt_x", event_type="charge.succeeded", customer_ref="cus_1")
    )
    assert result.status == "ignored"
    assert await audit_count(db_session) == 0


# ============ Stripe event conversion ============

def _epoch(dt: datetime) -> int:
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


def test_subscription_event_conversion():
    event = {
        "id": "evt_10",
        "type": "customer.subscription.updated",
        "data": {"object": {
            "id": "sub_10",
            "customer": "cus_10",
            "status": "active",
            "metadata": {"user_id": "user-10"},
            "items": {"data": [{
                "price": {"id": "price_starter"},
                "current_period_start": _epoch(NEW_START),
                "current_period_end": _epoch(NEW_END),
            }]},
        }},
    }
    billing = to_billing_event(event)
    assert billing.external_event_id == "evt_10"
    assert billing.subscription_ref == "sub_10"
    assert billing.customer_ref == "cus_10"
    assert billing.price_ref == "price_starter"
    assert billing.period_start == NEW_START
    assert billing.period_end == NEW_END
    assert billing.user_id == "user-10"
    assert billing.trial_end is None


def test_invoice_event_conversion():
    event = {
        "id": "evt_11",
        "type": "invoice.payment_failed",
        "data": {"object": {
            "id": "in_11",
            "customer": "cus_11",
            "attempt_count": 3,
            "parent": {"subscription_details": {
                "subscription": "sub_11",
                "metadata": {"user_id": "user-11"},
            }},
        }},
    }
    billing = to_billing_event(event)
    assert billing.subscription_ref == "sub_11"
    assert billing.user_id == "user-11"
    assert billing.metadata == {"invoice_id": "in_11", "attempt_count": 3}


SUBSCRIPTION_OBJECT = {"id": "sub_12", "customer": "cus_12", "status": "active"}


@pytest.mark.parametrize("event", [
    {"id": "evt_12"},
    "not an event",
    {"id": "evt_12", "type": "customer.subscription.updated", "data": {"object": "sub_12"}},
    {"id": "evt_12", "type": None, "data": {"object": SUBSCRIPTION_OBJECT}},
    {"id": None, "type": "customer.subscription.updated", "data": {"object": SUBSCRIPTION_OBJECT}},
    {"id": "evt_12", "type": "customer.subscription.updated",
     "data": {"object": {**SUBSCRIPTION_OBJECT, "current_period_start": "yesterday"}}},
    {"id": "evt_12", "type": "customer.subscription.updated",
     "data": {"object": {**SUBSCRIPTION_OBJECT, "items": {"data": ["si_1"]}}}},
    {"id": "evt_12", "type": "invoice.payment_failed",
     "data": {"object": {"id": "in_12", "metadata": ["user-12"]}}},
])
def test_malformed_event_raises(event):
    with pytest.raises(ReconciliationError):
        to_billing_event(event)


def test_malformed_event_keeps_event_id():
    event = {"id": "evt_13", "type": "customer.subscription.updated",
             "data": {"object": {**SUBSCRIPTION_OBJECT, "current_period_end": "soon"}}}
    with pytest.raises(ReconciliationError) as exc_info:
        to_billing_event(event)
    assert exc_info.value.external_event_id == "evt_13"
