from infinet.db.models import (
    Base, utcnow,
    SubscriptionTier, SubscriptionStatus, RequestKind,
    Subscription, UsageEvent, UsageAggregate, SubscriptionAudit, RequestLog, UsageAlert,
)
from infinet.db.database import get_db, init_db, drop_db, async_session_maker, engine, sync_database_url

__all__ = [
    "Base",
    "utcnow",
    # Enums
    "SubscriptionTier",
    "SubscriptionStatus",
    "RequestKind",
    # Metering models
    "Subscription",
    "UsageEvent",
    "UsageAggregate",
    "SubscriptionAudit",
    "RequestLog",
    "UsageAlert",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
    "sync_database_url",
]
