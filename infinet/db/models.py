"""
Database models for the Infinet metering core

- Subscription: one row per user, mutated by the gate (creation) and the
  billing reconciler
- UsageEvent: append-only ledger of accounted requests
- UsageAggregate: rebuildable per-user summary of the current period
- SubscriptionAudit: append-only trail of billing and admin transitions
- RequestLog: per-request timestamps for the short-window rate limit
- UsageAlert: quota threshold notifications, at most one per period
"""

from datetime import datetime, timezone
from typing import Optional
from enum import Enum
import uuid

from sqlalchemy import (
    String, DateTime, Integer, JSON, Index, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SubscriptionTier(str, Enum):
    """Named subscription plans"""
    FREE = "free"
    STARTER = "starter"
    PREMIUM = "premium"
    LIMITLESS = "limitless"
    TRIAL = "trial"
    DEVELOPER = "developer"  # Allow-listed identities only, never persisted by billing


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIAL = "trial"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    SUSPENDED = "suspended"


class RequestKind(str, Enum):
    """What a usage event paid for"""
    CHAT = "chat"
    IMAGE = "image"
    FILE = "file"


class Subscription(Base):
    """A user's plan, status and current billing period."""
    __tablename__ = "subscriptions"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tier: Mapped[str] = mapped_column(String(20), default=SubscriptionTier.FREE.value)
    status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.ACTIVE.value, index=True)
    current_period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("current_period_end > current_period_start", name="ck_subscriptions_period"),
    )


class UsageEvent(Base):
    """One accounted request. Immutable once written."""
    __tablename__ = "usage_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)  # Post-hoc measured
    tokens_estimated: Mapped[int] = mapped_column(Integer, default=0)  # Pre-flight estimate
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    chat_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    message_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    message_type: Mapped[str] = mapped_column(String(20), default=RequestKind.CHAT.value)
    model_used: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        Index("ix_usage_events_user_timestamp", "user_id", "timestamp"),
        Index("ix_usage_events_user_message", "user_id", "message_id", unique=True),
        CheckConstraint("tokens_used >= 0", name="ck_usage_events_tokens_used"),
        CheckConstraint("tokens_estimated >= 0", name="ck_usage_events_tokens_estimated"),
    )


class UsageAggregate(Base):
    """Derived summary of the ledger for the subscription's current period."""
    __tablename__ = "usage_aggregate"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_requests: Mapped[int] = mapped_column(Integer, default=0)
    tokens_remaining: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # NULL = unlimited
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @property
    def is_unlimited(self) -> bool:
        return self.tokens_remaining is None

    @property
    def is_exhausted(self) -> bool:
        return self.tokens_remaining is not None and self.tokens_remaining <= 0


class SubscriptionAudit(Base):
    """Append-only trail of subscription transitions (billing + admin)."""
    __tablename__ = "subscription_audit"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    event_type: Mapped[str] = mapped_column(String(100))
    tier: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    external_event_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class RequestLog(Base):
    """Per-request timestamp log backing the trailing-window rate limit."""
    __tablename__ = "request_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255))
    request_timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_request_log_user_timestamp", "user_id", "request_timestamp"),
    )


class UsageAlert(Base):
    """Quota threshold crossed (80/90/95/100%) within a billing period."""
    __tablename__ = "usage_alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(20))  # e.g. "80_percent"
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    tokens_limit: Mapped[int] = mapped_column(Integer, default=0)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_usage_alerts_user_type_period", "user_id", "alert_type", "period_start", unique=True),
    )
