"""Initial metering schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

Adds:
- subscriptions: one row per user (tier, status, billing period, Stripe refs)
- usage_events: append-only usage ledger, unique per (user_id, message_id)
- usage_aggregate: rebuildable per-user period summary
- subscription_audit: billing/admin transition trail, unique external event id
- request_log: rate-window request timestamps
- usage_alerts: quota threshold alerts, once per period
"""
from alembic import op
import sqlalchemy as sa

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── subscriptions ────────────────────────────────────────
    op.create_table(
        "subscriptions",
        sa.Column("user_id", sa.String(255), primary_key=True),
        sa.Column("tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("current_period_start", sa.DateTime, nullable=False),
        sa.Column("current_period_end", sa.DateTime, nullable=False),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("trial_ends_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("current_period_end > current_period_start", name="ck_subscriptions_period"),
    )
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_stripe_customer_id", "subscriptions", ["stripe_customer_id"])
    op.create_index("ix_subscriptions_stripe_subscription_id", "subscriptions", ["stripe_subscription_id"])

    # ── usage_events ─────────────────────────────────────────
    op.create_table(
        "usage_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("tokens_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_estimated", sa.Integer, nullable=False, server_default="0"),
        sa.Column("timestamp", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("period_start", sa.DateTime, nullable=False),
        sa.Column("period_end", sa.DateTime, nullable=False),
        sa.Column("chat_id", sa.String(255), nullable=True),
        sa.Column("message_id", sa.String(255), nullable=True),
        sa.Column("message_type", sa.String(20), nullable=False, server_default="chat"),
        sa.Column("model_used", sa.String(100), nullable=True),
        sa.CheckConstraint("tokens_used >= 0", name="ck_usage_events_tokens_used"),
        sa.CheckConstraint("tokens_estimated >= 0", name="ck_usage_events_tokens_estimated"),
    )
    op.create_index("ix_usage_events_user_timestamp", "usage_events", ["user_id", "timestamp"])
    op.create_index("ix_usage_events_user_message", "usage_events", ["user_id", "message_id"], unique=True)

    # ── usage_aggregate ──────────────────────────────────────
    op.create_table(
        "usage_aggregate",
        sa.Column("user_id", sa.String(255), primary_key=True),
        sa.Column("period_start", sa.DateTime, nullable=False),
        sa.Column("period_end", sa.DateTime, nullable=False),
        sa.Column("total_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_requests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_remaining", sa.Integer, nullable=True),
        sa.Column("last_updated", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # ── subscription_audit ───────────────────────────────────
    op.create_table(
        "subscription_audit",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("tier", sa.String(20), nullable=True),
        sa.Column("status", sa.String(20), nullable=True),
        sa.Column("external_event_id", sa.String(255), nullable=True, unique=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_subscription_audit_user_id", "subscription_audit", ["user_id"])

    # ── request_log ──────────────────────────────────────────
    op.create_table(
        "request_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("endpoint", sa.String(255), nullable=False),
        sa.Column("request_timestamp", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_request_log_user_timestamp", "request_log", ["user_id", "request_timestamp"])

    # ── usage_alerts ─────────────────────────────────────────
    op.create_table(
        "usage_alerts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("alert_type", sa.String(20), nullable=False),
        sa.Column("tokens_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("period_start", sa.DateTime, nullable=False),
        sa.Column("sent_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_usage_alerts_user_type_period", "usage_alerts",
        ["user_id", "alert_type", "period_start"], unique=True,
    )


def downgrade() -> None:
    op.drop_index("ix_usage_alerts_user_type_period", table_name="usage_alerts")
    op.drop_table("usage_alerts")
    op.drop_index("ix_request_log_user_timestamp", table_name="request_log")
    op.drop_table("request_log")
    op.drop_index("ix_subscription_audit_user_id", table_name="subscription_audit")
    op.drop_table("subscription_audit")
    op.drop_table("usage_aggregate")
    op.drop_index("ix_usage_events_user_message", table_name="usage_events")
    op.drop_index("ix_usage_events_user_timestamp", table_name="usage_events")
    op.drop_table("usage_events")
    op.drop_index("ix_subscriptions_stripe_subscription_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_stripe_customer_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status", table_name="subscriptions")
    op.drop_table("subscriptions")
