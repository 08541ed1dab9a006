import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from database import Base


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    # Naive UTC, matching what the clock hands to the services
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """
    Local mirror of an identity-provider user.
    Only the fields the payment gateway needs are kept here.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)


class Plan(Base):
    """
    Catalog entry. Edited out of band by admin tooling, read-only here.
    """
    __tablename__ = "plans"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False, index=True)
    display_name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="CLP")
    billing_period = Column(String, nullable=False, default="MONTHLY")
    trial_days = Column(Integer, nullable=False, default=0)
    # NULL means unlimited
    max_usage_per_period = Column(Integer, nullable=True)
    features = Column(JSON, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    # Gateway recurring-billing template (Stripe price id); NULL for one-off plans
    recurring_price_id = Column(String, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)


class Subscription(Base):
    """
    One user's relationship to a plan over time. Rows are never deleted.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_status", "user_id", "status"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    plan_id = Column(String, ForeignKey("plans.id"), nullable=False)
    status = Column(String, nullable=False)
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    canceled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String, nullable=True)
    external_payment_ref = Column(String, nullable=True, unique=True)
    # Last remote cancellation failure; non-NULL means local and gateway state may differ
    gateway_sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


class UsageRecord(Base):
    """
    Append-only metered consumption event, window-stamped at write time.
    """
    __tablename__ = "usage_records"
    __table_args__ = (
        Index("ix_usage_records_user_resource", "user_id", "resource_type"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=True)
    resource_type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    billing_period_start = Column(DateTime, nullable=False)
    billing_period_end = Column(DateTime, nullable=False)
    recorded_at = Column(DateTime, nullable=False, default=_utcnow)
    # "metadata" is reserved on declarative classes
    usage_metadata = Column("metadata", JSON, nullable=True)


class UsageCounter(Base):
    """
    Per-user, per-resource, per-window running total.
    Target of the atomic conditional increment used by UsageMeter.consume.
    """
    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "resource_type", "period_start", "period_end",
            name="uq_usage_counter_window",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    resource_type = Column(String, nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    used = Column(Integer, nullable=False, default=0)


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String, primary_key=True, default=_new_id)
    code = Column(String, unique=True, nullable=False, index=True)
    discount_type = Column(String, nullable=False, default="PERCENTAGE")
    discount_value = Column(Numeric(12, 2), nullable=False)
    max_redemptions = Column(Integer, nullable=True)
    redemptions_count = Column(Integer, nullable=False, default=0)
    applicable_plans = Column(JSON, nullable=True)
    first_purchase_only = Column(Boolean, nullable=False, default=False)
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Payment(Base):
    """
    Gateway payment as last reported by a webhook callback.
    """
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=_new_id)
    user_id = Column(String, nullable=False, index=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False, default="PENDING")
    provider_payment_id = Column(String, unique=True, nullable=False)
    provider_status = Column(String, nullable=True)
    external_reference = Column(String, nullable=True, index=True)
    coupon_code = Column(String, nullable=True)
    discount_amount = Column(Numeric(12, 2), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)


class WebhookEvent(Base):
    """
    Audit trail of every gateway callback received.
    """
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=_new_id)
    event_type = Column(String, nullable=False)
    provider_event_id = Column(String, nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime, nullable=True)
    processing_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
