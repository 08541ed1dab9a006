from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class BillingPeriod(str, Enum):
    """Supported billing cadences."""
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"


class SubscriptionStatus(str, Enum):
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


# Statuses that make a subscription the user's "current" one
CURRENT_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


# ---------------------------------------------------------------------------
# Effective plan: resolved once per request, shared by UsageMeter and FeatureGate
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Subscribed:
    subscription: Any
    plan: Any


@dataclass(frozen=True)
class DefaultFree:
    plan: Any


EffectivePlan = Union[Subscribed, DefaultFree]


# ---------------------------------------------------------------------------
# Read-only projections for the presentation layer
# ---------------------------------------------------------------------------

class PlanView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    display_name: str
    price: Decimal
    currency: str
    billing_period: BillingPeriod
    trial_days: int = 0
    max_usage_per_period: Optional[int] = None
    features: Dict[str, bool] = Field(default_factory=dict)
    is_recurring: bool = False

    @classmethod
    def from_plan(cls, plan) -> "PlanView":
        return cls(
            id=plan.id,
            name=plan.name,
            display_name=plan.display_name,
            price=plan.price,
            currency=plan.currency,
            billing_period=plan.billing_period,
            trial_days=plan.trial_days or 0,
            max_usage_per_period=plan.max_usage_per_period,
            features=plan.features or {},
            is_recurring=bool(plan.recurring_price_id),
        )


class SubscriptionView(BaseModel):
    id: str
    user_id: str
    plan: PlanView
    status: SubscriptionStatus
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    external_payment_ref: Optional[str] = None
    days_remaining: int = 0
    is_expiring_soon: bool = False


class UsageSnapshot(BaseModel):
    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None
    percentage: int = 0
    can_access: bool = True


class UsageSummary(BaseModel):
    """Per-resource totals for the window the user is currently billed in."""
    plan_name: str
    limit: Optional[int] = None
    period_start: datetime
    period_end: datetime
    usage: Dict[str, int] = Field(default_factory=dict)
    total: int = 0


class LimitCheck(BaseModel):
    allowed: bool
    used: int
    limit: Optional[int] = None


class UsageRecordView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    subscription_id: Optional[str] = None
    resource_type: str
    quantity: int
    billing_period_start: datetime
    billing_period_end: datetime
    recorded_at: datetime
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="usage_metadata")


class CheckoutResult(BaseModel):
    redirect_url: str
    reference: str
    provider_ref: Optional[str] = None
    amount: Decimal
    discount: Decimal = Decimal("0")


class GatewaySession(BaseModel):
    redirect_url: str
    provider_ref: str


class GatewayResult(BaseModel):
    """Outcome of a gateway call that must not raise (e.g. remote cancellation)."""
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "GatewayResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "GatewayResult":
        return cls(ok=False, error=error)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class RecordUsageRequest(BaseModel):
    resource_type: str
    quantity: int = Field(default=1, ge=1)
    metadata: Optional[Dict[str, Any]] = None
    enforce: bool = True


class ActivateRequest(BaseModel):
    plan_id: str
    external_ref: Optional[str] = None


class CancelRequest(BaseModel):
    at_period_end: bool = True
    reason: Optional[str] = None


class CheckoutRequest(BaseModel):
    plan_id: str
    coupon_code: Optional[str] = None
