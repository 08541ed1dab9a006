"""
Subscription router - plans, current subscription, feature flags and usage
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.utils.responses import billing_error_response, success_response
from database import get_db
from models.billing import (
    ActivateRequest,
    CancelRequest,
    PlanView,
    RecordUsageRequest,
    UsageRecordView,
)
from routers.dependencies import get_clock, get_current_user_id, get_gateway
from services.billing_service import PaymentGatewayAdapter
from services.exceptions import BillingError, SubscriptionNotFound
from services.feature_gate import FeatureGate
from services.plan_catalog import PlanCatalog
from services.subscription_service import SubscriptionLifecycle
from services.usage_meter import UsageMeter

logger = logging.getLogger(__name__)

subscription_router = APIRouter(prefix="/api/subscription", tags=["subscription"])


@subscription_router.get("/plans")
async def list_active_plans(db: AsyncSession = Depends(get_db)):
    """Active plans, cheapest first."""
    plans = await PlanCatalog(db).get_active_plans()
    return success_response([PlanView.from_plan(plan).model_dump() for plan in plans])


@subscription_router.get("/current")
async def get_current_subscription(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """The caller's current subscription, or null when on the free tier."""
    lifecycle = SubscriptionLifecycle(db, clock=clock)
    now = clock.now()
    subscription = await lifecycle.get_current_subscription(user_id, now)
    if subscription is None:
        return success_response(None)
    view = await lifecycle.view(subscription, now)
    return success_response(view.model_dump())


@subscription_router.get("/features")
async def get_features(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    features = await FeatureGate(db, clock=clock).get_features(user_id)
    return success_response(features)


@subscription_router.get("/features/{feature_key}")
async def can_access_feature(
    feature_key: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    allowed = await FeatureGate(db, clock=clock).can_access_feature(user_id, feature_key)
    return success_response({"feature": feature_key, "has_access": allowed})


@subscription_router.get("/usage")
async def get_usage_summary(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """Totals per resource type for the current billing window."""
    summary = await UsageMeter(db, clock=clock).monthly_summary(user_id)
    return success_response(summary.model_dump())


@subscription_router.get("/usage/{resource_type}")
async def check_usage(
    resource_type: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    try:
        snapshot = await UsageMeter(db, clock=clock).snapshot(user_id, resource_type)
    except BillingError as e:
        return billing_error_response(e)
    return success_response(snapshot.model_dump())


@subscription_router.post("/usage")
async def record_usage(
    request: RecordUsageRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    Record consumption of a metered resource.

    With enforce=true (default) the quota check and the write are atomic and
    an exhausted quota answers 429. With enforce=false the usage is recorded
    unconditionally.
    """
    meter = UsageMeter(db, clock=clock)
    try:
        if request.enforce:
            record = await meter.consume(user_id, request.resource_type, request.quantity, request.metadata)
        else:
            record = await meter.record_usage(user_id, request.resource_type, request.quantity, request.metadata)
    except BillingError as e:
        return billing_error_response(e)
    return success_response(UsageRecordView.model_validate(record).model_dump(), status=201)


@subscription_router.post("/activate")
async def activate_subscription(
    request: ActivateRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    clock=Depends(get_clock),
):
    lifecycle = SubscriptionLifecycle(db, gateway=gateway, clock=clock)
    try:
        subscription = await lifecycle.activate(user_id, request.plan_id, request.external_ref)
        view = await lifecycle.view(subscription)
    except BillingError as e:
        return billing_error_response(e)
    return success_response(view.model_dump(), status=201)


async def _owned_subscription(lifecycle: SubscriptionLifecycle, subscription_id: str, user_id: str):
    subscription = await lifecycle.get_subscription(subscription_id)
    if subscription.user_id != user_id:
        raise SubscriptionNotFound(subscription_id)
    return subscription


@subscription_router.post("/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: str,
    request: Optional[CancelRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    clock=Depends(get_clock),
):
    lifecycle = SubscriptionLifecycle(db, gateway=gateway, clock=clock)
    try:
        await _owned_subscription(lifecycle, subscription_id, user_id)
        request = request or CancelRequest()
        subscription = await lifecycle.cancel(subscription_id, request.at_period_end, request.reason)
        view = await lifecycle.view(subscription)
    except BillingError as e:
        return billing_error_response(e)
    return success_response(view.model_dump())


@subscription_router.post("/{subscription_id}/reactivate")
async def reactivate_subscription(
    subscription_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    clock=Depends(get_clock),
):
    lifecycle = SubscriptionLifecycle(db, gateway=gateway, clock=clock)
    try:
        await _owned_subscription(lifecycle, subscription_id, user_id)
        subscription = await lifecycle.reactivate(subscription_id)
        view = await lifecycle.view(subscription)
    except BillingError as e:
        return billing_error_response(e)
    return success_response(view.model_dump())
