"""
Tests for Stripe webhook reconciliation
"""
import json
from decimal import Decimal
from unittest.mock import patch

import pytest
import stripe
from sqlalchemy import select

from config.settings import settings
from crud.coupon import CouponRepository
from crud.payment import PaymentRepository
from crud.subscription import SubscriptionRepository
from database_models import WebhookEvent
from services.exceptions import WebhookError
from services.subscription_service import SubscriptionLifecycle
from services.webhook_service import WebhookService
from tests.helpers import FakeGateway


def checkout_completed(plan_id, session_id="cs_test_1", subscription=None, payment_status="paid",
                       amount_total=9990):
    reference = f"SUB_user-1_{plan_id}_1741608000000"
    return {
        "id": f"evt_{session_id}",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": session_id,
            "object": "checkout.session",
            "client_reference_id": reference,
            "payment_status": payment_status,
            "amount_total": amount_total,
            "currency": "clp",
            "subscription": subscription,
            "metadata": {"user_id": "user-1", "plan_id": plan_id, "external_reference": reference},
        }},
    }


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")


@pytest.mark.asyncio
async def test_verify_rejects_bad_signature(test_db, webhook_secret):
    service = WebhookService(test_db)

    with patch("stripe.Webhook.construct_event",
               side_effect=stripe.SignatureVerificationError("bad sig", "t=1,v1=x")):
        with pytest.raises(WebhookError) as exc_info:
            service.verify(b"{}", "t=1,v1=x")
    assert exc_info.value.message == "Invalid webhook signature"

    with pytest.raises(WebhookError):
        service.verify(b"{}", None)


@pytest.mark.asyncio
async def test_verify_requires_configured_secret(test_db, monkeypatch):
    monkeypatch.setattr(settings, "stripe_webhook_secret", None)

    with pytest.raises(WebhookError) as exc_info:
        WebhookService(test_db).verify(b"{}", "t=1,v1=x")
    assert exc_info.value.message == "Webhook secret not configured"


@pytest.mark.asyncio
async def test_verify_returns_plain_event(test_db, webhook_secret):
    payload = json.dumps({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}).encode()

    with patch("stripe.Webhook.construct_event") as construct:
        event = WebhookService(test_db).verify(payload, "t=1,v1=x")

    assert event["type"] == "invoice.paid"
    assert construct.call_args.args == (payload, "t=1,v1=x", "whsec_test")


@pytest.mark.asyncio
async def test_paid_checkout_activates_subscription(test_db, clock, premium_plan):
    service = WebhookService(test_db, clock=clock)

    result = await service.process_event(checkout_completed(premium_plan.id, subscription="sub_123"))

    assert result == {"is_error": False, "event_type": "checkout.session.completed", "error": None}
    sub = await SubscriptionRepository(test_db).get_by_external_ref("sub_123")
    assert sub.user_id == "user-1"
    assert sub.status == "TRIALING"

    payment = await PaymentRepository(test_db).get_by_provider_id("cs_test_1")
    assert payment.status == "APPROVED"
    assert payment.amount == Decimal("9990")
    assert payment.subscription_id == sub.id
    assert payment.paid_at == clock.now()

    audit = (await test_db.execute(select(WebhookEvent))).scalars().all()
    assert len(audit) == 1
    assert audit[0].processed is True


@pytest.mark.asyncio
async def test_replayed_checkout_does_not_duplicate_or_double_redeem(test_db, clock, basic_plan):
    coupons = CouponRepository(test_db)
    coupon = await coupons.create_coupon({"code": "PROMO", "discount_type": "PERCENTAGE", "discount_value": 10})
    await PaymentRepository(test_db).upsert_payment("cs_test_1", {
        "user_id": "user-1", "amount": Decimal("4491"), "currency": "CLP",
        "status": "PENDING", "coupon_code": "PROMO",
    })
    service = WebhookService(test_db, clock=clock)
    event = checkout_completed(basic_plan.id, amount_total=4491)

    await service.process_event(event)
    await service.process_event(event)

    subs = await SubscriptionRepository(test_db).find_all_by_user("user-1")
    assert len(subs) == 1
    assert subs[0].external_payment_ref == "cs_test_1"
    await test_db.refresh(coupon)
    assert coupon.redemptions_count == 1


@pytest.mark.asyncio
async def test_unpaid_checkout_records_payment_without_activating(test_db, clock, basic_plan):
    service = WebhookService(test_db, clock=clock)

    await service.process_event(checkout_completed(basic_plan.id, payment_status="unpaid"))

    assert await SubscriptionRepository(test_db).find_current_by_user("user-1") is None
    payment = await PaymentRepository(test_db).get_by_provider_id("cs_test_1")
    assert payment.status == "PENDING"


@pytest.mark.asyncio
async def test_checkout_for_unknown_plan_is_recorded_as_error(test_db, clock):
    service = WebhookService(test_db, clock=clock)

    result = await service.process_event(checkout_completed("retired-plan"))

    assert result["is_error"] is True
    audit = (await test_db.execute(select(WebhookEvent))).scalar_one()
    assert audit.processed is False
    assert "retired-plan" in audit.processing_error


@pytest.mark.asyncio
async def test_remote_deletion_cancels_locally(test_db, clock, premium_plan):
    lifecycle = SubscriptionLifecycle(test_db, clock=clock)
    sub = await lifecycle.activate("user-1", premium_plan.id, external_ref="sub_123")
    service = WebhookService(test_db, clock=clock)

    event = {"id": "evt_del", "type": "customer.subscription.deleted", "data": {"object": {"id": "sub_123"}}}
    await service.process_event(event)
    # Replays are harmless
    result = await service.process_event(event)

    assert result["is_error"] is False
    await test_db.refresh(sub)
    assert sub.status == "CANCELED"
    assert sub.cancel_reason == "gateway_canceled"


@pytest.mark.asyncio
async def test_remote_cancel_at_period_end_round_trip(test_db, clock, premium_plan):
    lifecycle = SubscriptionLifecycle(test_db, clock=clock)
    sub = await lifecycle.activate("user-1", premium_plan.id, external_ref="sub_123")
    service = WebhookService(test_db, clock=clock)

    def updated(flag):
        return {"id": "evt_upd", "type": "customer.subscription.updated",
                "data": {"object": {"id": "sub_123", "cancel_at_period_end": flag}}}

    await service.process_event(updated(True))
    await test_db.refresh(sub)
    assert sub.cancel_at_period_end is True
    assert sub.status == "TRIALING"

    await service.process_event(updated(False))
    await test_db.refresh(sub)
    assert sub.cancel_at_period_end is False


@pytest.mark.asyncio
async def test_unhandled_event_types_are_acknowledged(test_db, clock):
    result = await WebhookService(test_db, clock=clock).process_event(
        {"id": "evt_x", "type": "invoice.finalized", "data": {"object": {}}}
    )

    assert result["is_error"] is False


@pytest.mark.asyncio
async def test_checkout_for_new_plan_cancels_old_stripe_subscription(test_db, clock, basic_plan, premium_plan):
    gateway = FakeGateway()
    old = await SubscriptionLifecycle(test_db, clock=clock).activate("user-1", premium_plan.id, external_ref="sub_old")
    service = WebhookService(test_db, gateway=gateway, clock=clock)

    await service.process_event(checkout_completed(basic_plan.id, subscription="sub_new"))

    await test_db.refresh(old)
    assert old.status == "CANCELED"
    assert old.cancel_reason == "superseded"
    assert ("cancel_recurring", "sub_old", False) in gateway.calls
    new = await SubscriptionRepository(test_db).get_by_external_ref("sub_new")
    assert new.status == "ACTIVE"


@pytest.mark.asyncio
async def test_remote_changes_are_not_echoed_back_to_stripe(test_db, clock, premium_plan):
    gateway = FakeGateway()
    await SubscriptionLifecycle(test_db, clock=clock).activate("user-1", premium_plan.id, external_ref="sub_123")
    service = WebhookService(test_db, gateway=gateway, clock=clock)

    await service.process_event({"id": "evt_upd", "type": "customer.subscription.updated",
                                 "data": {"object": {"id": "sub_123", "cancel_at_period_end": True}}})
    await service.process_event({"id": "evt_del", "type": "customer.subscription.deleted",
                                 "data": {"object": {"id": "sub_123"}}})

    assert gateway.calls == []


@pytest.mark.asyncio
async def test_unexpected_handler_failure_rolls_back_and_is_recorded(test_db, clock, basic_plan):
    service = WebhookService(test_db, gateway=FakeGateway(), clock=clock)

    with patch.object(SubscriptionLifecycle, "activate", side_effect=RuntimeError("connection reset")):
        with pytest.raises(RuntimeError):
            await service.process_event(checkout_completed(basic_plan.id))

    # The payment written before the failure is rolled back with the handler
    assert await PaymentRepository(test_db).get_by_provider_id("cs_test_1") is None
    audit = (await test_db.execute(select(WebhookEvent))).scalar_one()
    assert audit.processed is False
    assert audit.processing_error == "RuntimeError: connection reset"
