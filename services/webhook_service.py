"""
Webhook Service - reconciles local subscription state with Stripe callbacks

Every verified callback is stored in webhook_events before it is handled,
so a failed reconciliation can be inspected and replayed.
"""
import json
import logging
from decimal import Decimal
from typing import Optional

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from crud.coupon import CouponRepository
from crud.payment import PaymentRepository
from crud.subscription import SubscriptionRepository
from models.billing import CURRENT_STATUSES, PaymentStatus
from services.billing_service import StripeGatewayAdapter, from_minor_units, parse_external_reference
from services.exceptions import BillingError, WebhookError
from services.subscription_service import SubscriptionLifecycle
from utils.clock import system_clock

logger = logging.getLogger(__name__)

# Stripe checkout payment_status -> local payment status
CHECKOUT_PAYMENT_STATUS = {
    "paid": PaymentStatus.APPROVED.value,
    "no_payment_required": PaymentStatus.APPROVED.value,
    "unpaid": PaymentStatus.PENDING.value,
}


class WebhookService:
    """
    Handles Stripe events that move money or subscription state.

    Activation through checkout supersedes the user's old subscription and
    cancels it at Stripe too. Changes Stripe itself reports (deletion,
    cancel_at_period_end) go through a lifecycle without a gateway so they
    are not echoed back.
    """

    def __init__(self, db: AsyncSession, gateway: Optional[StripeGatewayAdapter] = None, clock=system_clock):
        self.db = db
        self.gateway = gateway or StripeGatewayAdapter()
        self.clock = clock
        self.lifecycle = SubscriptionLifecycle(db, gateway=self.gateway, clock=clock)
        self.mirror = SubscriptionLifecycle(db, gateway=None, clock=clock)
        self.subscriptions = SubscriptionRepository(db)
        self.payments = PaymentRepository(db)
        self.coupons = CouponRepository(db)

    def verify(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Check the Stripe signature and return the event as a plain dict.

        Raises:
            WebhookError: missing secret, missing or invalid signature, bad payload
        """
        if not settings.stripe_webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET environment variable is not set")
            raise WebhookError("Webhook secret not configured")
        if not signature:
            raise WebhookError("Missing signature header")
        try:
            self.gateway.verify_webhook(payload, signature)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Stripe webhook signature verification failed: {e}")
            raise WebhookError("Invalid webhook signature")
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise WebhookError("Invalid payload format")
        return json.loads(payload)

    async def process_event(self, event: dict) -> dict:
        """
        Audit, then dispatch a verified event.

        Returns:
            {"is_error": bool, "event_type": str, "error": Optional[str]}
        """
        event_type = event.get("type", "unknown")
        data_object = (event.get("data") or {}).get("object") or {}
        audit = await self.payments.log_webhook_event(event_type, event.get("id"), event)
        logger.info(f"Processing Stripe webhook event: {event_type} ({event.get('id')})")

        handler = {
            "checkout.session.completed": self._handle_checkout_completed,
            "checkout.session.async_payment_succeeded": self._handle_checkout_completed,
            "checkout.session.async_payment_failed": self._handle_checkout_failed,
            "checkout.session.expired": self._handle_checkout_expired,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "customer.subscription.updated": self._handle_subscription_updated,
        }.get(event_type)

        error = None
        if handler is None:
            logger.info(f"Ignoring Stripe event type {event_type}")
        else:
            # A failed handler leaves no partial writes; only the audit row survives
            try:
                async with self.db.begin_nested():
                    await handler(data_object)
            except BillingError as e:
                error = e.message
                logger.error(f"Failed to reconcile {event_type} ({event.get('id')}): {e.message}",
                             extra={"event": "webhook_reconcile_failed", "event_type": event_type,
                                    "error_code": e.code})
            except Exception as e:
                await self.payments.mark_webhook_processed(audit, self.clock.now(), f"{type(e).__name__}: {e}")
                raise

        await self.payments.mark_webhook_processed(audit, self.clock.now(), error)
        return {"is_error": error is not None, "event_type": event_type, "error": error}

    async def _handle_checkout_completed(self, session: dict) -> None:
        metadata = session.get("metadata") or {}
        reference = session.get("client_reference_id") or metadata.get("external_reference")
        if not reference:
            raise WebhookError("Checkout session has no external reference", "checkout.session.completed")

        try:
            user_id, plan_id, _ = parse_external_reference(reference)
        except ValueError as e:
            raise WebhookError(str(e), "checkout.session.completed")
        user_id = metadata.get("user_id") or user_id
        plan_id = metadata.get("plan_id") or plan_id

        status = CHECKOUT_PAYMENT_STATUS.get(session.get("payment_status"), PaymentStatus.PENDING.value)
        previous = await self.payments.get_by_provider_id(session["id"])
        already_approved = previous is not None and previous.status == PaymentStatus.APPROVED.value

        currency = (session.get("currency") or "clp").upper()
        payment_data = {
            "user_id": user_id,
            "currency": currency,
            "status": status,
            "provider_status": session.get("payment_status"),
            "external_reference": reference,
        }
        if session.get("amount_total") is not None:
            payment_data["amount"] = from_minor_units(session["amount_total"], currency)
        elif previous is None:
            payment_data["amount"] = Decimal("0")
        if status == PaymentStatus.APPROVED.value and not already_approved:
            payment_data["paid_at"] = self.clock.now()
        payment = await self.payments.upsert_payment(session["id"], payment_data)

        if status != PaymentStatus.APPROVED.value:
            logger.info(f"Checkout {session['id']} completed without payment ({session.get('payment_status')})")
            return

        # Recurring checkouts are tracked by the Stripe subscription id so they can be cancelled remotely
        external_ref = session.get("subscription") or session["id"]
        subscription = await self.lifecycle.activate(user_id, plan_id, external_ref)
        await self.payments.upsert_payment(session["id"], {"subscription_id": subscription.id})

        if payment.coupon_code and not already_approved:
            coupon = await self.coupons.get_by_code(payment.coupon_code)
            if coupon is not None and not await self.coupons.redeem(coupon):
                logger.warning(f"Coupon {coupon.code} was exhausted before payment {session['id']} confirmed")

    async def _set_checkout_status(self, session: dict, status: str) -> None:
        payment = await self.payments.get_by_provider_id(session["id"])
        if payment is None:
            logger.info(f"No local payment for checkout {session['id']}")
            return
        await self.payments.upsert_payment(session["id"], {
            "status": status,
            "provider_status": session.get("payment_status") or session.get("status"),
        })

    async def _handle_checkout_failed(self, session: dict) -> None:
        await self._set_checkout_status(session, PaymentStatus.REJECTED.value)

    async def _handle_checkout_expired(self, session: dict) -> None:
        await self._set_checkout_status(session, PaymentStatus.CANCELLED.value)

    async def _handle_subscription_deleted(self, remote: dict) -> None:
        subscription = await self.subscriptions.get_by_external_ref(remote["id"])
        if subscription is None:
            logger.info(f"No local subscription for Stripe subscription {remote['id']}")
            return
        if await self.mirror.get_effective_status(subscription) not in CURRENT_STATUSES:
            return
        await self.mirror.cancel(subscription.id, at_period_end=False, reason="gateway_canceled")

    async def _handle_subscription_updated(self, remote: dict) -> None:
        subscription = await self.subscriptions.get_by_external_ref(remote["id"])
        if subscription is None:
            logger.info(f"No local subscription for Stripe subscription {remote['id']}")
            return
        if await self.mirror.get_effective_status(subscription) not in CURRENT_STATUSES:
            return

        wants_cancel = bool(remote.get("cancel_at_period_end"))
        if wants_cancel and not subscription.cancel_at_period_end:
            await self.mirror.cancel(subscription.id, at_period_end=True, reason="gateway_requested")
        elif not wants_cancel and subscription.cancel_at_period_end:
            await self.mirror.reactivate(subscription.id)
