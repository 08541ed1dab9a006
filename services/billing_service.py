"""
Billing Service - payment gateway boundary backed by Stripe Checkout

The lifecycle only ever talks to PaymentGatewayAdapter. Creation calls raise
GatewayError (activation is fail-closed); cancellation calls return a
GatewayResult and never raise (cancellation is fail-open).
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

import stripe

from config.settings import settings
from models.billing import GatewayResult, GatewaySession
from services.exceptions import GatewayError

logger = logging.getLogger(__name__)

# Gateway calls get one attempt each; retry/backoff belongs to the caller
stripe.max_network_retries = 0

# Currencies Stripe expects in whole units rather than cents
ZERO_DECIMAL_CURRENCIES = {"CLP", "JPY", "KRW", "VND", "PYG", "ISK", "UGX"}

REFERENCE_PREFIX = "SUB"


def build_external_reference(user_id: str, plan_id: str, now_millis: Optional[int] = None) -> str:
    """SUB_{userId}_{planId}_{unixMillis}, unique per activation attempt."""
    if now_millis is None:
        now_millis = int(time.time() * 1000)
    return f"{REFERENCE_PREFIX}_{user_id}_{plan_id}_{now_millis}"


def parse_external_reference(reference: str) -> Tuple[str, str, int]:
    """
    Split a reference back into (user_id, plan_id, unix_millis).
    Plan ids never contain underscores; user ids may.

    Raises:
        ValueError: if the reference is not in SUB_{user}_{plan}_{millis} form
    """
    prefix, _, rest = reference.partition("_")
    if prefix != REFERENCE_PREFIX or not rest:
        raise ValueError(f"Not a subscription reference: {reference}")
    head, _, millis = rest.rpartition("_")
    user_id, _, plan_id = head.rpartition("_")
    if not user_id or not plan_id or not millis.isdigit():
        raise ValueError(f"Malformed subscription reference: {reference}")
    return user_id, plan_id, int(millis)


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: str) -> Decimal:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return Decimal(amount) / 100


class PaymentGatewayAdapter(ABC):
    """Operations the subscription core needs from a payment gateway."""

    @abstractmethod
    async def create_payment_intent(self, plan, user, external_reference: str,
                                    amount: Optional[Decimal] = None) -> GatewaySession:
        """One-off payment for a non-recurring plan."""

    @abstractmethod
    async def create_recurring_subscription(self, plan, user, external_reference: str) -> GatewaySession:
        """Recurring billing for a plan with a recurring price configured."""

    @abstractmethod
    async def cancel_recurring(self, provider_ref: str, at_period_end: bool = False) -> GatewayResult:
        """Stop remote billing. Must not raise."""

    @abstractmethod
    async def resume_recurring(self, provider_ref: str) -> GatewayResult:
        """Undo a pending at-period-end cancellation. Must not raise."""


class StripeGatewayAdapter(PaymentGatewayAdapter):
    """
    Stripe implementation of the gateway boundary.
    Sync Stripe calls run in a worker thread under an explicit timeout.
    """

    def __init__(self, api_key: Optional[str] = None, timeout_seconds: Optional[float] = None,
                 frontend_url: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.stripe_secret_key
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds
        self.frontend_url = frontend_url or settings.frontend_url or "http://localhost:5173"

        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")

    async def _call(self, func, *args, **kwargs):
        if not self.api_key:
            raise GatewayError("STRIPE_SECRET_KEY is not set. Cannot reach payment gateway.")
        kwargs.setdefault("api_key", self.api_key)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise GatewayError(f"Payment gateway timed out after {self.timeout_seconds}s")
        except stripe.StripeError as e:
            raise GatewayError("Payment gateway rejected the request", provider_error=str(e))

    def _urls(self) -> dict:
        return {
            "success_url": f"{self.frontend_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.frontend_url}/subscription/failure",
        }

    def _metadata(self, plan, user, external_reference: str) -> dict:
        return {
            "user_id": user.id,
            "plan_id": plan.id,
            "external_reference": external_reference,
        }

    async def create_payment_intent(self, plan, user, external_reference: str,
                                    amount: Optional[Decimal] = None) -> GatewaySession:
        """
        Create a one-off Stripe Checkout session.
        Activation waits for the payment to be confirmed by webhook.
        """
        charge = plan.price if amount is None else amount
        checkout_session = await self._call(
            stripe.checkout.Session.create,
            mode="payment",
            customer_email=user.email,
            client_reference_id=external_reference,
            line_items=[{
                "price_data": {
                    "currency": plan.currency.lower(),
                    "unit_amount": to_minor_units(charge, plan.currency),
                    "product_data": {"name": plan.display_name},
                },
                "quantity": 1,
            }],
            metadata=self._metadata(plan, user, external_reference),
            payment_intent_data={"metadata": self._metadata(plan, user, external_reference)},
            **self._urls(),
        )
        logger.info(f"Created one-off checkout {checkout_session.id} for user {user.id}, plan {plan.id}")
        return GatewaySession(redirect_url=checkout_session.url, provider_ref=checkout_session.id)

    async def create_recurring_subscription(self, plan, user, external_reference: str) -> GatewaySession:
        if not plan.recurring_price_id:
            raise GatewayError(f"Plan {plan.id} has no recurring price configured")
        checkout_session = await self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            customer_email=user.email,
            client_reference_id=external_reference,
            line_items=[{"price": plan.recurring_price_id, "quantity": 1}],
            metadata=self._metadata(plan, user, external_reference),
            subscription_data={"metadata": self._metadata(plan, user, external_reference)},
            **self._urls(),
        )
        logger.info(f"Created recurring checkout {checkout_session.id} for user {user.id}, plan {plan.id}")
        return GatewaySession(redirect_url=checkout_session.url, provider_ref=checkout_session.id)

    async def cancel_recurring(self, provider_ref: str, at_period_end: bool = False) -> GatewayResult:
        if not provider_ref.startswith("sub_"):
            # One-off payments have nothing recurring to stop
            return GatewayResult.success()
        try:
            if at_period_end:
                await self._call(stripe.Subscription.modify, provider_ref, cancel_at_period_end=True)
            else:
                await self._call(stripe.Subscription.cancel, provider_ref)
        except GatewayError as e:
            return GatewayResult.failure(e.details.get("provider_error") or e.message)
        return GatewayResult.success()

    async def resume_recurring(self, provider_ref: str) -> GatewayResult:
        if not provider_ref.startswith("sub_"):
            return GatewayResult.success()
        try:
            await self._call(stripe.Subscription.modify, provider_ref, cancel_at_period_end=False)
        except GatewayError as e:
            return GatewayResult.failure(e.details.get("provider_error") or e.message)
        return GatewayResult.success()

    def verify_webhook(self, payload: bytes, signature: str, secret: Optional[str] = None):
        """
        Verify a Stripe webhook signature and return the parsed event.

        Raises:
            stripe.SignatureVerificationError: signature mismatch
            ValueError: payload is not valid JSON
        """
        return stripe.Webhook.construct_event(
            payload,
            signature,
            secret if secret is not None else settings.stripe_webhook_secret,
        )
