"""
Checkout Service - starts a paid subscription through the payment gateway

Nothing is activated here. The local subscription row is created only when
the gateway confirms payment (see webhook_service).
"""
import logging
from datetime import timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crud.coupon import CouponRepository
from crud.payment import PaymentRepository
from crud.user import UserRepository
from database_models import Coupon, Plan
from models.billing import CheckoutResult, DiscountType, PaymentStatus
from services.billing_service import (
    PaymentGatewayAdapter,
    ZERO_DECIMAL_CURRENCIES,
    build_external_reference,
)
from services.exceptions import InvalidState, PlanNotFound, UserNotFound
from services.plan_catalog import PlanCatalog
from utils.clock import system_clock

logger = logging.getLogger(__name__)


def round_to_currency(amount: Decimal, currency: str) -> Decimal:
    unit = Decimal("1") if currency.upper() in ZERO_DECIMAL_CURRENCIES else Decimal("0.01")
    return Decimal(amount).quantize(unit, rounding=ROUND_HALF_UP)


def calculate_discount(coupon: Coupon, price: Decimal, currency: str) -> Decimal:
    """PERCENTAGE takes value% of the price; FIXED_AMOUNT is capped at the price."""
    price = Decimal(price)
    value = Decimal(coupon.discount_value)
    if coupon.discount_type == DiscountType.PERCENTAGE.value:
        discount = price * value / 100
    else:
        discount = min(value, price)
    return round_to_currency(discount, currency)


class CheckoutService:
    """
    Service for creating gateway checkouts for paid plans.
    Gateway failures propagate as GatewayError; there is no local fallback.
    """

    def __init__(self, db: AsyncSession, gateway: PaymentGatewayAdapter, clock=system_clock):
        self.db = db
        self.gateway = gateway
        self.clock = clock
        self.users = UserRepository(db)
        self.coupons = CouponRepository(db)
        self.payments = PaymentRepository(db)
        self.catalog = PlanCatalog(db)

    async def validate_coupon(self, code: str, plan: Plan, user_id: str) -> Optional[Coupon]:
        """
        The coupon if it can be applied to this purchase, None otherwise.
        Invalid codes are not an error; the checkout just proceeds at full price.
        """
        coupon = await self.coupons.get_by_code(code)
        if coupon is None or not coupon.is_active:
            return None

        now = self.clock.now()
        if coupon.valid_from is not None and now < coupon.valid_from:
            return None
        if coupon.valid_until is not None and now > coupon.valid_until:
            return None

        if coupon.max_redemptions is not None and coupon.redemptions_count >= coupon.max_redemptions:
            return None

        applicable = coupon.applicable_plans or []
        if applicable and "all" not in applicable and plan.id not in applicable and plan.name not in applicable:
            return None

        if coupon.first_purchase_only:
            approved = await self.payments.count_by_status(user_id, PaymentStatus.APPROVED.value)
            if approved > 0:
                return None

        return coupon

    async def start_subscription(self, user_id: str, plan_id: str,
                                 coupon_code: Optional[str] = None) -> CheckoutResult:
        """
        Create a gateway checkout for a plan.

        Plans with a recurring price get a recurring gateway subscription;
        others a one-off payment. Coupons discount one-off payments only,
        since recurring charges follow the gateway's price template.

        Returns:
            CheckoutResult with the redirect URL and the external reference

        Raises:
            UserNotFound: if the user is not known locally
            PlanNotFound: if the plan does not exist or is no longer offered
            InvalidState: if the plan is free and needs no checkout
            GatewayError: if the gateway rejects the request or times out
        """
        user = await self.users.get_user_by_id(user_id)
        if user is None:
            raise UserNotFound(user_id)

        plan = await self.catalog.get_plan(plan_id)
        if not plan.is_active:
            raise PlanNotFound(plan_id)
        if Decimal(plan.price) <= 0:
            raise InvalidState(f"Plan {plan.name} is free and needs no checkout", plan_id=plan.id)

        recurring = bool(plan.recurring_price_id)
        price = Decimal(plan.price)
        discount = Decimal("0")
        coupon = None
        if coupon_code:
            coupon = await self.validate_coupon(coupon_code, plan, user.id)
            if coupon is None:
                logger.info(f"Coupon {coupon_code} not applicable for user {user.id}, plan {plan.id}")
            elif recurring:
                logger.info(f"Coupon {coupon.code} ignored for recurring plan {plan.id}")
                coupon = None
            else:
                discount = calculate_discount(coupon, price, plan.currency)

        amount = price - discount
        now_millis = int(self.clock.now().replace(tzinfo=timezone.utc).timestamp() * 1000)
        reference = build_external_reference(user.id, plan.id, now_millis)

        if recurring:
            session = await self.gateway.create_recurring_subscription(plan, user, reference)
        else:
            session = await self.gateway.create_payment_intent(plan, user, reference, amount)

        await self.payments.upsert_payment(session.provider_ref, {
            "user_id": user.id,
            "amount": amount,
            "currency": plan.currency,
            "status": PaymentStatus.PENDING.value,
            "external_reference": reference,
            "coupon_code": coupon.code if coupon else None,
            "discount_amount": discount,
        })

        logger.info(f"Checkout {session.provider_ref} started for user {user.id}, plan {plan.name}, "
                    f"amount {amount} {plan.currency}")
        return CheckoutResult(
            redirect_url=session.redirect_url,
            reference=reference,
            provider_ref=session.provider_ref,
            amount=amount,
            discount=discount,
        )
