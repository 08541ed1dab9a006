"""
Subscription Service - lifecycle state machine for user subscriptions

Transitions that depend on time (trial expiry, period rollover, deferred
cancellation) are applied lazily on read through get_effective_status().
There is no background scheduler.
"""
import logging
import math
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import PLAN_FREE, settings
from crud.subscription import SubscriptionRepository
from database_models import Plan, Subscription
from models.billing import (
    CURRENT_STATUSES,
    DefaultFree,
    EffectivePlan,
    PlanView,
    Subscribed,
    SubscriptionStatus,
    SubscriptionView,
)
from services import billing_period
from services.billing_service import PaymentGatewayAdapter
from services.exceptions import InvalidState, PlanNotFound, SubscriptionNotFound
from services.plan_catalog import PlanCatalog
from utils.clock import system_clock

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "superseded"


class SubscriptionLifecycle:
    """
    Service for activating, reading, cancelling and reactivating subscriptions.

    Every state write is a conditional UPDATE, so concurrent readers that
    race on the same lazy transition produce exactly one write.
    """

    def __init__(self, db: AsyncSession, gateway: Optional[PaymentGatewayAdapter] = None, clock=system_clock):
        """
        Args:
            db: AsyncSession instance for database operations
            gateway: Adapter used for best-effort remote cancellation (optional)
            clock: Time source; defaults to the system clock
        """
        self.db = db
        self.gateway = gateway
        self.clock = clock
        self.subscriptions = SubscriptionRepository(db)
        self.catalog = PlanCatalog(db)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def activate(self, user_id: str, plan_id: str, external_ref: Optional[str] = None) -> Subscription:
        """
        Start a subscription for a user on a plan.

        A gateway callback replayed with the same external_ref returns the
        existing row unchanged. Any other current subscription the user holds
        is superseded: cancelled immediately, then replaced.

        Raises:
            PlanNotFound: if the plan does not exist or is no longer offered
        """
        plan = await self.catalog.get_plan(plan_id)
        if not plan.is_active:
            raise PlanNotFound(plan_id)

        if external_ref:
            existing = await self.subscriptions.get_by_external_ref(external_ref)
            if existing is not None:
                logger.info(f"Activation replay for {external_ref}, returning subscription {existing.id}")
                return existing

        now = self.clock.now()

        current = await self.subscriptions.find_current_by_user(user_id)
        if current is not None and await self.get_effective_status(current, now) in CURRENT_STATUSES:
            await self._cancel_now(current, now, SUPERSEDED_REASON)
            logger.info(f"Subscription {current.id} superseded by new activation on plan {plan.name}")

        subscription_data = {
            "user_id": user_id,
            "plan_id": plan.id,
            "status": SubscriptionStatus.ACTIVE.value,
            "current_period_start": now,
            "current_period_end": billing_period.period_end(now, plan.billing_period),
            "cancel_at_period_end": False,
            "external_payment_ref": external_ref,
        }
        if plan.trial_days and plan.trial_days > 0:
            subscription_data["status"] = SubscriptionStatus.TRIALING.value
            subscription_data["trial_start"] = now
            subscription_data["trial_end"] = billing_period.trial_end(now, plan.trial_days)

        subscription = await self.subscriptions.create(subscription_data)
        logger.info(f"Activated subscription {subscription.id} for user {user_id} on plan {plan.name} "
                    f"({subscription.status})")
        return subscription

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_effective_status(self, subscription: Subscription, now: Optional[datetime] = None) -> str:
        """
        The subscription's status at `now`, persisting any transition that is due.

        TRIALING past trial_end becomes EXPIRED. A current subscription whose
        period has elapsed becomes CANCELED (pending cancellation), rolls
        forward (recurring plan) or becomes EXPIRED (one-off plan). A trial
        that outlasts its first period stays TRIALING until trial_end.

        Safe to call repeatedly and concurrently.
        """
        now = now or self.clock.now()
        status = subscription.status

        if status == SubscriptionStatus.TRIALING.value and subscription.trial_end is not None \
                and now > subscription.trial_end:
            if await self.subscriptions.expire_trial(subscription, now):
                logger.info(f"Trial expired for subscription {subscription.id}")
            return subscription.status

        if status in CURRENT_STATUSES and now >= subscription.current_period_end:
            await self._close_elapsed_period(subscription, now)

        return subscription.status

    async def _close_elapsed_period(self, subscription: Subscription, now: datetime) -> None:
        if subscription.cancel_at_period_end:
            if await self.subscriptions.close_period(subscription, SubscriptionStatus.CANCELED.value, now):
                logger.info(f"Subscription {subscription.id} canceled at period end")
            return

        # A trial longer than the billing period ends through trial expiry
        if subscription.status == SubscriptionStatus.TRIALING.value and subscription.trial_end is not None \
                and now <= subscription.trial_end:
            return

        plan = await self.catalog.get_plan(subscription.plan_id)
        recurring = bool(subscription.external_payment_ref and plan.recurring_price_id)

        if subscription.status == SubscriptionStatus.ACTIVE.value and recurring:
            new_start, new_end = billing_period.next_period_window(
                subscription.current_period_start,
                subscription.current_period_end,
                plan.billing_period,
                now,
            )
            if await self.subscriptions.roll_period(
                subscription, subscription.current_period_start, new_start, new_end
            ):
                logger.info(f"Subscription {subscription.id} rolled to period {new_start} - {new_end}")
            return

        if await self.subscriptions.close_period(subscription, SubscriptionStatus.EXPIRED.value, now):
            logger.info(f"Subscription {subscription.id} expired at period end")

    async def get_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self.subscriptions.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    async def get_current_subscription(self, user_id: str, now: Optional[datetime] = None) -> Optional[Subscription]:
        """The user's ACTIVE/TRIALING subscription after lazy transitions, or None."""
        now = now or self.clock.now()
        subscription = await self.subscriptions.find_current_by_user(user_id)
        if subscription is None:
            return None
        if await self.get_effective_status(subscription, now) not in CURRENT_STATUSES:
            return None
        return subscription

    async def resolve_effective_plan(self, user_id: str, now: Optional[datetime] = None) -> EffectivePlan:
        """
        Subscribed(subscription, plan) when the user holds a current
        subscription, DefaultFree(plan) otherwise.
        """
        now = now or self.clock.now()
        subscription = await self.get_current_subscription(user_id, now)
        if subscription is not None:
            plan = await self.catalog.get_plan(subscription.plan_id)
            return Subscribed(subscription=subscription, plan=plan)
        return DefaultFree(plan=await self._free_plan())

    async def _free_plan(self) -> Plan:
        try:
            return await self.catalog.get_free_plan()
        except PlanNotFound:
            logger.warning(f"No active {settings.free_plan_name} plan in catalog, using fallback limits")
            return Plan(
                id=None,
                name=settings.free_plan_name or PLAN_FREE,
                display_name="Free",
                price=0,
                currency="CLP",
                billing_period="MONTHLY",
                trial_days=0,
                max_usage_per_period=settings.free_plan_fallback_limit,
                features={},
                is_active=True,
            )

    # ------------------------------------------------------------------
    # Cancellation / reactivation
    # ------------------------------------------------------------------

    async def cancel(self, subscription_id: str, at_period_end: bool = True,
                     reason: Optional[str] = None) -> Subscription:
        """
        Cancel a subscription, immediately or at the end of the paid period.

        The local change always commits. A failing remote cancellation is
        logged and stored in gateway_sync_error, never raised.

        Raises:
            SubscriptionNotFound: if no subscription has this id
            InvalidState: if the subscription is already EXPIRED or CANCELED
        """
        subscription = await self.get_subscription(subscription_id)
        now = self.clock.now()

        status = await self.get_effective_status(subscription, now)
        if status not in CURRENT_STATUSES:
            raise InvalidState(
                f"Cannot cancel a subscription in status {status}",
                current_status=status,
                subscription_id=subscription.id,
            )

        if at_period_end:
            if not await self.subscriptions.mark_canceled(subscription, True, now, reason):
                raise InvalidState("Subscription changed state during cancellation",
                                   current_status=subscription.status, subscription_id=subscription.id)
            await self._sync_remote_cancel(subscription, at_period_end=True)
        else:
            await self._cancel_now(subscription, now, reason)

        logger.info(f"Subscription {subscription.id} canceled (at_period_end={at_period_end}, reason={reason})")
        return subscription

    async def _cancel_now(self, subscription: Subscription, now: datetime, reason: Optional[str]) -> None:
        if not await self.subscriptions.mark_canceled(subscription, False, now, reason):
            raise InvalidState("Subscription changed state during cancellation",
                               current_status=subscription.status, subscription_id=subscription.id)
        await self._sync_remote_cancel(subscription, at_period_end=False)

    async def _sync_remote_cancel(self, subscription: Subscription, at_period_end: bool) -> None:
        if self.gateway is None or not subscription.external_payment_ref:
            return
        result = await self.gateway.cancel_recurring(subscription.external_payment_ref, at_period_end=at_period_end)
        if result.ok:
            if subscription.gateway_sync_error:
                await self.subscriptions.update_subscription(subscription, {"gateway_sync_error": None})
            return
        logger.warning(
            f"Remote cancellation failed for subscription {subscription.id}: {result.error}",
            extra={
                "event": "gateway_cancel_failed",
                "subscription_id": subscription.id,
                "external_payment_ref": subscription.external_payment_ref,
                "error": result.error,
            },
        )
        await self.subscriptions.update_subscription(subscription, {"gateway_sync_error": result.error})

    async def reactivate(self, subscription_id: str) -> Subscription:
        """
        Undo a pending at-period-end cancellation.

        Raises:
            SubscriptionNotFound: if no subscription has this id
            InvalidState: if nothing is pending or the period already ended
        """
        subscription = await self.get_subscription(subscription_id)
        now = self.clock.now()

        status = await self.get_effective_status(subscription, now)
        if status not in CURRENT_STATUSES or not subscription.cancel_at_period_end:
            raise InvalidState(
                "Subscription has no pending cancellation to undo",
                current_status=status,
                subscription_id=subscription.id,
            )

        if not await self.subscriptions.clear_cancellation(subscription, now):
            raise InvalidState("Subscription period has already ended",
                               current_status=subscription.status, subscription_id=subscription.id)

        if self.gateway is not None and subscription.external_payment_ref:
            result = await self.gateway.resume_recurring(subscription.external_payment_ref)
            if not result.ok:
                logger.warning(
                    f"Remote reactivation failed for subscription {subscription.id}: {result.error}",
                    extra={
                        "event": "gateway_resume_failed",
                        "subscription_id": subscription.id,
                        "error": result.error,
                    },
                )
                await self.subscriptions.update_subscription(subscription, {"gateway_sync_error": result.error})

        logger.info(f"Subscription {subscription.id} reactivated")
        return subscription

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def to_view(self, subscription: Subscription, plan: Plan, now: Optional[datetime] = None) -> SubscriptionView:
        now = now or self.clock.now()
        seconds_left = (subscription.current_period_end - now).total_seconds()
        days_remaining = max(0, math.ceil(seconds_left / 86400))
        return SubscriptionView(
            id=subscription.id,
            user_id=subscription.user_id,
            plan=PlanView.from_plan(plan),
            status=subscription.status,
            trial_start=subscription.trial_start,
            trial_end=subscription.trial_end,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            canceled_at=subscription.canceled_at,
            cancel_reason=subscription.cancel_reason,
            external_payment_ref=subscription.external_payment_ref,
            days_remaining=days_remaining,
            is_expiring_soon=0 < days_remaining <= settings.expiring_soon_days,
        )

    async def view(self, subscription: Subscription, now: Optional[datetime] = None) -> SubscriptionView:
        plan = await self.catalog.get_plan(subscription.plan_id)
        return self.to_view(subscription, plan, now)
