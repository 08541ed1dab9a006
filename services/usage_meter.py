"""
Usage Meter - counts metered consumption against the effective plan's quota
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import RESOURCE_TYPES
from crud.usage import UsageRepository
from database_models import UsageRecord
from models.billing import (
    EffectivePlan,
    LimitCheck,
    Subscribed,
    UsageSnapshot,
    UsageSummary,
)
from services import billing_period
from services.exceptions import UnknownResourceType, UsageLimitExceeded
from services.subscription_service import SubscriptionLifecycle
from utils.clock import system_clock

logger = logging.getLogger(__name__)


def usage_percentage(used: int, limit: Optional[int]) -> int:
    """Rounded half up; 0 for unlimited or zero quotas."""
    if not limit:
        return 0
    return math.floor(used * 100 / limit + 0.5)


class UsageMeter:
    """
    Service for checking and recording metered usage.

    The billing window is the subscription's current period, or the
    calendar month for users on the default free plan. Read paths let
    database errors propagate; a failed count never turns into allow or deny.
    """

    def __init__(self, db: AsyncSession, lifecycle: Optional[SubscriptionLifecycle] = None, clock=system_clock):
        self.db = db
        self.clock = clock
        self.lifecycle = lifecycle or SubscriptionLifecycle(db, clock=clock)
        self.usage = UsageRepository(db)

    @staticmethod
    def _validate(resource_type: str) -> None:
        if resource_type not in RESOURCE_TYPES:
            raise UnknownResourceType(resource_type)

    @staticmethod
    def window_for(effective: EffectivePlan, now: datetime) -> billing_period.Window:
        if isinstance(effective, Subscribed):
            window = billing_period.current_period_window(effective.subscription, now)
            if window is not None:
                return window
        return billing_period.calendar_month_window(now)

    async def _resolve(self, user_id: str, now: datetime, effective: Optional[EffectivePlan]) -> EffectivePlan:
        if effective is not None:
            return effective
        return await self.lifecycle.resolve_effective_plan(user_id, now)

    async def check_limit(self, user_id: str, resource_type: str, now: Optional[datetime] = None,
                          effective: Optional[EffectivePlan] = None) -> LimitCheck:
        """
        Whether one more unit of `resource_type` fits in the user's quota at `now`.

        Args:
            user_id: User to check
            resource_type: One of RESOURCE_TYPES
            now: Instant to evaluate at (defaults to the clock)
            effective: Already-resolved effective plan for this request

        Returns:
            LimitCheck with allowed/used/limit; limit None means unlimited
        """
        self._validate(resource_type)
        now = now or self.clock.now()
        effective = await self._resolve(user_id, now, effective)

        limit = effective.plan.max_usage_per_period
        if limit is None:
            return LimitCheck(allowed=True, used=0, limit=None)

        used = await self.usage.sum_in_window(user_id, resource_type, now)
        return LimitCheck(allowed=used < limit, used=used, limit=limit)

    async def snapshot(self, user_id: str, resource_type: str, now: Optional[datetime] = None,
                       effective: Optional[EffectivePlan] = None) -> UsageSnapshot:
        check = await self.check_limit(user_id, resource_type, now, effective)
        if check.limit is None:
            return UsageSnapshot(used=check.used, limit=None, remaining=None, percentage=0, can_access=True)
        return UsageSnapshot(
            used=check.used,
            limit=check.limit,
            remaining=max(0, check.limit - check.used),
            percentage=usage_percentage(check.used, check.limit),
            can_access=check.allowed,
        )

    async def record_usage(self, user_id: str, resource_type: str, quantity: int = 1,
                           metadata: Optional[Dict[str, Any]] = None) -> UsageRecord:
        """
        Append a usage record stamped with the window in force right now.
        Does not check the quota; use consume() for that.
        """
        self._validate(resource_type)
        if quantity < 1:
            raise ValueError("quantity must be at least 1")

        now = self.clock.now()
        effective = await self.lifecycle.resolve_effective_plan(user_id, now)
        start, end = self.window_for(effective, now)

        record = await self._append(user_id, resource_type, quantity, metadata, effective, start, end, now)
        await self.usage.add_to_counter(user_id, resource_type, start, end, quantity)
        return record

    async def consume(self, user_id: str, resource_type: str, quantity: int = 1,
                      metadata: Optional[Dict[str, Any]] = None) -> UsageRecord:
        """
        Check the quota and record usage as one atomic step.

        The window's counter row is created if missing, then incremented
        with a single conditional UPDATE. Two concurrent callers can never
        both take the last unit.

        Raises:
            UsageLimitExceeded: if `quantity` more units do not fit
        """
        self._validate(resource_type)
        if quantity < 1:
            raise ValueError("quantity must be at least 1")

        now = self.clock.now()
        effective = await self.lifecycle.resolve_effective_plan(user_id, now)
        start, end = self.window_for(effective, now)
        limit = effective.plan.max_usage_per_period

        if limit is not None:
            used = await self.usage.sum_for_window(user_id, resource_type, start, end)
            await self.usage.ensure_counter(user_id, resource_type, start, end, used)
            if not await self.usage.try_increment(user_id, resource_type, start, end, quantity, limit):
                counted = await self.usage.get_counter_used(user_id, resource_type, start, end)
                logger.info(f"Usage limit reached for user {user_id}, {resource_type}: "
                            f"{counted}/{limit}")
                raise UsageLimitExceeded(resource_type, counted if counted is not None else used, limit)

        return await self._append(user_id, resource_type, quantity, metadata, effective, start, end, now)

    async def _append(self, user_id, resource_type, quantity, metadata, effective, start, end, now) -> UsageRecord:
        subscription_id = effective.subscription.id if isinstance(effective, Subscribed) else None
        return await self.usage.create_record({
            "user_id": user_id,
            "subscription_id": subscription_id,
            "resource_type": resource_type,
            "quantity": quantity,
            "billing_period_start": start,
            "billing_period_end": end,
            "recorded_at": now,
            "usage_metadata": metadata,
        })

    async def monthly_summary(self, user_id: str, now: Optional[datetime] = None) -> UsageSummary:
        """Totals per resource type for the current window, zero-filled."""
        now = now or self.clock.now()
        effective = await self.lifecycle.resolve_effective_plan(user_id, now)
        start, end = self.window_for(effective, now)

        totals = {resource_type: 0 for resource_type in RESOURCE_TYPES}
        totals.update(await self.usage.sum_by_resource(user_id, now))

        return UsageSummary(
            plan_name=effective.plan.name,
            limit=effective.plan.max_usage_per_period,
            period_start=start,
            period_end=end,
            usage=totals,
            total=sum(totals.values()),
        )
