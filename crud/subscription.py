"""
SubscriptionRepository for database operations on Subscription model

State transitions are conditional UPDATEs: each one names the state it
expects to move away from, so a concurrent or repeated transition matches
zero rows and is a no-op instead of a double write.
"""

from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Subscription
from models.billing import CURRENT_STATUSES, SubscriptionStatus


class SubscriptionRepository:
    """
    Repository class for Subscription database operations.
    Rows are never deleted; history is kept for payment reconciliation.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        return await self.db.get(Subscription, subscription_id)

    async def get_by_external_ref(self, external_ref: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.external_payment_ref == external_ref)
        )
        return result.scalar_one_or_none()

    async def find_current_by_user(self, user_id: str) -> Optional[Subscription]:
        """
        The user's ACTIVE/TRIALING subscription, newest first.
        Status is as stored; lazy transitions are applied by the lifecycle.
        """
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status.in_(CURRENT_STATUSES),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_all_by_user(self, user_id: str) -> List[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
        return list(result.scalars().all())

    async def create(self, subscription_data: dict) -> Subscription:
        subscription = Subscription(**subscription_data)
        self.db.add(subscription)
        await self.db.flush()
        await self.db.refresh(subscription)
        return subscription

    async def _conditional_update(self, subscription: Subscription, criteria, values: dict) -> bool:
        """
        UPDATE ... WHERE id = :id AND <criteria>; refreshes the instance either way.

        Returns:
            True if this call changed the row, False if another writer got there first
        """
        result = await self.db.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(subscription)
        return result.rowcount == 1

    async def expire_trial(self, subscription: Subscription, now: datetime) -> bool:
        return await self._conditional_update(
            subscription,
            (
                Subscription.status == SubscriptionStatus.TRIALING.value,
                Subscription.trial_end < now,
            ),
            {"status": SubscriptionStatus.EXPIRED.value},
        )

    async def close_period(self, subscription: Subscription, to_status: str, now: datetime) -> bool:
        """Move a current subscription whose period has elapsed to EXPIRED or CANCELED."""
        return await self._conditional_update(
            subscription,
            (
                Subscription.status.in_(CURRENT_STATUSES),
                Subscription.current_period_end <= now,
            ),
            {"status": to_status},
        )

    async def roll_period(
        self,
        subscription: Subscription,
        expected_start: datetime,
        new_start: datetime,
        new_end: datetime,
    ) -> bool:
        return await self._conditional_update(
            subscription,
            (
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.current_period_start == expected_start,
            ),
            {"current_period_start": new_start, "current_period_end": new_end},
        )

    async def mark_canceled(
        self,
        subscription: Subscription,
        at_period_end: bool,
        now: datetime,
        reason: Optional[str] = None,
    ) -> bool:
        values = {
            "cancel_at_period_end": at_period_end,
            "canceled_at": now,
            "cancel_reason": reason,
        }
        if not at_period_end:
            values["status"] = SubscriptionStatus.CANCELED.value
        return await self._conditional_update(
            subscription,
            (Subscription.status.in_(CURRENT_STATUSES),),
            values,
        )

    async def clear_cancellation(self, subscription: Subscription, now: datetime) -> bool:
        return await self._conditional_update(
            subscription,
            (
                Subscription.status.in_(CURRENT_STATUSES),
                Subscription.cancel_at_period_end.is_(True),
                Subscription.current_period_end > now,
            ),
            {"cancel_at_period_end": False, "canceled_at": None, "cancel_reason": None},
        )

    async def update_subscription(self, subscription: Subscription, updates: dict) -> Subscription:
        """
        Update non-state fields (e.g. gateway_sync_error).

        Args:
            subscription: Subscription object to update
            updates: Dictionary of fields to update

        Returns:
            Updated Subscription object
        """
        for key, value in updates.items():
            if hasattr(subscription, key):
                setattr(subscription, key, value)

        await self.db.flush()
        await self.db.refresh(subscription)
        return subscription
