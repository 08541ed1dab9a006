"""
UsageRepository for metered consumption records and per-window counters
"""

from datetime import datetime
from typing import Dict, Optional
from sqlalchemy import and_, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import UsageCounter, UsageRecord


class UsageRepository:
    """
    Repository class for UsageRecord / UsageCounter operations.

    Records are append-only. Counters are the single row per
    (user, resource, window) that consume() increments conditionally.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_record(self, record_data: dict) -> UsageRecord:
        record = UsageRecord(**record_data)
        self.db.add(record)
        await self.db.flush()
        await self.db.refresh(record)
        return record

    async def sum_in_window(self, user_id: str, resource_type: str, now: datetime) -> int:
        """
        Units recorded for (user, resource) in any stamped window that contains `now`.
        Windows are half-open: start <= now < end.
        """
        result = await self.db.execute(
            select(func.coalesce(func.sum(UsageRecord.quantity), 0)).where(
                UsageRecord.user_id == user_id,
                UsageRecord.resource_type == resource_type,
                UsageRecord.billing_period_start <= now,
                UsageRecord.billing_period_end > now,
            )
        )
        return int(result.scalar_one())

    async def sum_for_window(self, user_id: str, resource_type: str, period_start: datetime,
                             period_end: datetime) -> int:
        """
        Units stamped with exactly this window. A window's counter starts here;
        records from an overlapping earlier window (free month before an upgrade)
        belong to that window's counter, not this one.
        """
        result = await self.db.execute(
            select(func.coalesce(func.sum(UsageRecord.quantity), 0)).where(
                UsageRecord.user_id == user_id,
                UsageRecord.resource_type == resource_type,
                UsageRecord.billing_period_start == period_start,
                UsageRecord.billing_period_end == period_end,
            )
        )
        return int(result.scalar_one())

    async def sum_by_resource(self, user_id: str, now: datetime) -> Dict[str, int]:
        result = await self.db.execute(
            select(UsageRecord.resource_type, func.sum(UsageRecord.quantity))
            .where(
                UsageRecord.user_id == user_id,
                UsageRecord.billing_period_start <= now,
                UsageRecord.billing_period_end > now,
            )
            .group_by(UsageRecord.resource_type)
        )
        return {resource_type: int(total or 0) for resource_type, total in result.all()}

    async def ensure_counter(
        self,
        user_id: str,
        resource_type: str,
        period_start: datetime,
        period_end: datetime,
        initial_used: int,
    ) -> None:
        """
        Create the window's counter row if it does not exist yet.
        A concurrent creator wins silently; its row is kept as is.
        """
        values = {
            "user_id": user_id,
            "resource_type": resource_type,
            "period_start": period_start,
            "period_end": period_end,
            "used": initial_used,
        }
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(UsageCounter).values(**values).on_conflict_do_nothing(
                constraint="uq_usage_counter_window"
            )
        elif dialect == "sqlite":
            stmt = sqlite_insert(UsageCounter).values(**values).on_conflict_do_nothing()
        else:
            try:
                async with self.db.begin_nested():
                    self.db.add(UsageCounter(**values))
            except IntegrityError:
                pass
            return
        await self.db.execute(stmt)

    def _counter_key(self, user_id: str, resource_type: str, period_start: datetime, period_end: datetime):
        return and_(
            UsageCounter.user_id == user_id,
            UsageCounter.resource_type == resource_type,
            UsageCounter.period_start == period_start,
            UsageCounter.period_end == period_end,
        )

    async def try_increment(
        self,
        user_id: str,
        resource_type: str,
        period_start: datetime,
        period_end: datetime,
        quantity: int,
        limit: int,
    ) -> bool:
        """
        UPDATE usage_counters SET used = used + :q WHERE <key> AND used + :q <= :limit

        The check and the increment are one statement, so two writers can
        never both take the last unit.

        Returns:
            True if the units were reserved, False if the quota had no room
        """
        result = await self.db.execute(
            update(UsageCounter)
            .where(
                self._counter_key(user_id, resource_type, period_start, period_end),
                UsageCounter.used + quantity <= limit,
            )
            .values(used=UsageCounter.used + quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def add_to_counter(
        self,
        user_id: str,
        resource_type: str,
        period_start: datetime,
        period_end: datetime,
        quantity: int,
    ) -> None:
        """Unconditional increment; keeps an existing counter in step with record_usage."""
        await self.db.execute(
            update(UsageCounter)
            .where(self._counter_key(user_id, resource_type, period_start, period_end))
            .values(used=UsageCounter.used + quantity)
            .execution_options(synchronize_session=False)
        )

    async def get_counter_used(
        self,
        user_id: str,
        resource_type: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[int]:
        result = await self.db.execute(
            select(UsageCounter.used).where(
                self._counter_key(user_id, resource_type, period_start, period_end)
            )
        )
        return result.scalar_one_or_none()
