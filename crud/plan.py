"""
PlanRepository for read access to the plan catalog
"""

from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from database_models import Plan


class PlanRepository:
    """
    Repository class for Plan database operations.
    Plans are written by admin tooling; this core only reads them
    (create_plan exists for seeding and tests).
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_all_active(self) -> List[Plan]:
        """Active plans ordered by ascending price."""
        result = await self.db.execute(
            select(Plan).where(Plan.is_active.is_(True)).order_by(Plan.price.asc(), Plan.name.asc())
        )
        return list(result.scalars().all())

    async def get_by_id(self, plan_id: str) -> Optional[Plan]:
        return await self.db.get(Plan, plan_id)

    async def get_active_by_name(self, name: str) -> Optional[Plan]:
        result = await self.db.execute(
            select(Plan)
            .where(Plan.name == name, Plan.is_active.is_(True))
            .order_by(Plan.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_plan(self, plan_data: dict) -> Plan:
        plan = Plan(**plan_data)
        self.db.add(plan)
        await self.db.flush()
        await self.db.refresh(plan)
        return plan
