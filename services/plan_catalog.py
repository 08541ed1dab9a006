"""
Plan Catalog - read-only access to plan definitions
"""

from typing import List
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from crud.plan import PlanRepository
from database_models import Plan
from services.exceptions import PlanNotFound


class PlanCatalog:
    """
    Read-only view of the plan catalog.
    Cheap enough to call on every request; no caching layer.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.plans = PlanRepository(db)

    async def get_active_plans(self) -> List[Plan]:
        """Active plans ordered by ascending price."""
        return await self.plans.find_all_active()

    async def get_plan(self, plan_id: str) -> Plan:
        """
        Raises:
            PlanNotFound: if no plan has this id
        """
        plan = await self.plans.get_by_id(plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        return plan

    async def get_plan_by_name(self, name: str) -> Plan:
        """
        Raises:
            PlanNotFound: if no active plan has this name
        """
        plan = await self.plans.get_active_by_name(name)
        if plan is None:
            raise PlanNotFound(name)
        return plan

    async def get_free_plan(self) -> Plan:
        return await self.get_plan_by_name(settings.free_plan_name)
