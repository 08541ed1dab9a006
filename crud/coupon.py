"""
CouponRepository for promotional discount codes
"""

from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Coupon


class CouponRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        """Codes are stored and matched upper-cased."""
        result = await self.db.execute(
            select(Coupon).where(Coupon.code == code.upper())
        )
        return result.scalar_one_or_none()

    async def create_coupon(self, coupon_data: dict) -> Coupon:
        data = dict(coupon_data)
        data["code"] = data["code"].upper()
        coupon = Coupon(**data)
        self.db.add(coupon)
        await self.db.flush()
        await self.db.refresh(coupon)
        return coupon

    async def redeem(self, coupon: Coupon) -> bool:
        """
        Count one redemption unless the coupon is already exhausted.

        Returns:
            True if the redemption was counted
        """
        criteria = [Coupon.id == coupon.id]
        if coupon.max_redemptions is not None:
            criteria.append(Coupon.redemptions_count < coupon.max_redemptions)
        result = await self.db.execute(
            update(Coupon)
            .where(*criteria)
            .values(redemptions_count=Coupon.redemptions_count + 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(coupon)
        return result.rowcount == 1
