"""
Feature Gate - boolean capability checks against the effective plan
"""
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.billing import EffectivePlan
from services.subscription_service import SubscriptionLifecycle
from utils.clock import system_clock


class FeatureGate:
    """
    Answers "may this user use feature X right now".
    Usage quotas are UsageMeter's concern and are not consulted here.
    """

    def __init__(self, db: AsyncSession, lifecycle: Optional[SubscriptionLifecycle] = None, clock=system_clock):
        self.clock = clock
        self.lifecycle = lifecycle or SubscriptionLifecycle(db, clock=clock)

    async def get_features(self, user_id: str, now: Optional[datetime] = None,
                           effective: Optional[EffectivePlan] = None) -> Dict[str, bool]:
        """Feature flags of the effective plan; expired or canceled users get the free plan's."""
        if effective is None:
            effective = await self.lifecycle.resolve_effective_plan(user_id, now or self.clock.now())
        features = effective.plan.features or {}
        return {key: value is True for key, value in features.items()}

    async def can_access_feature(self, user_id: str, feature_key: str, now: Optional[datetime] = None,
                                 effective: Optional[EffectivePlan] = None) -> bool:
        features = await self.get_features(user_id, now, effective)
        return features.get(feature_key, False)
