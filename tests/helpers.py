"""
Shared builders and fakes for the test suite
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from crud.plan import PlanRepository
from database_models import Plan
from models.billing import GatewayResult, GatewaySession
from services.billing_service import PaymentGatewayAdapter

# A Monday in the middle of a 31-day month
START = datetime(2025, 3, 10, 12, 0, 0)

FREE_FEATURES = {"ai_tutor": False, "advanced_stats": False, "pubmed_search": True}
PREMIUM_FEATURES = {"ai_tutor": True, "advanced_stats": True, "pubmed_search": True, "priority_support": True}


def plan_data(name: str, **overrides) -> dict:
    defaults = {
        "FREE": {
            "display_name": "Gratis",
            "price": Decimal("0"),
            "trial_days": 0,
            "max_usage_per_period": 15,
            "features": FREE_FEATURES,
        },
        "BASIC": {
            "display_name": "Basico",
            "price": Decimal("4990"),
            "trial_days": 0,
            "max_usage_per_period": 50,
            "features": {"ai_tutor": True, "advanced_stats": False},
        },
        "PREMIUM": {
            "display_name": "Premium",
            "price": Decimal("9990"),
            "trial_days": 7,
            "max_usage_per_period": None,
            "features": PREMIUM_FEATURES,
            "recurring_price_id": "price_premium_monthly",
        },
    }[name]
    data = {"name": name, "currency": "CLP", "billing_period": "MONTHLY", "is_active": True}
    data.update(defaults)
    data.update(overrides)
    return data


async def add_plan(db: AsyncSession, name: str, **overrides) -> Plan:
    return await PlanRepository(db).create_plan(plan_data(name, **overrides))


class FakeGateway(PaymentGatewayAdapter):
    """Records every call; cancel/resume outcomes are configurable."""

    def __init__(self, cancel_result: GatewayResult = None, resume_result: GatewayResult = None):
        self.calls = []
        self.cancel_result = cancel_result or GatewayResult.success()
        self.resume_result = resume_result or GatewayResult.success()

    async def create_payment_intent(self, plan, user, external_reference, amount=None):
        self.calls.append(("create_payment_intent", plan.id, user.id, external_reference, amount))
        return GatewaySession(redirect_url=f"https://checkout.test/pay/{external_reference}",
                              provider_ref="cs_test_payment")

    async def create_recurring_subscription(self, plan, user, external_reference):
        self.calls.append(("create_recurring_subscription", plan.id, user.id, external_reference))
        return GatewaySession(redirect_url=f"https://checkout.test/sub/{external_reference}",
                              provider_ref="cs_test_recurring")

    async def cancel_recurring(self, provider_ref, at_period_end=False):
        self.calls.append(("cancel_recurring", provider_ref, at_period_end))
        return self.cancel_result

    async def resume_recurring(self, provider_ref):
        self.calls.append(("resume_recurring", provider_ref))
        return self.resume_result
