"""
Shared FastAPI dependencies for the billing routers
"""
from typing import Optional

from fastapi import Header, HTTPException

from services.billing_service import PaymentGatewayAdapter, StripeGatewayAdapter
from utils.clock import system_clock


async def get_current_user_id(x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")) -> str:
    """Authenticated user id, as forwarded by the identity provider's gateway."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def get_gateway() -> PaymentGatewayAdapter:
    return StripeGatewayAdapter()


def get_clock():
    return system_clock
