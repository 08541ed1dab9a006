"""
Billing Router - API endpoints for Stripe checkout and webhooks
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging
from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from backend.utils.responses import billing_error_response, success_response
from database import get_db
from models.billing import CheckoutRequest
from routers.dependencies import get_clock, get_current_user_id, get_gateway
from services.billing_service import PaymentGatewayAdapter
from services.checkout_service import CheckoutService
from services.exceptions import BillingError, WebhookError
from services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/billing", tags=["billing"])


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    Handle Stripe webhook events with signature verification.

    Only verified events are processed. Always returns 200 OK to Stripe to
    prevent retries; failures are kept in the webhook_events audit table.
    """
    service = WebhookService(db, clock=clock)
    try:
        payload = await request.body()
        event = service.verify(payload, request.headers.get("stripe-signature"))
    except WebhookError as e:
        return JSONResponse(
            status_code=200,
            content={"ok": False, "received": True, "error": e.message}
        )

    try:
        result = await service.process_event(event)
    except Exception as e:
        logger.error(f"Webhook error: {e}", exc_info=True)
        return JSONResponse(
            status_code=200,
            content={"ok": False, "received": True, "error": str(e)}
        )

    return JSONResponse(
        status_code=200,
        content={
            "ok": not result["is_error"],
            "received": True,
            "event_type": result["event_type"],
        }
    )


@billing_router.post("/checkout")
async def create_checkout(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    clock=Depends(get_clock),
):
    """
    Start a paid subscription. The caller is redirected to the gateway;
    the subscription is activated when the payment webhook arrives.
    """
    try:
        result = await CheckoutService(db, gateway, clock=clock).start_subscription(
            user_id, request.plan_id, request.coupon_code
        )
    except BillingError as e:
        return billing_error_response(e)
    return success_response(result.model_dump())
