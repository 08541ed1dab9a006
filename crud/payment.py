"""
PaymentRepository for gateway payments and the webhook audit trail
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Payment, WebhookEvent


class PaymentRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_provider_id(self, provider_payment_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.provider_payment_id == provider_payment_id)
        )
        return result.scalar_one_or_none()

    async def count_by_status(self, user_id: str, status: str) -> int:
        result = await self.db.execute(
            select(func.count(Payment.id)).where(Payment.user_id == user_id, Payment.status == status)
        )
        return int(result.scalar_one())

    async def upsert_payment(self, provider_payment_id: str, payment_data: dict) -> Payment:
        """
        Create the payment on first callback, update status fields on later ones.
        """
        payment = await self.get_by_provider_id(provider_payment_id)
        if payment is None:
            payment = Payment(provider_payment_id=provider_payment_id, **payment_data)
            self.db.add(payment)
        else:
            for key, value in payment_data.items():
                if value is not None and hasattr(payment, key):
                    setattr(payment, key, value)
        await self.db.flush()
        await self.db.refresh(payment)
        return payment

    async def log_webhook_event(self, event_type: str, provider_event_id: Optional[str], payload: dict) -> WebhookEvent:
        event = WebhookEvent(
            event_type=event_type,
            provider_event_id=provider_event_id,
            payload=payload,
            processed=False,
        )
        self.db.add(event)
        await self.db.flush()
        await self.db.refresh(event)
        return event

    async def mark_webhook_processed(self, event: WebhookEvent, now: datetime, error: Optional[str] = None) -> WebhookEvent:
        event.processed = error is None
        event.processed_at = now
        event.processing_error = error
        await self.db.flush()
        return event
