"""
Notifier: fire-and-forget signal on committed confirmed/claimed transitions.

WebhookNotifier writes an outbox row (webhook_queue); the webhook worker
delivers it. The row carries an idempotency key so a transition that is
reported twice produces a single delivery.
"""
import logging
from typing import Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import Payment, WebhookQueue, utcnow

logger = logging.getLogger("settlement.notifications")

EVENT_CONFIRMED = "payment.confirmed"
EVENT_CLAIMED = "payment.claimed"


def payment_event_payload(event_type: str, payment: Payment) -> dict:
    return {
        "event": event_type,
        "payment_id": str(payment.id),
        "status": payment.status.value,
        "purpose": payment.purpose.value,
        "provider": payment.provider.value,
        "chain": payment.chain,
        "amount_minor": payment.amount_minor,
        "support_amount_minor": payment.support_amount_minor,
        "provider_ref": payment.provider_ref,
        "received_amount_minor": payment.received_amount_minor,
        "user_id": str(payment.user_id) if payment.user_id else None,
        "subject_id": str(payment.subject_id) if payment.subject_id else None,
        "occurred_at": utcnow().isoformat(),
    }


class Notifier(Protocol):
    async def notify(self, event_type: str, payment: Payment) -> None:
        ...


class NullNotifier:
    async def notify(self, event_type: str, payment: Payment) -> None:
        logger.debug("Notification %s for payment=%s (no webhook configured)", event_type, payment.id)


class WebhookNotifier:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], webhook_url: Optional[str]):
        self.session_factory = session_factory
        self.webhook_url = webhook_url

    async def notify(self, event_type: str, payment: Payment) -> None:
        row = WebhookQueue(
            payment_id=payment.id,
            event_type=event_type,
            payload=payment_event_payload(event_type, payment),
            headers={"webhook_url": self.webhook_url},
            attempts=0,
            status="pending",
            idempotency_key=f"{event_type}:{payment.id}",
        )
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    session.add(row)
            except IntegrityError:
                logger.info("Notification %s for payment=%s already queued", event_type, payment.id)
                return
        logger.info("Queued %s webhook for payment=%s", event_type, payment.id)
