"""
ExpiryWorker: manual payments still pending after their deposit window -> expired.

Before expiring, the deposit address gets one last check so a transfer that
reached full depth right at the deadline is confirmed instead of discarded. If
that check cannot reach the chain the payment is left for the next run.
"""
import logging
from datetime import datetime
from typing import Optional

from app.core.config import settings
from app.core.errors import InvalidState, ProviderUnavailable
from app.db.models import Payment, utcnow
from app.payments.repository import PaymentRepository
from app.payments.service import PaymentService
from app.providers.base import VerificationStatus
from app.workers.batch import PERMANENT, SKIPPED, SUCCEEDED, TRANSIENT, BatchSummary

logger = logging.getLogger("settlement.workers.expiry")


class ExpiryWorker:
    name = "expiry"

    def __init__(self, service: PaymentService, repository: PaymentRepository,
                 batch_size: Optional[int] = None, final_check: bool = True):
        self.service = service
        self.repository = repository
        self.batch_size = batch_size or settings.EXPIRY_BATCH_SIZE
        self.final_check = final_check

    async def run_once(self, now: Optional[datetime] = None) -> BatchSummary:
        now = now or utcnow()
        summary = BatchSummary(self.name)
        for payment in await self.repository.list_expired_manual(now=now, limit=self.batch_size):
            try:
                summary.record(await self.process(payment))
            except InvalidState as exc:
                logger.info("Benign race expiring payment=%s: %s", payment.id, exc.message)
                summary.record(SKIPPED)
            except ProviderUnavailable as exc:
                logger.warning("Final check unavailable for payment=%s address=%s: %s",
                               payment.id, payment.destination_address, exc.message)
                summary.record(TRANSIENT)
            except Exception:
                logger.exception("Failed to expire payment=%s address=%s", payment.id, payment.destination_address)
                summary.record(PERMANENT)
        summary.log()
        return summary

    async def process(self, payment: Payment) -> str:
        if self.final_check:
            result = await self.service.verify_payment(payment)
            if result.status == VerificationStatus.VERIFIED:
                logger.info("Payment=%s settled at its deadline; confirming instead of expiring", payment.id)
                await self.service.confirm(payment.id, result.provider_ref, actor="expiry-worker",
                                           received_amount_minor=result.verified_amount_minor)
                return SUCCEEDED
        await self.service.expire(payment.id, actor="expiry-worker")
        return SUCCEEDED
