"""
ConfirmationWorker: re-polls pending payments that something can be checked for
(live manual deposit addresses, or wallet/off-chain payments with a submitted
reference) and advances them.

    verified -> confirm
    failed   -> fail
    rejected -> stays pending until MISMATCH_MAX_AGE_HOURS, then fail
    pending  -> stays pending; past CONFIRMATION_MAX_WAIT_MINUTES it is flagged
                once as stalled (stalled_at, audit entry, metric), never failed blindly

A lost conditional write means another worker or an admin got there first and
is logged as a benign race.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from prometheus_client import Counter

from app.core.config import settings
from app.core.errors import (
    AlreadyClaimed,
    DuplicateProviderReference,
    InvalidState,
    ProviderUnavailable,
    SettlementError,
)
from app.db.models import Payment, utcnow
from app.payments.repository import PaymentRepository
from app.payments.service import PaymentService
from app.providers.base import VerificationStatus
from app.workers.batch import PERMANENT, SKIPPED, SUCCEEDED, TRANSIENT, BatchSummary

logger = logging.getLogger("settlement.workers.confirmation")

MET_STALLED = Counter("settlement_confirmation_stalled_total", "Pending payments past the maximum confirmation wait")


class ConfirmationWorker:
    name = "confirmation"

    def __init__(self, service: PaymentService, repository: PaymentRepository,
                 batch_size: Optional[int] = None, min_age_seconds: Optional[int] = None,
                 max_wait_minutes: Optional[int] = None, mismatch_max_age_hours: Optional[int] = None):
        self.service = service
        self.repository = repository
        self.batch_size = batch_size or settings.CONFIRMATION_BATCH_SIZE
        self.min_age = timedelta(seconds=settings.CONFIRMATION_MIN_AGE_SECONDS if min_age_seconds is None else min_age_seconds)
        self.max_wait = timedelta(minutes=max_wait_minutes or settings.CONFIRMATION_MAX_WAIT_MINUTES)
        self.mismatch_max_age = timedelta(hours=mismatch_max_age_hours or settings.MISMATCH_MAX_AGE_HOURS)

    async def run_once(self, now: Optional[datetime] = None) -> BatchSummary:
        now = now or utcnow()
        summary = BatchSummary(self.name)
        payments = await self.repository.list_awaiting_confirmation(
            now=now, created_before=now - self.min_age, limit=self.batch_size,
        )
        for payment in payments:
            summary.record(await self._process_safely(payment, now))
        summary.log()
        return summary

    async def _process_safely(self, payment: Payment, now: datetime) -> str:
        ref = payment.submitted_ref or payment.destination_address
        try:
            return await self.process(payment, now)
        except (InvalidState, AlreadyClaimed) as exc:
            logger.info("Benign race on payment=%s provider=%s ref=%s: %s",
                        payment.id, payment.provider.value, ref, exc.message)
            return SKIPPED
        except ProviderUnavailable as exc:
            logger.warning("Provider unavailable for payment=%s provider=%s ref=%s: %s",
                           payment.id, payment.provider.value, ref, exc.message)
            return TRANSIENT
        except DuplicateProviderReference as exc:
            logger.error("Duplicate provider reference for payment=%s provider=%s ref=%s: %s",
                         payment.id, payment.provider.value, ref, exc.context)
            return PERMANENT
        except SettlementError:
            logger.exception("Confirmation failed for payment=%s provider=%s ref=%s",
                             payment.id, payment.provider.value, ref)
            return PERMANENT
        except Exception:
            logger.exception("Unexpected error confirming payment=%s provider=%s ref=%s",
                             payment.id, payment.provider.value, ref)
            return PERMANENT

    async def process(self, payment: Payment, now: datetime) -> str:
        result = await self.service.verify_payment(payment)
        age = now - payment.created_at

        if result.status == VerificationStatus.VERIFIED:
            await self.service.confirm(
                payment.id, result.provider_ref, actor="confirmation-worker",
                received_amount_minor=result.verified_amount_minor,
                details={"confirmations": result.confirmations},
            )
            return SUCCEEDED

        if result.status == VerificationStatus.FAILED:
            await self.service.fail(payment.id, reason=result.reason, actor="confirmation-worker")
            return SUCCEEDED

        if result.status == VerificationStatus.REJECTED:
            if age > self.mismatch_max_age:
                logger.warning("Failing payment=%s after %s of mismatched verification: %s",
                               payment.id, age, result.reason)
                await self.service.fail(payment.id, reason=f"verification rejected: {result.reason}",
                                        actor="confirmation-worker")
                return SUCCEEDED
            logger.info("Verification rejected payment=%s: %s", payment.id, result.reason)
            return SKIPPED

        if age > self.max_wait and payment.stalled_at is None:
            await self._flag_stalled(payment, age, result.reason, now)
        return SKIPPED

    async def _flag_stalled(self, payment: Payment, age: timedelta, reason: Optional[str], now: datetime) -> None:
        age_minutes = int(age.total_seconds() // 60)
        flagged = await self.repository.mark_stalled(
            payment.id, now, actor="confirmation-worker",
            details={"age_minutes": age_minutes, "reason": reason},
        )
        if not flagged:
            return
        MET_STALLED.inc()
        logger.error("Confirmation stalled payment=%s provider=%s ref=%s age_minutes=%s reason=%s",
                     payment.id, payment.provider.value, payment.submitted_ref or payment.destination_address,
                     age_minutes, reason)
