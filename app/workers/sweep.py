"""
SweepWorker: moves settled funds to treasury once the refund window closes.

Phase (a): confirmed payments older than SWEEP_REFUND_WINDOW_DAYS become
sweep-eligible (all rails).

Phase (b): manual sweep-eligible payments have their deposit address emptied
into the chain's treasury wallet:

    re-read row (skip if already swept) -> reserve (sweep_started_at)
    -> read token balance -> sign + submit transfer -> record treasury hash

A failure before broadcast releases the reservation. An uncertain broadcast
keeps it so the payment is never swept twice; reconciliation reports it as a
stuck sweep for a human to resolve.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from app.allocator.allocator import AddressAllocator
from app.core.config import settings
from app.core.errors import AlreadySwept, InvalidState, NotConfigured, ProviderUnavailable, SubmissionUncertain
from app.db.models import Payment, utcnow
from app.payments.enums import PaymentStatus, ProviderKind
from app.payments.repository import PaymentRepository
from app.payments.service import PaymentService
from app.providers.registry import ProviderRegistry
from app.workers.batch import PERMANENT, SKIPPED, SUCCEEDED, TRANSIENT, BatchSummary

logger = logging.getLogger("settlement.workers.sweep")


class SweepWorker:
    name = "sweep"

    def __init__(self, service: PaymentService, repository: PaymentRepository, registry: ProviderRegistry,
                 allocator: AddressAllocator, refund_window_days: Optional[int] = None,
                 batch_size: Optional[int] = None):
        self.service = service
        self.repository = repository
        self.registry = registry
        self.allocator = allocator
        self.refund_window = timedelta(days=settings.SWEEP_REFUND_WINDOW_DAYS if refund_window_days is None else refund_window_days)
        self.batch_size = batch_size or settings.SWEEP_BATCH_SIZE

    async def run_once(self, now: Optional[datetime] = None) -> BatchSummary:
        now = now or utcnow()
        summary = await self.mark_eligible(now)
        summary.merge(await self.sweep_eligible(now))
        return summary

    async def mark_eligible(self, now: datetime) -> BatchSummary:
        summary = BatchSummary("sweep-eligibility")
        ready = await self.repository.list_ready_for_sweep_eligibility(
            confirmed_before=now - self.refund_window, limit=self.batch_size,
        )
        for payment in ready:
            try:
                await self.service.mark_sweep_eligible(payment.id)
                summary.record(SUCCEEDED)
            except InvalidState as exc:
                logger.info("Benign race marking payment=%s sweep-eligible: %s", payment.id, exc.message)
                summary.record(SKIPPED)
            except Exception:
                logger.exception("Failed to mark payment=%s sweep-eligible", payment.id)
                summary.record(PERMANENT)
        summary.log()
        return summary

    async def sweep_eligible(self, now: datetime) -> BatchSummary:
        summary = BatchSummary(self.name)
        for payment in await self.repository.list_sweep_eligible(limit=self.batch_size, provider=ProviderKind.MANUAL):
            try:
                summary.record(await self.sweep_one(payment.id, now))
            except (AlreadySwept, InvalidState) as exc:
                logger.info("Benign race sweeping payment=%s: %s", payment.id, exc.message)
                summary.record(SKIPPED)
            except SubmissionUncertain as exc:
                logger.error("Sweep outcome unknown for payment=%s chain=%s context=%s; reservation kept",
                             payment.id, payment.chain, exc.context)
                summary.record(TRANSIENT)
            except ProviderUnavailable as exc:
                logger.warning("Sweep of payment=%s deferred: %s", payment.id, exc.message)
                summary.record(TRANSIENT)
            except NotConfigured as exc:
                logger.error("Sweep of payment=%s not configured: %s", payment.id, exc.message)
                summary.record(PERMANENT)
            except Exception:
                logger.exception("Sweep failed for payment=%s chain=%s", payment.id, payment.chain)
                summary.record(PERMANENT)
        summary.log()
        return summary

    async def sweep_one(self, payment_id, now: datetime) -> str:
        payment: Optional[Payment] = await self.repository.get(payment_id)
        if payment is None or payment.status != PaymentStatus.SWEEP_ELIGIBLE or payment.treasury_tx_hash:
            return SKIPPED
        treasury = self.registry.treasury_wallets.get(payment.chain or "")
        if not treasury:
            raise NotConfigured(f"no treasury wallet configured for chain {payment.chain}")
        verifier = self.registry.verifier(payment.chain)

        if not await self.repository.reserve_sweep(payment.id, now):
            return SKIPPED
        try:
            balance = await verifier.get_token_balance(payment.destination_address)
            if balance <= 0:
                logger.warning("Deposit address %s for payment=%s holds no balance; leaving for review",
                               payment.destination_address, payment.id)
                await self.repository.release_sweep(payment.id)
                return SKIPPED
            signer = self.allocator.signer_for(payment.chain, payment.derivation_index)
            tx_hash = await verifier.submit_token_transfer(signer, treasury, balance)
        except SubmissionUncertain:
            raise
        except Exception:
            await self.repository.release_sweep(payment.id)
            raise
        logger.info("Broadcast sweep payment=%s chain=%s tx=%s", payment.id, payment.chain, tx_hash)
        try:
            await self.repository.audit(
                "sweep_broadcast", actor="sweep-worker", payment_id=payment.id,
                details={"tx_hash": tx_hash, "amount": balance, "source": payment.destination_address,
                         "destination": treasury},
            )
            await self.service.sweep(payment.id, tx_hash)
        except Exception:
            # funds have moved; the reservation stays so the sweep is never repeated
            logger.error("Sweep of payment=%s broadcast tx=%s but was not recorded; reservation kept",
                         payment.id, tx_hash)
            raise
        logger.info("Swept %s base units from %s to treasury chain=%s tx=%s",
                    balance, payment.destination_address, payment.chain, tx_hash)
        return SUCCEEDED
