"""
PaymentService - orchestrates the payment state machine.

Request-path operations (create intents, submit references, claim, admin
assignment) and the worker-facing transitions (confirm, fail, expire, sweep
eligibility, sweep) all go through here:

    state_machine builds a Transition from the current row
    -> repository applies it with a conditional update
    -> lost race: re-read and raise InvalidState / AlreadyClaimed / AlreadySwept
    -> won: notify (confirmed / claimed) after commit

Notification failures are logged and never undo a committed transition.
"""
import dataclasses
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from prometheus_client import Counter

from app.core.errors import (
    AlreadyClaimed,
    AlreadySwept,
    DuplicateProviderReference,
    InvalidArgument,
    InvalidState,
)
from app.db.models import Payment, utcnow
from app.notifications.notifier import EVENT_CLAIMED, EVENT_CONFIRMED, NullNotifier, Notifier
from app.payments import state_machine as sm
from app.payments.enums import PaymentPurpose, PaymentStatus, ProviderKind
from app.payments.repository import PaymentRepository
from app.providers.base import (
    IntentRequest,
    PaymentIntent,
    VerificationResult,
    VerificationStatus,
    VerifyRequest,
)
from app.providers.registry import ProviderRegistry

logger = logging.getLogger("settlement.payments.service")

MET_TRANSITIONS = Counter("settlement_payment_transitions_total", "Persisted payment transitions", ["transition"])
MET_LOST_RACES = Counter("settlement_payment_lost_races_total", "Conditional writes that matched no row", ["transition"])


@dataclass(frozen=True)
class SubmissionResult:
    payment: Payment
    verification: VerificationResult


class PaymentService:
    def __init__(self, repository: PaymentRepository, registry: ProviderRegistry,
                 notifier: Optional[Notifier] = None, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.registry = registry
        self.notifier = notifier or NullNotifier()
        self.clock = clock

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    async def create_pending(self, *, user_id: Optional[uuid.UUID], purpose: PaymentPurpose, amount_minor: int,
                             provider: ProviderKind, chain: Optional[str] = None,
                             subject_id: Optional[uuid.UUID] = None, support_amount_minor: Optional[int] = None,
                             invoice_id: Optional[uuid.UUID] = None) -> Payment:
        payment = sm.new_pending(
            user_id=user_id, purpose=purpose, amount_minor=amount_minor, provider=provider, chain=chain,
            subject_id=subject_id, support_amount_minor=support_amount_minor, invoice_id=invoice_id,
            now=self.clock(),
        )
        return await self.repository.insert(payment)

    async def create_intent(self, *, user_id: Optional[uuid.UUID], purpose: PaymentPurpose, amount_minor: int,
                            provider: ProviderKind, chain: Optional[str] = None,
                            subject_id: Optional[uuid.UUID] = None, support_amount_minor: Optional[int] = None,
                            invoice_id: Optional[uuid.UUID] = None) -> tuple[Payment, PaymentIntent]:
        """Wallet or off-chain intent: validate, ask the provider where to pay, then persist."""
        if provider == ProviderKind.WALLET and not chain:
            raise InvalidArgument("wallet payments require a chain")
        payment = sm.new_pending(
            user_id=user_id, purpose=purpose, amount_minor=amount_minor, provider=provider, chain=chain,
            subject_id=subject_id, support_amount_minor=support_amount_minor, invoice_id=invoice_id,
            now=self.clock(),
        )
        intent = await self.registry.get(provider, chain).create_intent(IntentRequest(
            payment_id=payment.id, purpose=purpose, amount_minor=amount_minor, chain=chain,
            user_id=user_id, subject_id=subject_id,
        ))
        await self.repository.insert(payment)
        logger.info("Created %s payment id=%s amount_minor=%s chain=%s", provider.value, payment.id, amount_minor, chain)
        return payment, intent

    async def create_manual_intent(self, *, purpose: PaymentPurpose, amount_minor: int, chain: str,
                                   buyer_contact: str, subject_id: Optional[uuid.UUID] = None,
                                   support_amount_minor: Optional[int] = None) -> tuple[Payment, PaymentIntent]:
        """Anonymous payment to a freshly allocated deposit address."""
        sm.validate_new_payment(purpose, amount_minor, subject_id, support_amount_minor)
        if not buyer_contact or not buyer_contact.strip():
            raise InvalidArgument("manual payment requires a buyer contact address")
        payment_id = uuid.uuid4()
        intent = await self.registry.get(ProviderKind.MANUAL, chain).create_intent(IntentRequest(
            payment_id=payment_id, purpose=purpose, amount_minor=amount_minor, chain=chain, subject_id=subject_id,
        ))
        payment = sm.new_pending_manual(
            payment_id=payment_id, purpose=purpose, amount_minor=amount_minor, chain=chain,
            destination_address=intent.destination, derivation_index=intent.derivation_index,
            expires_at=intent.expires_at, buyer_contact=buyer_contact, subject_id=subject_id,
            support_amount_minor=support_amount_minor, now=self.clock(),
        )
        await self.repository.insert(payment)
        logger.info("Created manual payment id=%s chain=%s index=%s", payment.id, chain, payment.derivation_index)
        return payment, intent

    # ------------------------------------------------------------------
    # verification
    # ------------------------------------------------------------------

    async def verify_payment(self, payment: Payment, provider_ref: Optional[str] = None) -> VerificationResult:
        """Ask the payment's provider about it. Raises ProviderUnavailable on transport failure."""
        provider = self.registry.get(payment.provider, payment.chain)
        return await provider.verify(VerifyRequest(
            payment_id=payment.id,
            expected_amount_minor=payment.amount_minor,
            provider_ref=provider_ref or payment.submitted_ref,
            chain=payment.chain,
            destination=payment.destination_address,
        ))

    async def submit(self, payment_id: uuid.UUID, provider_ref: str) -> SubmissionResult:
        """Payer submits an external reference; verify it and advance the payment if final."""
        provider_ref = (provider_ref or "").strip()
        if not provider_ref:
            raise InvalidArgument("provider reference is required")
        payment = await self.repository.require(payment_id)
        if payment.is_manual:
            raise InvalidArgument("manual payments are confirmed by the deposit watcher")
        if payment.status != PaymentStatus.PENDING:
            if payment.provider_ref == provider_ref:
                return SubmissionResult(payment, VerificationResult.verified(
                    provider_ref=provider_ref, amount_minor=payment.amount_minor))
            raise InvalidState(f"payment is {payment.status.value}", payment_id=str(payment.id))
        await self._reject_foreign_reference(payment.id, provider_ref)

        result = await self.verify_payment(payment, provider_ref)
        if result.status == VerificationStatus.VERIFIED:
            payment = await self.confirm(payment.id, result.provider_ref or provider_ref, actor="payer",
                                         received_amount_minor=result.verified_amount_minor)
        elif result.status == VerificationStatus.FAILED:
            payment = await self.fail(payment.id, reason=result.reason, actor="payer")
        else:
            if result.status == VerificationStatus.REJECTED:
                logger.info("Submitted reference rejected payment=%s ref=%s: %s", payment.id, provider_ref, result.reason)
            # the confirmation worker re-polls it (and fails it once the mismatch is old enough)
            await self.repository.record_submitted_ref(payment.id, provider_ref)
            payment.submitted_ref = provider_ref
        return SubmissionResult(payment, result)

    async def _reject_foreign_reference(self, payment_id: uuid.UUID, provider_ref: str) -> None:
        existing = await self.repository.get_by_provider_ref(provider_ref)
        if existing is not None and existing.id != payment_id:
            raise DuplicateProviderReference(
                "provider reference already settles another payment",
                payment_id=str(payment_id), provider_ref=provider_ref,
            )

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    async def _persist(self, payment: Payment, transition: sm.Transition, *, actor: str,
                       details: Optional[dict] = None) -> bool:
        won = await self.repository.apply_transition(transition, actor=actor, details=details)
        if won:
            sm.apply(payment, transition)
            MET_TRANSITIONS.labels(transition.name).inc()
        else:
            MET_LOST_RACES.labels(transition.name).inc()
        return won

    async def confirm(self, payment_id: uuid.UUID, provider_ref: str, *, actor: str = "service",
                      received_amount_minor: Optional[int] = None, details: Optional[dict] = None) -> Payment:
        payment = await self.repository.require(payment_id)
        transition = sm.confirm(payment, provider_ref, self.clock(), received_amount_minor)
        await self._reject_foreign_reference(payment.id, transition.changes["provider_ref"])
        if not await self._persist(payment, transition, actor=actor, details=details):
            current = await self.repository.require(payment_id)
            raise InvalidState(
                f"payment moved to {current.status.value} concurrently", payment_id=str(payment_id)
            )
        logger.info("Confirmed payment id=%s ref=%s provider=%s", payment.id, payment.provider_ref, payment.provider.value)
        await self._notify(EVENT_CONFIRMED, payment)
        return payment

    async def fail(self, payment_id: uuid.UUID, *, reason: Optional[str] = None, actor: str = "service") -> Payment:
        payment = await self.repository.require(payment_id)
        if not await self._persist(payment, sm.fail(payment), actor=actor, details={"reason": reason}):
            raise InvalidState("payment left pending concurrently", payment_id=str(payment_id))
        logger.info("Failed payment id=%s reason=%s", payment.id, reason)
        return payment

    async def expire(self, payment_id: uuid.UUID, *, actor: str = "service") -> Payment:
        payment = await self.repository.require(payment_id)
        if not await self._persist(payment, sm.expire(payment), actor=actor):
            raise InvalidState("payment left pending concurrently", payment_id=str(payment_id))
        logger.info("Expired payment id=%s", payment.id)
        return payment

    async def claim(self, payment_id: uuid.UUID, user_id: uuid.UUID) -> Payment:
        payment = await self.repository.require(payment_id)
        transition = sm.claim(payment, user_id, self.clock())
        await self._claim(payment, transition, actor=f"user:{user_id}")
        logger.info("Payment id=%s claimed by user=%s", payment.id, user_id)
        return payment

    async def admin_assign(self, payment_id: uuid.UUID, user_id: uuid.UUID, *, admin_id: str,
                           reason: str) -> Payment:
        """Bind an unclaimed anonymous payment to a user on an administrator's behalf."""
        if not admin_id:
            raise InvalidArgument("admin id is required")
        if not reason or not reason.strip():
            raise InvalidArgument("a reason is required for admin assignment")
        payment = await self.repository.require(payment_id)
        transition = dataclasses.replace(sm.claim(payment, user_id, self.clock()), name="admin_assign")
        await self._claim(payment, transition, actor=f"admin:{admin_id}",
                          details={"admin_id": admin_id, "reason": reason.strip()})
        logger.info("Payment id=%s assigned to user=%s by admin=%s", payment.id, user_id, admin_id)
        return payment

    async def _claim(self, payment: Payment, transition: sm.Transition, *, actor: str,
                     details: Optional[dict] = None) -> None:
        if not await self._persist(payment, transition, actor=actor, details=details):
            current = await self.repository.require(payment.id)
            if current.claimed_at is not None:
                raise AlreadyClaimed("payment already claimed", payment_id=str(payment.id))
            raise InvalidState("payment cannot be claimed", payment_id=str(payment.id))
        await self._notify(EVENT_CLAIMED, payment)

    async def mark_sweep_eligible(self, payment_id: uuid.UUID, *, actor: str = "sweep-worker") -> Payment:
        payment = await self.repository.require(payment_id)
        if not await self._persist(payment, sm.mark_sweep_eligible(payment, self.clock()), actor=actor):
            raise InvalidState("payment left confirmed concurrently", payment_id=str(payment_id))
        return payment

    async def sweep(self, payment_id: uuid.UUID, treasury_tx_hash: str, *, actor: str = "sweep-worker") -> Payment:
        payment = await self.repository.require(payment_id)
        transition = sm.sweep(payment, treasury_tx_hash, self.clock())
        if not await self._persist(payment, transition, actor=actor):
            current = await self.repository.require(payment_id)
            if current.treasury_tx_hash:
                raise AlreadySwept("payment already swept", payment_id=str(payment_id))
            raise InvalidState("payment left sweep-eligible concurrently", payment_id=str(payment_id))
        logger.info("Swept payment id=%s treasury_tx=%s", payment.id, payment.treasury_tx_hash)
        return payment

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def get(self, payment_id: uuid.UUID) -> Payment:
        return await self.repository.require(payment_id)

    async def list_for_admin(self, *, status: Optional[PaymentStatus] = None, limit: int = 50,
                             offset: int = 0) -> tuple[list[Payment], int]:
        if limit <= 0 or limit > 500:
            raise InvalidArgument("limit must be between 1 and 500")
        if offset < 0:
            raise InvalidArgument("offset cannot be negative")
        items = await self.repository.list_for_admin(status=status, limit=limit, offset=offset)
        total = await self.repository.count_all(status=status)
        return items, total

    async def list_unclaimed(self, *, limit: int = 50, offset: int = 0) -> tuple[list[Payment], int]:
        items = await self.repository.list_unclaimed_confirmed(limit=limit, offset=offset)
        total = await self.repository.count_unclaimed_confirmed()
        return items, total

    async def _notify(self, event_type: str, payment: Payment) -> None:
        try:
            await self.notifier.notify(event_type, payment)
        except Exception:
            logger.exception("Notification %s failed for payment=%s", event_type, payment.id)
