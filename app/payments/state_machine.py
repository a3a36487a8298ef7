"""
Payment state machine.

    pending -> confirmed | failed | expired
    confirmed -> sweep_eligible -> swept

Claiming is an orthogonal, one-way flag on settled anonymous payments.

Every operation checks the payment's current in-memory state and returns a
Transition describing the write. Nothing here touches the database: the
repository persists a Transition with a conditional update keyed on
``transition.source`` (plus ``transition.guards``), so a caller holding a stale
object loses the race with a no-op instead of corrupting the row.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from app.core.errors import AlreadyClaimed, AlreadySwept, InvalidArgument, InvalidState
from app.db.models import Payment
from app.payments.enums import (
    SETTLED_STATUSES,
    SUBJECT_REQUIRED_PURPOSES,
    PaymentPurpose,
    PaymentStatus,
    ProviderKind,
)

ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.CONFIRMED, PaymentStatus.FAILED, PaymentStatus.EXPIRED}),
    PaymentStatus.CONFIRMED: frozenset({PaymentStatus.SWEEP_ELIGIBLE}),
    PaymentStatus.SWEEP_ELIGIBLE: frozenset({PaymentStatus.SWEPT}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.SWEPT: frozenset(),
}


@dataclass(frozen=True)
class Transition:
    name: str
    payment_id: uuid.UUID
    source: frozenset
    # None leaves the status column untouched
    target: Optional[PaymentStatus]
    changes: dict = field(default_factory=dict)
    # column -> required value (None means IS NULL) checked on write
    guards: dict = field(default_factory=dict)


def _require_status(payment: Payment, expected: PaymentStatus, operation: str) -> None:
    if payment.status != expected:
        raise InvalidState(
            f"cannot {operation} payment in status {PaymentStatus(payment.status).value}",
            payment_id=str(payment.id),
        )


def _check_target(source: PaymentStatus, target: PaymentStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[source]:
        raise InvalidState(f"illegal transition {source.value} -> {target.value}")


def validate_new_payment(purpose: PaymentPurpose, amount_minor: int, subject_id: Optional[uuid.UUID],
                         support_amount_minor: Optional[int]) -> None:
    if not isinstance(amount_minor, int) or isinstance(amount_minor, bool) or amount_minor <= 0:
        raise InvalidArgument("amount must be a positive integer of minor units")
    if purpose in SUBJECT_REQUIRED_PURPOSES and subject_id is None:
        raise InvalidArgument(f"purpose {purpose.value} requires a subject id")
    if support_amount_minor is not None and support_amount_minor < 0:
        raise InvalidArgument("support amount cannot be negative")


def new_pending(
    *,
    user_id: Optional[uuid.UUID],
    purpose: PaymentPurpose,
    amount_minor: int,
    provider: ProviderKind,
    chain: Optional[str] = None,
    subject_id: Optional[uuid.UUID] = None,
    support_amount_minor: Optional[int] = None,
    invoice_id: Optional[uuid.UUID] = None,
    payment_id: Optional[uuid.UUID] = None,
    now: datetime,
) -> Payment:
    """CreatePending: a wallet or off-chain payment with no provider reference yet."""
    validate_new_payment(purpose, amount_minor, subject_id, support_amount_minor)
    if provider == ProviderKind.MANUAL:
        raise InvalidArgument("manual payments are created with new_pending_manual")
    return Payment(
        id=payment_id or uuid.uuid4(),
        user_id=user_id,
        subject_id=subject_id,
        invoice_id=invoice_id,
        purpose=purpose,
        amount_minor=amount_minor,
        support_amount_minor=support_amount_minor,
        provider=provider,
        chain=chain,
        status=PaymentStatus.PENDING,
        created_at=now,
    )


def new_pending_manual(
    *,
    purpose: PaymentPurpose,
    amount_minor: int,
    chain: str,
    destination_address: str,
    derivation_index: int,
    expires_at: datetime,
    buyer_contact: str,
    subject_id: Optional[uuid.UUID] = None,
    support_amount_minor: Optional[int] = None,
    payment_id: Optional[uuid.UUID] = None,
    now: datetime,
) -> Payment:
    """CreatePendingManual: an anonymous payment to a per-payment HD address."""
    validate_new_payment(purpose, amount_minor, subject_id, support_amount_minor)
    if not destination_address or not destination_address.strip():
        raise InvalidArgument("manual payment requires a destination address")
    if not buyer_contact or not buyer_contact.strip():
        raise InvalidArgument("manual payment requires a buyer contact address")
    if derivation_index is None or derivation_index < 0:
        raise InvalidArgument("manual payment requires a non-negative derivation index")
    if expires_at <= now:
        raise InvalidArgument("manual payment expiry must be in the future")
    return Payment(
        id=payment_id or uuid.uuid4(),
        user_id=None,
        subject_id=subject_id,
        purpose=purpose,
        amount_minor=amount_minor,
        support_amount_minor=support_amount_minor,
        provider=ProviderKind.MANUAL,
        chain=chain,
        status=PaymentStatus.PENDING,
        created_at=now,
        destination_address=destination_address.strip(),
        derivation_index=derivation_index,
        expires_at=expires_at,
        buyer_contact=buyer_contact.strip(),
    )


def confirm(payment: Payment, provider_ref: str, now: datetime,
            received_amount_minor: Optional[int] = None) -> Transition:
    if not provider_ref or not provider_ref.strip():
        raise InvalidArgument("provider reference is required to confirm")
    if received_amount_minor is not None and received_amount_minor < 0:
        raise InvalidArgument("received amount cannot be negative")
    _require_status(payment, PaymentStatus.PENDING, "confirm")
    _check_target(PaymentStatus.PENDING, PaymentStatus.CONFIRMED)
    changes = {"provider_ref": provider_ref.strip(), "confirmed_at": now}
    if received_amount_minor is not None:
        changes["received_amount_minor"] = received_amount_minor
    return Transition(
        name="confirm",
        payment_id=payment.id,
        source=frozenset({PaymentStatus.PENDING}),
        target=PaymentStatus.CONFIRMED,
        changes=changes,
    )


def fail(payment: Payment) -> Transition:
    _require_status(payment, PaymentStatus.PENDING, "fail")
    return Transition(
        name="fail",
        payment_id=payment.id,
        source=frozenset({PaymentStatus.PENDING}),
        target=PaymentStatus.FAILED,
    )


def expire(payment: Payment) -> Transition:
    _require_status(payment, PaymentStatus.PENDING, "expire")
    return Transition(
        name="expire",
        payment_id=payment.id,
        source=frozenset({PaymentStatus.PENDING}),
        target=PaymentStatus.EXPIRED,
    )


def claim(payment: Payment, user_id: uuid.UUID, now: datetime) -> Transition:
    """Bind a settled anonymous payment to ``user_id``. Status does not change."""
    if user_id is None:
        raise InvalidArgument("claim requires a user id")
    if payment.claimed_at is not None:
        raise AlreadyClaimed("payment already claimed", payment_id=str(payment.id))
    if payment.status not in SETTLED_STATUSES:
        raise InvalidState(
            f"cannot claim payment in status {PaymentStatus(payment.status).value}",
            payment_id=str(payment.id),
        )
    if payment.user_id is not None:
        raise InvalidState("payment was not created anonymously", payment_id=str(payment.id))
    return Transition(
        name="claim",
        payment_id=payment.id,
        source=SETTLED_STATUSES,
        target=None,
        changes={"user_id": user_id, "claimed_at": now},
        guards={"user_id": None, "claimed_at": None},
    )


def mark_sweep_eligible(payment: Payment, now: datetime) -> Transition:
    _require_status(payment, PaymentStatus.CONFIRMED, "mark sweep-eligible")
    if payment.confirmed_at is None:
        raise InvalidState("confirmed payment has no confirmation timestamp", payment_id=str(payment.id))
    return Transition(
        name="mark_sweep_eligible",
        payment_id=payment.id,
        source=frozenset({PaymentStatus.CONFIRMED}),
        target=PaymentStatus.SWEEP_ELIGIBLE,
        changes={"sweep_eligible_at": now},
    )


def sweep(payment: Payment, treasury_tx_hash: str, now: datetime) -> Transition:
    if payment.treasury_tx_hash:
        raise AlreadySwept("payment already swept", payment_id=str(payment.id))
    if not treasury_tx_hash or not treasury_tx_hash.strip():
        raise InvalidArgument("treasury transaction hash is required")
    _require_status(payment, PaymentStatus.SWEEP_ELIGIBLE, "sweep")
    return Transition(
        name="sweep",
        payment_id=payment.id,
        source=frozenset({PaymentStatus.SWEEP_ELIGIBLE}),
        target=PaymentStatus.SWEPT,
        changes={"treasury_tx_hash": treasury_tx_hash.strip(), "swept_at": now},
        guards={"treasury_tx_hash": None},
    )


def apply(payment: Payment, transition: Transition) -> Payment:
    """Mirror a persisted transition onto the in-memory object."""
    if transition.target is not None:
        payment.status = transition.target
    for column, value in transition.changes.items():
        setattr(payment, column, value)
    return payment


def values_for(transition: Transition) -> dict[str, Any]:
    values = dict(transition.changes)
    if transition.target is not None:
        values["status"] = transition.target
    return values
