"""
Async SQLAlchemy models for the settlement tables.

No ORM-side business logic: payment transitions live in app.payments.state_machine
and are persisted by the repository with conditional updates. The database is the
source of truth; the partial unique index on payments.provider_ref is the final
guard against double credit.
"""
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.orm import declarative_base

from app.payments.enums import (
    InvoiceState,
    PaymentPurpose,
    PaymentStatus,
    ProviderKind,
    RefundState,
)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(sa.types.TypeDecorator):
    """Timezone-aware datetime stored as UTC; naive values read back are tagged UTC."""

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum(enum_cls):
    return sa.Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# payments
class Payment(Base):
    __tablename__ = "payments"
    id = sa.Column(sa.Uuid(), primary_key=True, default=uuid.uuid4)
    user_id = sa.Column(sa.Uuid(), nullable=True)
    subject_id = sa.Column(sa.Uuid(), nullable=True)
    # no FK: reconciliation reports payments whose invoice is missing
    invoice_id = sa.Column(sa.Uuid(), nullable=True)
    purpose = sa.Column(_enum(PaymentPurpose), nullable=False)
    amount_minor = sa.Column(sa.BigInteger(), nullable=False)
    support_amount_minor = sa.Column(sa.BigInteger(), nullable=True)
    provider = sa.Column(_enum(ProviderKind), nullable=False)
    chain = sa.Column(sa.String(32), nullable=True)
    provider_ref = sa.Column(sa.String(255), nullable=True)
    submitted_ref = sa.Column(sa.String(255), nullable=True)
    # amount the provider reported as delivered, in minor units
    received_amount_minor = sa.Column(sa.BigInteger(), nullable=True)
    status = sa.Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    created_at = sa.Column(UTCDateTime(), nullable=False, default=utcnow)
    confirmed_at = sa.Column(UTCDateTime(), nullable=True)
    claimed_at = sa.Column(UTCDateTime(), nullable=True)
    # first time the confirmation worker flagged the payment as stalled
    stalled_at = sa.Column(UTCDateTime(), nullable=True)
    sweep_eligible_at = sa.Column(UTCDateTime(), nullable=True)
    sweep_started_at = sa.Column(UTCDateTime(), nullable=True)
    swept_at = sa.Column(UTCDateTime(), nullable=True)
    treasury_tx_hash = sa.Column(sa.String(255), nullable=True)
    # manual (HD address) payments
    destination_address = sa.Column(sa.String(128), nullable=True)
    derivation_index = sa.Column(sa.BigInteger(), nullable=True)
    expires_at = sa.Column(UTCDateTime(), nullable=True)
    buyer_contact = sa.Column(sa.String(320), nullable=True)

    __table_args__ = (
        sa.Index(
            "ux_payments_provider_ref", "provider_ref", unique=True,
            postgresql_where=sa.text("provider_ref IS NOT NULL"),
            sqlite_where=sa.text("provider_ref IS NOT NULL"),
        ),
        sa.Index("idx_payments_status_created_at", "status", "created_at"),
        sa.Index("idx_payments_destination_address", "destination_address"),
        sa.Index("idx_payments_user", "user_id"),
        sa.Index("idx_payments_invoice", "invoice_id"),
        sa.CheckConstraint("amount_minor > 0", name="ck_payments_amount_positive"),
    )

    @property
    def is_manual(self) -> bool:
        return self.provider == ProviderKind.MANUAL

    def __repr__(self) -> str:
        return f"<Payment id={self.id} status={getattr(self.status, 'value', self.status)} provider={getattr(self.provider, 'value', self.provider)}>"


# derivation_counters: one row per HD-enabled chain
class DerivationCounter(Base):
    __tablename__ = "derivation_counters"
    chain = sa.Column(sa.String(32), primary_key=True)
    next_index = sa.Column(sa.BigInteger(), nullable=False, default=0)
    updated_at = sa.Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)


# invoices
class Invoice(Base):
    __tablename__ = "invoices"
    id = sa.Column(sa.Uuid(), primary_key=True, default=uuid.uuid4)
    invoice_number = sa.Column(sa.String(50), nullable=True)
    user_id = sa.Column(sa.Uuid(), nullable=True)
    subject_id = sa.Column(sa.Uuid(), nullable=True)
    amount_minor = sa.Column(sa.BigInteger(), nullable=False)
    amount_minor_at_settlement = sa.Column(sa.BigInteger(), nullable=True)
    state = sa.Column(_enum(InvoiceState), nullable=False, default=InvoiceState.CREATED)
    issued_at = sa.Column(UTCDateTime(), nullable=True)
    expires_at = sa.Column(UTCDateTime(), nullable=False)
    created_at = sa.Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = sa.Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        sa.Index("idx_invoices_state_expires_at", "state", "expires_at"),
    )


# refund_requests
class RefundRequest(Base):
    __tablename__ = "refund_requests"
    id = sa.Column(sa.Uuid(), primary_key=True, default=uuid.uuid4)
    payment_id = sa.Column(sa.Uuid(), nullable=False)
    amount_minor = sa.Column(sa.BigInteger(), nullable=False)
    state = sa.Column(_enum(RefundState), nullable=False, default=RefundState.REQUESTED)
    reason = sa.Column(sa.Text(), nullable=True)
    created_at = sa.Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = sa.Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        sa.Index("idx_refund_requests_state", "state"),
    )


# webhook_queue (notification outbox)
class WebhookQueue(Base):
    __tablename__ = "webhook_queue"
    id = sa.Column(sa.Uuid(), primary_key=True, default=uuid.uuid4)
    payment_id = sa.Column(sa.Uuid(), nullable=True)
    event_type = sa.Column(sa.String(64), nullable=False)
    payload = sa.Column(sa.JSON(), nullable=False)
    headers = sa.Column(sa.JSON(), nullable=True)
    attempts = sa.Column(sa.Integer(), nullable=False, default=0)
    last_error = sa.Column(sa.Text(), nullable=True)
    status = sa.Column(sa.String(32), nullable=False, default="pending")
    idempotency_key = sa.Column(sa.String(128), nullable=True)
    created_at = sa.Column(UTCDateTime(), nullable=False, default=utcnow)
    next_attempt_at = sa.Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        sa.Index("idx_webhook_queue_status", "status"),
        sa.Index("ux_webhook_queue_idempotency_key", "idempotency_key", unique=True),
    )


# audit_logs (append-only)
class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = sa.Column(sa.Uuid(), primary_key=True, default=uuid.uuid4)
    actor = sa.Column(sa.String(64), nullable=True)
    action = sa.Column(sa.String(64), nullable=False)
    payment_id = sa.Column(sa.Uuid(), nullable=True)
    details = sa.Column(sa.JSON(), nullable=True)
    created_at = sa.Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        sa.Index("idx_audit_logs_created_at", "created_at"),
        sa.Index("idx_audit_logs_payment", "payment_id"),
    )
