import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from app.db.models import Payment
from app.payments.enums import PaymentPurpose, PaymentStatus, ProviderKind
from app.providers.base import PaymentIntent, VerificationResult


class IntentCreateReq(BaseModel):
    purpose: PaymentPurpose
    amount_minor: int
    provider: ProviderKind = ProviderKind.WALLET
    chain: Optional[str] = None
    subject_id: Optional[uuid.UUID] = None
    support_amount_minor: Optional[int] = None
    invoice_id: Optional[uuid.UUID] = None


class ManualIntentCreateReq(BaseModel):
    purpose: PaymentPurpose
    amount_minor: int
    chain: str
    buyer_contact: str
    subject_id: Optional[uuid.UUID] = None
    support_amount_minor: Optional[int] = None


class IntentResp(BaseModel):
    payment_id: uuid.UUID
    status: PaymentStatus
    destination: str
    amount_minor: int
    expires_at: datetime
    token: Optional[str] = None
    chain: Optional[str] = None
    memo: Optional[str] = None
    derivation_index: Optional[int] = None

    @classmethod
    def build(cls, payment: Payment, intent: PaymentIntent) -> "IntentResp":
        return cls(
            payment_id=payment.id,
            status=payment.status,
            destination=intent.destination,
            amount_minor=intent.amount_minor,
            expires_at=intent.expires_at,
            token=intent.token,
            chain=intent.chain,
            memo=intent.memo,
            derivation_index=intent.derivation_index,
        )


class VerifyReq(BaseModel):
    provider_ref: str


class AssignReq(BaseModel):
    user_id: uuid.UUID
    reason: str


class PaymentResp(BaseModel):
    id: uuid.UUID
    status: PaymentStatus
    purpose: PaymentPurpose
    provider: ProviderKind
    chain: Optional[str] = None
    amount_minor: int
    support_amount_minor: Optional[int] = None
    user_id: Optional[uuid.UUID] = None
    subject_id: Optional[uuid.UUID] = None
    provider_ref: Optional[str] = None
    received_amount_minor: Optional[int] = None
    destination_address: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    swept_at: Optional[datetime] = None

    @classmethod
    def build(cls, p: Payment) -> "PaymentResp":
        return cls(
            id=p.id, status=p.status, purpose=p.purpose, provider=p.provider, chain=p.chain,
            amount_minor=p.amount_minor, support_amount_minor=p.support_amount_minor,
            user_id=p.user_id, subject_id=p.subject_id, provider_ref=p.provider_ref,
            received_amount_minor=p.received_amount_minor,
            destination_address=p.destination_address, created_at=p.created_at,
            confirmed_at=p.confirmed_at, claimed_at=p.claimed_at, expires_at=p.expires_at,
            swept_at=p.swept_at,
        )


class VerificationResp(BaseModel):
    status: str
    reason: Optional[str] = None
    confirmations: Optional[int] = None
    verified_amount_minor: Optional[int] = None

    @classmethod
    def build(cls, result: VerificationResult) -> "VerificationResp":
        return cls(
            status=result.status.value,
            reason=result.reason,
            confirmations=result.confirmations,
            verified_amount_minor=result.verified_amount_minor,
        )


class SubmitResp(BaseModel):
    payment: PaymentResp
    verification: VerificationResp


class PaymentPage(BaseModel):
    items: list[PaymentResp]
    total: int
    limit: int
    offset: int
