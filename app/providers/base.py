"""
Provider abstraction: one interface over the three settlement rails.

A provider answers two questions and never writes to storage:
- create_intent: where and how much should the payer send?
- verify: does the external system prove this reference settles the payment?
"""
import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from app.payments.enums import PaymentPurpose, ProviderKind


@dataclass(frozen=True)
class IntentRequest:
    payment_id: uuid.UUID
    purpose: PaymentPurpose
    amount_minor: int
    chain: Optional[str] = None
    user_id: Optional[uuid.UUID] = None
    subject_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class PaymentIntent:
    destination: str
    amount_minor: int
    expires_at: datetime
    token: Optional[str] = None
    chain: Optional[str] = None
    memo: Optional[str] = None
    derivation_index: Optional[int] = None


@dataclass(frozen=True)
class VerifyRequest:
    payment_id: uuid.UUID
    expected_amount_minor: int
    provider_ref: Optional[str] = None
    chain: Optional[str] = None
    # manual payments: the derived deposit address
    destination: Optional[str] = None


class VerificationStatus(str, enum.Enum):
    VERIFIED = "verified"
    # seen but not final, or not seen yet
    PENDING = "pending"
    # amount/address/memo mismatch; the payment stays pending
    REJECTED = "rejected"
    # definitively failed on the external system
    FAILED = "failed"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    provider_ref: Optional[str] = None
    tx_hash: Optional[str] = None
    sender: Optional[str] = None
    block_time: Optional[datetime] = None
    verified_amount_minor: Optional[int] = None
    confirmations: Optional[int] = None
    reason: Optional[str] = None

    @property
    def is_verified(self) -> bool:
        return self.status == VerificationStatus.VERIFIED

    @classmethod
    def verified(cls, *, provider_ref: str, amount_minor: int, tx_hash: Optional[str] = None,
                 sender: Optional[str] = None, block_time: Optional[datetime] = None,
                 confirmations: Optional[int] = None) -> "VerificationResult":
        return cls(
            status=VerificationStatus.VERIFIED,
            provider_ref=provider_ref,
            tx_hash=tx_hash or provider_ref,
            sender=sender,
            block_time=block_time,
            verified_amount_minor=amount_minor,
            confirmations=confirmations,
        )

    @classmethod
    def pending(cls, reason: str, *, provider_ref: Optional[str] = None,
                confirmations: Optional[int] = None) -> "VerificationResult":
        return cls(status=VerificationStatus.PENDING, reason=reason, provider_ref=provider_ref,
                   confirmations=confirmations)

    @classmethod
    def rejected(cls, reason: str, *, provider_ref: Optional[str] = None) -> "VerificationResult":
        return cls(status=VerificationStatus.REJECTED, reason=reason, provider_ref=provider_ref)

    @classmethod
    def failed(cls, reason: str, *, provider_ref: Optional[str] = None) -> "VerificationResult":
        return cls(status=VerificationStatus.FAILED, reason=reason, provider_ref=provider_ref)


class PaymentProvider(Protocol):
    kind: ProviderKind

    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        ...

    async def verify(self, request: VerifyRequest) -> VerificationResult:
        """
        Raise ProviderUnavailable when the external system cannot be reached;
        every other outcome is a VerificationResult.
        """
        ...
