import enum


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"
    SWEEP_ELIGIBLE = "sweep_eligible"
    SWEPT = "swept"


class PaymentPurpose(str, enum.Enum):
    PLATFORM_SUPPORT = "platform_support"
    SUBJECT_SUPPORT = "subject_support"
    PURCHASE = "purchase"
    PREMIUM = "premium"


class ProviderKind(str, enum.Enum):
    WALLET = "wallet"
    MANUAL = "manual"
    OFFCHAIN = "offchain"


class InvoiceState(str, enum.Enum):
    CREATED = "CREATED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    ISSUED = "ISSUED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class RefundState(str, enum.Enum):
    REQUESTED = "REQUESTED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Purposes that must name the entity being supported
SUBJECT_REQUIRED_PURPOSES = frozenset({PaymentPurpose.SUBJECT_SUPPORT})

# A payment in one of these states has been paid for
SETTLED_STATUSES = frozenset({
    PaymentStatus.CONFIRMED,
    PaymentStatus.SWEEP_ELIGIBLE,
    PaymentStatus.SWEPT,
})
