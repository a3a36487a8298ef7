"""
Error taxonomy for the settlement core.

Request-path callers see these directly. Workers classify them per item:
ProviderUnavailable is transient (retried next cycle), the idempotency guards
(AlreadyClaimed, AlreadySwept) are success-equivalent, everything else is
permanent for the current attempt.
"""


class SettlementError(Exception):
    code = "settlement_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context


class InvalidArgument(SettlementError):
    code = "invalid_argument"


class InvalidState(SettlementError):
    code = "invalid_state"


class NotFound(SettlementError):
    code = "not_found"


class AlreadyClaimed(SettlementError):
    code = "already_claimed"


class AlreadySwept(SettlementError):
    code = "already_swept"


class DuplicateProviderReference(SettlementError):
    code = "duplicate_provider_reference"


class NotConfigured(SettlementError):
    code = "not_configured"


class ProviderUnavailable(SettlementError):
    code = "provider_unavailable"


class SubmissionUncertain(ProviderUnavailable):
    """A transaction may or may not have been broadcast."""

    code = "submission_uncertain"


class VerificationRejected(SettlementError):
    code = "verification_rejected"


class AmountMismatch(VerificationRejected):
    code = "amount_mismatch"


class AddressMismatch(VerificationRejected):
    code = "address_mismatch"


class MemoMismatch(VerificationRejected):
    code = "memo_mismatch"
