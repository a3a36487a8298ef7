"""
ManualProvider: anonymous payer sends tokens to a per-payment deposit address.

create_intent allocates the address (HD index). verify sums confirmed
transfers to that address; the provider reference is the transfer reference
(``<tx>:<event index>``) of the transfer that completes the expected amount, so
it is stable across re-verification and unique per payment.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

from app.allocator.allocator import AddressAllocator
from app.chains.amounts import base_units_to_minor, within_tolerance
from app.chains.base import ChainTransfer, ChainVerifier
from app.chains.confirmations import required_confirmations_for
from app.core.config import settings
from app.core.errors import InvalidArgument, NotConfigured
from app.payments.enums import ProviderKind
from app.providers.base import IntentRequest, PaymentIntent, VerificationResult, VerifyRequest

logger = logging.getLogger("settlement.providers.manual")

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _chronological(transfer: ChainTransfer):
    return (transfer.block_time or _EPOCH, transfer.tx_hash, transfer.event_index or 0)


class ManualProvider:
    kind = ProviderKind.MANUAL

    def __init__(self, allocator: AddressAllocator, verifiers: Mapping[str, ChainVerifier],
                 expiry_minutes: Optional[int] = None, tolerance_minor: Optional[int] = None):
        self.allocator = allocator
        self.verifiers = dict(verifiers)
        self.expiry = timedelta(minutes=expiry_minutes or settings.MANUAL_PAYMENT_EXPIRY_MINUTES)
        self.tolerance_minor = settings.AMOUNT_TOLERANCE_MINOR_UNITS if tolerance_minor is None else tolerance_minor

    def verifier_for(self, chain: Optional[str]) -> ChainVerifier:
        if not chain:
            raise InvalidArgument("manual payments require a chain")
        verifier = self.verifiers.get(chain)
        if verifier is None:
            raise NotConfigured(f"no verifier configured for chain {chain}", chain=chain)
        return verifier

    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        verifier = self.verifier_for(request.chain)
        allocated = await self.allocator.allocate(request.chain)
        return PaymentIntent(
            destination=allocated.address,
            amount_minor=request.amount_minor,
            expires_at=datetime.now(timezone.utc) + self.expiry,
            token=verifier.token,
            chain=request.chain,
            derivation_index=allocated.index,
        )

    async def verify(self, request: VerifyRequest) -> VerificationResult:
        if not request.destination:
            raise InvalidArgument("manual verification requires the deposit address")
        verifier = self.verifier_for(request.chain)
        transfers = sorted(await verifier.find_transfers_to(request.destination), key=_chronological)
        if not transfers:
            return VerificationResult.pending("no transfer to the deposit address yet")

        required = required_confirmations_for(request.chain)
        confirmed = [t for t in transfers if t.confirmations >= required]
        seen_minor = base_units_to_minor(sum(t.amount for t in transfers), verifier.decimals)

        running = 0
        for transfer in confirmed:
            running += transfer.amount
            received = base_units_to_minor(running, verifier.decimals)
            if within_tolerance(received, request.expected_amount_minor, self.tolerance_minor):
                logger.info("Deposit address %s received %s minor units ref=%s",
                            request.destination, received, transfer.reference)
                return VerificationResult.verified(
                    provider_ref=transfer.reference,
                    tx_hash=transfer.tx_hash,
                    amount_minor=base_units_to_minor(sum(t.amount for t in confirmed), verifier.decimals),
                    sender=transfer.sender,
                    block_time=transfer.block_time,
                    confirmations=transfer.confirmations,
                )

        if within_tolerance(seen_minor, request.expected_amount_minor, self.tolerance_minor):
            depth = min(t.confirmations for t in transfers)
            return VerificationResult.pending(f"awaiting confirmations ({depth}/{required})", confirmations=depth)
        return VerificationResult.rejected(
            f"partial payment: received {seen_minor} of {request.expected_amount_minor} minor units"
        )
