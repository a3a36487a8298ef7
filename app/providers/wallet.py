"""
WalletProvider: payer signs a token transfer to the fixed platform wallet and
submits the transaction hash.

Checks, in order: the transaction exists and succeeded, it pays the platform
wallet in the configured token, the memo binds it to this payment (memo-capable
chains only), the amount is within tolerance, and the transaction is deep
enough.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.chains.amounts import base_units_to_minor, within_tolerance
from app.chains.base import ChainTransaction, ChainVerifier
from app.chains.confirmations import required_confirmations_for
from app.core.config import settings
from app.core.errors import (
    AddressMismatch,
    AmountMismatch,
    InvalidArgument,
    MemoMismatch,
    NotConfigured,
    VerificationRejected,
)
from app.payments.enums import ProviderKind
from app.providers.base import IntentRequest, PaymentIntent, VerificationResult, VerifyRequest

logger = logging.getLogger("settlement.providers.wallet")

MEMO_PREFIX = "settle:"


def memo_for(payment_id) -> str:
    return f"{MEMO_PREFIX}{payment_id}"


class WalletProvider:
    kind = ProviderKind.WALLET

    def __init__(self, verifier: ChainVerifier, platform_wallet: str,
                 intent_ttl_minutes: Optional[int] = None, tolerance_minor: Optional[int] = None):
        self.verifier = verifier
        self.chain = verifier.chain
        self.platform_wallet = platform_wallet
        self.intent_ttl = timedelta(minutes=intent_ttl_minutes or settings.WALLET_INTENT_TTL_MINUTES)
        self.tolerance_minor = settings.AMOUNT_TOLERANCE_MINOR_UNITS if tolerance_minor is None else tolerance_minor

    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        if not self.platform_wallet:
            raise NotConfigured(f"no platform wallet configured for {self.chain}")
        return PaymentIntent(
            destination=self.platform_wallet,
            amount_minor=request.amount_minor,
            expires_at=datetime.now(timezone.utc) + self.intent_ttl,
            token=self.verifier.token,
            chain=self.chain,
            memo=memo_for(request.payment_id) if self.verifier.supports_memo else None,
        )

    def _check(self, request: VerifyRequest, tx: ChainTransaction) -> int:
        """Return the received amount in minor units or raise VerificationRejected."""
        transfers = tx.transfers_to(self.platform_wallet)
        if not transfers:
            raise AddressMismatch("transaction does not pay the platform wallet in the expected token")
        if self.verifier.supports_memo:
            expected = memo_for(request.payment_id)
            if not tx.memo:
                raise MemoMismatch("transaction is missing the payment reference memo")
            if tx.memo.strip() != expected:
                raise MemoMismatch("transaction memo does not reference this payment")
        received = base_units_to_minor(sum(t.amount for t in transfers), self.verifier.decimals)
        if not within_tolerance(received, request.expected_amount_minor, self.tolerance_minor):
            raise AmountMismatch(
                f"received {received} minor units, expected {request.expected_amount_minor}",
                received=received,
            )
        return received

    async def verify(self, request: VerifyRequest) -> VerificationResult:
        tx_hash = (request.provider_ref or "").strip()
        if not tx_hash:
            raise InvalidArgument("transaction hash is required")
        tx = await self.verifier.get_transaction(tx_hash)
        if tx is None:
            return VerificationResult.pending("transaction not found yet", provider_ref=tx_hash)
        if not tx.succeeded:
            logger.warning("Transaction %s failed on-chain chain=%s", tx_hash, self.chain)
            return VerificationResult.failed("transaction failed on-chain", provider_ref=tx_hash)
        try:
            received = self._check(request, tx)
        except VerificationRejected as exc:
            logger.warning("Rejected %s for payment=%s: %s", tx_hash, request.payment_id, exc.message)
            return VerificationResult.rejected(exc.message, provider_ref=tx_hash)
        required = required_confirmations_for(self.chain)
        if tx.confirmations < required:
            return VerificationResult.pending(
                f"{tx.confirmations}/{required} confirmations", provider_ref=tx_hash,
                confirmations=tx.confirmations,
            )
        sender = next((t.sender for t in tx.transfers_to(self.platform_wallet) if t.sender), None)
        logger.info("Verified %s: %s minor units chain=%s", tx_hash, received, self.chain)
        return VerificationResult.verified(
            provider_ref=tx.tx_hash,
            amount_minor=received,
            sender=sender,
            block_time=tx.block_time,
            confirmations=tx.confirmations,
        )
