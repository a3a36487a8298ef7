"""
OffChainProvider: PayPal Orders v2.

The payer approves an order created by the client SDK with ``custom_id`` set to
the payment id, then submits the order id. Verification fetches the order with
an OAuth client-credentials token and checks status, custom_id, currency and
captured amount. The order id becomes the provider reference.
"""
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from app.chains.amounts import decimal_to_minor, within_tolerance
from app.core.config import PayPalSettings, settings
from app.core.errors import InvalidArgument, NotConfigured, ProviderUnavailable
from app.payments.enums import ProviderKind
from app.providers.base import IntentRequest, PaymentIntent, VerificationResult, VerifyRequest

logger = logging.getLogger("settlement.providers.offchain")

ACCOUNTING_CURRENCY = "USD"
PENDING_ORDER_STATES = frozenset({"CREATED", "SAVED", "APPROVED", "PAYER_ACTION_REQUIRED"})
FAILED_CAPTURE_STATES = frozenset({"DECLINED", "FAILED"})


class OffChainProvider:
    kind = ProviderKind.OFFCHAIN

    def __init__(self, config: Optional[PayPalSettings], http_client: httpx.AsyncClient | None = None,
                 intent_ttl_minutes: Optional[int] = None, tolerance_minor: Optional[int] = None):
        self.config = config
        self.http = http_client or httpx.AsyncClient(timeout=settings.RPC_TIMEOUT_SECONDS)
        self.intent_ttl = timedelta(minutes=intent_ttl_minutes or settings.WALLET_INTENT_TTL_MINUTES)
        self.tolerance_minor = settings.AMOUNT_TOLERANCE_MINOR_UNITS if tolerance_minor is None else tolerance_minor
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _require_config(self) -> PayPalSettings:
        if self.config is None or not self.config.client_id or not self.config.client_secret.get_secret_value():
            raise NotConfigured("PayPal credentials are not configured")
        return self.config

    async def close(self):
        await self.http.aclose()

    async def _access_token(self) -> str:
        config = self._require_config()
        if self._token and time.time() < self._token_expires_at:
            return self._token
        try:
            r = await self.http.post(
                f"{config.base_url}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(config.client_id, config.client_secret.get_secret_value()),
            )
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as exc:
            logger.warning("PayPal token request failed: %s", exc)
            raise ProviderUnavailable("paypal token request failed") from exc
        self._token = data["access_token"]
        # refresh a minute early
        self._token_expires_at = time.time() + int(data.get("expires_in", 300)) - 60
        return self._token

    async def _get_order(self, order_id: str) -> Optional[dict]:
        config = self._require_config()
        token = await self._access_token()
        try:
            r = await self.http.get(
                f"{config.base_url}/v2/checkout/orders/{order_id}",
                headers={"Authorization": f"Bearer {token}"},
            )
            if r.status_code == 404:
                return None
            r.raise_for_status()
            return r.json()
        except httpx.HTTPError as exc:
            logger.warning("PayPal order lookup failed order=%s: %s", order_id, exc)
            raise ProviderUnavailable("paypal order lookup failed", order_id=order_id) from exc

    async def create_intent(self, request: IntentRequest) -> PaymentIntent:
        config = self._require_config()
        return PaymentIntent(
            destination=config.payee_email,
            amount_minor=request.amount_minor,
            expires_at=datetime.now(timezone.utc) + self.intent_ttl,
            token=ACCOUNTING_CURRENCY,
            # passed to PayPal as purchase_units[0].custom_id
            memo=str(request.payment_id),
        )

    async def verify(self, request: VerifyRequest) -> VerificationResult:
        order_id = (request.provider_ref or "").strip()
        if not order_id:
            raise InvalidArgument("order id is required")
        order = await self._get_order(order_id)
        if order is None:
            return VerificationResult.rejected("order not found", provider_ref=order_id)

        status = order.get("status")
        if status == "VOIDED":
            return VerificationResult.failed("order was voided", provider_ref=order_id)
        if status in PENDING_ORDER_STATES:
            return VerificationResult.pending(f"order status {status}", provider_ref=order_id)
        if status != "COMPLETED":
            return VerificationResult.rejected(f"unexpected order status {status}", provider_ref=order_id)

        units = order.get("purchase_units") or []
        if not units:
            return VerificationResult.rejected("order has no purchase units", provider_ref=order_id)
        unit = units[0]
        if unit.get("custom_id") != str(request.payment_id):
            return VerificationResult.rejected("order is bound to a different payment", provider_ref=order_id)

        captures = (unit.get("payments") or {}).get("captures") or []
        if not captures:
            return VerificationResult.pending("order has no capture yet", provider_ref=order_id)
        capture = captures[0]
        capture_status = capture.get("status")
        if capture_status in FAILED_CAPTURE_STATES:
            return VerificationResult.failed(f"capture {capture_status.lower()}", provider_ref=order_id)
        if capture_status != "COMPLETED":
            return VerificationResult.pending(f"capture status {capture_status}", provider_ref=order_id)

        amount = capture.get("amount") or {}
        if amount.get("currency_code") != ACCOUNTING_CURRENCY:
            return VerificationResult.rejected("capture currency mismatch", provider_ref=order_id)
        received = decimal_to_minor(amount.get("value", "0"))
        if not within_tolerance(received, request.expected_amount_minor, self.tolerance_minor):
            return VerificationResult.rejected(
                f"captured {received} minor units, expected {request.expected_amount_minor}",
                provider_ref=order_id,
            )
        payer = (order.get("payer") or {}).get("email_address")
        logger.info("Verified PayPal order %s: %s minor units", order_id, received)
        return VerificationResult.verified(
            provider_ref=order_id,
            tx_hash=capture.get("id"),
            amount_minor=received,
            sender=payer,
        )
