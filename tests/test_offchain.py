import uuid

import httpx
import pytest
import respx
from pydantic import SecretStr

from app.core.config import PayPalSettings
from app.core.errors import NotConfigured, ProviderUnavailable
from app.payments.enums import PaymentPurpose
from app.providers.base import IntentRequest, VerificationStatus, VerifyRequest
from app.providers.offchain import OffChainProvider

PAYPAL = "https://paypal.test"
ORDER_ID = "5O190127TN364715T"


def _provider(**config):
    fields = dict(base_url=PAYPAL, client_id="client", client_secret=SecretStr("shh"), payee_email="pay@example.com")
    fields.update(config)
    return OffChainProvider(PayPalSettings(**fields), http_client=httpx.AsyncClient())


def _order(payment_id, status="COMPLETED", capture_status="COMPLETED", value="5.00", currency="USD"):
    return {
        "id": ORDER_ID,
        "status": status,
        "payer": {"email_address": "buyer@example.com"},
        "purchase_units": [{
            "custom_id": str(payment_id),
            "payments": {"captures": [{
                "id": "CAPTURE-1",
                "status": capture_status,
                "amount": {"currency_code": currency, "value": value},
            }]},
        }],
    }


def _mock_paypal(order_response: httpx.Response):
    token = respx.post(f"{PAYPAL}/v1/oauth2/token").mock(
        return_value=httpx.Response(200, json={"access_token": "A21", "expires_in": 32400}))
    order = respx.get(f"{PAYPAL}/v2/checkout/orders/{ORDER_ID}").mock(return_value=order_response)
    return token, order


def _request(payment_id, amount_minor=500):
    return VerifyRequest(payment_id=payment_id, expected_amount_minor=amount_minor, provider_ref=ORDER_ID)


@respx.mock
async def test_completed_capture_is_verified():
    payment_id = uuid.uuid4()
    token, order = _mock_paypal(httpx.Response(200, json=_order(payment_id)))
    provider = _provider()

    result = await provider.verify(_request(payment_id))
    assert result.status == VerificationStatus.VERIFIED
    assert result.provider_ref == ORDER_ID
    assert result.tx_hash == "CAPTURE-1"
    assert result.verified_amount_minor == 500
    assert result.sender == "buyer@example.com"
    assert order.calls.last.request.headers["Authorization"] == "Bearer A21"

    # the access token is cached
    await provider.verify(_request(payment_id))
    assert token.call_count == 1


@respx.mock
async def test_order_for_another_payment_is_rejected():
    _mock_paypal(httpx.Response(200, json=_order(uuid.uuid4())))
    result = await _provider().verify(_request(uuid.uuid4()))
    assert result.status == VerificationStatus.REJECTED


@respx.mock
async def test_approved_order_is_pending():
    payment_id = uuid.uuid4()
    _mock_paypal(httpx.Response(200, json=_order(payment_id, status="APPROVED")))
    result = await _provider().verify(_request(payment_id))
    assert result.status == VerificationStatus.PENDING


@respx.mock
async def test_declined_capture_fails():
    payment_id = uuid.uuid4()
    _mock_paypal(httpx.Response(200, json=_order(payment_id, capture_status="DECLINED")))
    result = await _provider().verify(_request(payment_id))
    assert result.status == VerificationStatus.FAILED


@respx.mock
@pytest.mark.parametrize("value,currency", [("4.00", "USD"), ("5.00", "EUR")])
async def test_wrong_amount_or_currency_is_rejected(value, currency):
    payment_id = uuid.uuid4()
    _mock_paypal(httpx.Response(200, json=_order(payment_id, value=value, currency=currency)))
    result = await _provider().verify(_request(payment_id))
    assert result.status == VerificationStatus.REJECTED


@respx.mock
async def test_unknown_order_is_rejected():
    _mock_paypal(httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"}))
    result = await _provider().verify(_request(uuid.uuid4()))
    assert result.status == VerificationStatus.REJECTED


@respx.mock
async def test_token_failure_is_unavailable():
    respx.post(f"{PAYPAL}/v1/oauth2/token").mock(return_value=httpx.Response(500))
    with pytest.raises(ProviderUnavailable):
        await _provider().verify(_request(uuid.uuid4()))


@respx.mock
async def test_order_lookup_outage_is_unavailable():
    _mock_paypal(httpx.Response(503))
    with pytest.raises(ProviderUnavailable):
        await _provider().verify(_request(uuid.uuid4()))


async def test_missing_credentials_are_not_configured():
    provider = OffChainProvider(None, http_client=httpx.AsyncClient())
    with pytest.raises(NotConfigured):
        await provider.verify(_request(uuid.uuid4()))
    with pytest.raises(NotConfigured):
        await _provider(client_secret=SecretStr("")).create_intent(
            IntentRequest(payment_id=uuid.uuid4(), purpose=PaymentPurpose.PREMIUM, amount_minor=500))


async def test_intent_binds_order_to_payment():
    payment_id = uuid.uuid4()
    intent = await _provider().create_intent(
        IntentRequest(payment_id=payment_id, purpose=PaymentPurpose.PREMIUM, amount_minor=500))
    assert intent.destination == "pay@example.com"
    assert intent.memo == str(payment_id)
    assert intent.token == "USD"
