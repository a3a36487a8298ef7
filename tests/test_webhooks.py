import json
import time
import uuid
from datetime import timedelta

import httpx
import pytest
import respx

from app.db.models import WebhookQueue, utcnow
from app.notifications.worker import WebhookWorker, encode_payload
from app.utils.webhook_signing import sign_webhook, verify_webhook_signature

HOOK_URL = "https://merchant.test/hooks/settlement"
SECRET = "whsec_test"


def test_sign_and_verify_webhook():
    payload = b'{"event":"payment.confirmed"}'
    timestamp = str(int(time.time()))
    signature = sign_webhook(payload, timestamp, SECRET)

    assert signature.startswith("sha256=")
    assert verify_webhook_signature(payload, timestamp, SECRET, signature)
    assert verify_webhook_signature(payload.decode(), timestamp, SECRET, signature)
    assert not verify_webhook_signature(payload + b" ", timestamp, SECRET, signature)
    assert not verify_webhook_signature(payload, timestamp, "other", signature)
    assert not verify_webhook_signature(payload, timestamp, SECRET, signature.replace("sha256=", ""))


def test_stale_timestamp_is_rejected():
    payload = b"{}"
    sent_at = 1_700_000_000
    signature = sign_webhook(payload, str(sent_at), SECRET)

    assert verify_webhook_signature(payload, str(sent_at), SECRET, signature, now=sent_at + 60)
    assert not verify_webhook_signature(payload, str(sent_at), SECRET, signature, now=sent_at + 301)
    assert verify_webhook_signature(payload, str(sent_at), SECRET, signature, tolerance_seconds=None,
                                    now=sent_at + 10_000)
    assert not verify_webhook_signature(payload, "not-a-number", SECRET, signature)


async def _queue(session_factory, url=HOOK_URL, event="payment.confirmed"):
    row = WebhookQueue(
        id=uuid.uuid4(),
        payment_id=uuid.uuid4(),
        event_type=event,
        payload={"event": event, "amount_minor": 500},
        headers={"webhook_url": url} if url else {},
        attempts=0,
        status="pending",
        idempotency_key=f"{event}:{uuid.uuid4()}",
        created_at=utcnow(),
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(row)
    return row.id


async def _load(session_factory, row_id):
    async with session_factory() as session:
        return await session.get(WebhookQueue, row_id)


@respx.mock
async def test_worker_delivers_signed_payload(session_factory):
    route = respx.post(HOOK_URL).mock(return_value=httpx.Response(204))
    row_id = await _queue(session_factory)

    delivered = await WebhookWorker(session_factory, SECRET, http_client=httpx.AsyncClient()).run_once()
    assert delivered == 1

    request = route.calls.last.request
    assert json.loads(request.content) == {"amount_minor": 500, "event": "payment.confirmed"}
    assert request.headers["X-Settlement-Event"] == "payment.confirmed"
    assert request.headers["Idempotency-Key"].startswith("payment.confirmed:")
    assert verify_webhook_signature(request.content, request.headers["X-Settlement-Timestamp"], SECRET,
                                    request.headers["X-Settlement-Signature"])

    row = await _load(session_factory, row_id)
    assert row.status == "success"
    assert row.attempts == 1


@respx.mock
async def test_failed_delivery_backs_off_then_gives_up(session_factory):
    respx.post(HOOK_URL).mock(return_value=httpx.Response(500))
    row_id = await _queue(session_factory)
    worker = WebhookWorker(session_factory, SECRET, http_client=httpx.AsyncClient(), max_attempts=2, backoff_base=5)
    now = utcnow()

    assert await worker.run_once(now=now) == 0
    row = await _load(session_factory, row_id)
    assert (row.status, row.attempts, row.last_error) == ("pending", 1, "status_500")
    assert row.next_attempt_at == now + timedelta(seconds=5)

    # not due yet
    await worker.run_once(now=now + timedelta(seconds=1))
    assert (await _load(session_factory, row_id)).attempts == 1

    await worker.run_once(now=now + timedelta(seconds=6))
    row = await _load(session_factory, row_id)
    assert (row.status, row.attempts) == ("failed", 2)


async def test_row_without_url_fails_permanently(session_factory):
    row_id = await _queue(session_factory, url=None)
    await WebhookWorker(session_factory, SECRET, http_client=httpx.AsyncClient()).run_once()
    row = await _load(session_factory, row_id)
    assert (row.status, row.last_error) == ("failed", "no_webhook_url")


def test_payload_encoding_is_canonical():
    assert encode_payload({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'


@pytest.mark.parametrize("attempts,expected", [(1, 5), (2, 10), (4, 40)])
@respx.mock
async def test_backoff_doubles_per_attempt(session_factory, attempts, expected):
    respx.post(HOOK_URL).mock(side_effect=httpx.ConnectError("refused"))
    row_id = await _queue(session_factory)
    async with session_factory() as session:
        async with session.begin():
            (await session.get(WebhookQueue, row_id)).attempts = attempts - 1
    now = utcnow()
    await WebhookWorker(session_factory, SECRET, http_client=httpx.AsyncClient(), max_attempts=10,
                        backoff_base=5).run_once(now=now)
    row = await _load(session_factory, row_id)
    assert row.next_attempt_at == now + timedelta(seconds=expected)
    assert row.last_error == "refused"


@respx.mock
async def test_claimed_rows_are_leased_from_other_workers(session_factory):
    route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
    row_id = await _queue(session_factory)
    first = WebhookWorker(session_factory, SECRET, http_client=httpx.AsyncClient())
    second = WebhookWorker(session_factory, SECRET, http_client=httpx.AsyncClient())
    now = utcnow()

    [claimed] = await first.claim_due(now)
    assert claimed.id == row_id
    assert (await _load(session_factory, row_id)).next_attempt_at > now

    assert await second.run_once(now=now) == 0
    assert not route.called

    success, err = await first.deliver(claimed)
    await first.record_attempt(claimed.id, success, err, now)
    row = await _load(session_factory, row_id)
    assert (row.status, row.attempts, row.next_attempt_at) == ("success", 1, None)
    assert route.call_count == 1
