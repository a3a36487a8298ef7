"""
Webhook worker: dequeues webhook_queue and delivers signed payment notifications.

- Signs the JSON body with WEBHOOK_SECRET (X-Settlement-Timestamp + X-Settlement-Signature)
- Due rows are leased (next_attempt_at pushed forward, FOR UPDATE SKIP LOCKED) in a
  short transaction, posted outside it, and each outcome is written in its own transaction
- Exponential backoff retry via next_attempt_at; rows give up after WEBHOOK_MAX_ATTEMPTS
- Emits Prometheus metrics: settlement_webhook_success_total, settlement_webhook_fail_total
"""
import json
import logging
import time
from datetime import datetime, timedelta
from typing import Optional

import httpx
import sqlalchemy as sa
from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.db.models import WebhookQueue, utcnow
from app.utils.webhook_signing import sign_webhook

logger = logging.getLogger("settlement.notifications.worker")

METRIC_WEBHOOK_SUCCESS = Counter("settlement_webhook_success_total", "Successful webhook deliveries")
METRIC_WEBHOOK_FAIL = Counter("settlement_webhook_fail_total", "Failed webhook deliveries")

MAX_BACKOFF_SECONDS = 600
DELIVERY_TIMEOUT_SECONDS = 15


def encode_payload(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


class WebhookWorker:
    name = "webhooks"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], secret: str,
                 http_client: Optional[httpx.AsyncClient] = None, max_attempts: Optional[int] = None,
                 backoff_base: Optional[int] = None, batch_size: int = 50):
        self.session_factory = session_factory
        self.secret = secret
        self.http = http_client or httpx.AsyncClient(timeout=DELIVERY_TIMEOUT_SECONDS)
        self.max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS
        self.backoff_base = backoff_base or settings.WEBHOOK_BACKOFF_BASE_SECONDS
        self.batch_size = batch_size
        # long enough for a whole batch of timed-out posts
        self.lease_seconds = DELIVERY_TIMEOUT_SECONDS * batch_size + 60

    async def deliver(self, row: WebhookQueue) -> tuple[bool, Optional[str]]:
        headers = row.headers or {}
        webhook_url = headers.get("webhook_url")
        if not webhook_url:
            return False, "no_webhook_url"
        body = encode_payload(row.payload)
        timestamp = str(int(time.time()))
        req_headers = {
            "Content-Type": "application/json",
            "X-Settlement-Timestamp": timestamp,
            "X-Settlement-Signature": sign_webhook(body, timestamp, self.secret),
            "X-Settlement-Event": row.event_type,
        }
        if row.idempotency_key:
            req_headers["Idempotency-Key"] = row.idempotency_key
        try:
            r = await self.http.post(webhook_url, content=body, headers=req_headers)
        except httpx.HTTPError as exc:
            return False, str(exc) or exc.__class__.__name__
        if 200 <= r.status_code < 300:
            return True, None
        return False, f"status_{r.status_code}"

    async def claim_due(self, now: datetime) -> list[WebhookQueue]:
        """
        Lease due rows by pushing next_attempt_at past the delivery window, so
        other workers skip them while this one posts outside the transaction.
        """
        async with self.session_factory() as session:
            async with session.begin():
                stmt = (
                    sa.select(WebhookQueue)
                    .where(
                        WebhookQueue.status == "pending",
                        sa.or_(WebhookQueue.next_attempt_at.is_(None), WebhookQueue.next_attempt_at <= now),
                    )
                    .order_by(WebhookQueue.created_at.asc())
                    .limit(self.batch_size)
                    .with_for_update(skip_locked=True)
                )
                rows = (await session.execute(stmt)).scalars().all()
                leased_until = now + timedelta(seconds=self.lease_seconds)
                for row in rows:
                    row.next_attempt_at = leased_until
        return list(rows)

    async def record_attempt(self, row_id, success: bool, err: Optional[str], now: datetime) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                row = await session.get(WebhookQueue, row_id)
                if row is None:
                    return
                row.attempts = (row.attempts or 0) + 1
                if success:
                    row.status = "success"
                    row.last_error = None
                    row.next_attempt_at = None
                    METRIC_WEBHOOK_SUCCESS.inc()
                    logger.info("Webhook delivered id=%s event=%s", row.id, row.event_type)
                    return
                METRIC_WEBHOOK_FAIL.inc()
                row.last_error = err
                if row.attempts >= self.max_attempts or err == "no_webhook_url":
                    row.status = "failed"
                    logger.error("Webhook permanently failed id=%s attempts=%s error=%s", row.id, row.attempts, err)
                else:
                    backoff = min(MAX_BACKOFF_SECONDS, self.backoff_base * (2 ** (row.attempts - 1)))
                    row.next_attempt_at = now + timedelta(seconds=backoff)
                    logger.warning("Webhook delivery failed id=%s attempts=%s next in %s sec err=%s",
                                   row.id, row.attempts, backoff, err)

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """Attempt every due row once; return how many were delivered."""
        now = now or utcnow()
        delivered = 0
        for row in await self.claim_due(now):
            success, err = await self.deliver(row)
            await self.record_attempt(row.id, success, err, now)
            if success:
                delivered += 1
        return delivered
