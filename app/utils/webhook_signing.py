import hashlib
import hmac
import time
from typing import Optional, Union

SIGNATURE_PREFIX = "sha256="


def sign_webhook(payload: Union[bytes, str], timestamp: str, secret: str) -> str:
    """
    Sign webhook payloads with WEBHOOK_SECRET.
    Signature header format: sha256=<hex>
    Data to sign: <timestamp>.<payload>
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    message = timestamp.encode("utf-8") + b"." + payload
    return SIGNATURE_PREFIX + hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: Union[bytes, str], timestamp: str, secret: str, signature: str,
                             tolerance_seconds: Optional[int] = 300, now: Optional[float] = None) -> bool:
    """
    Constant-time signature check. When ``tolerance_seconds`` is set the unix
    ``timestamp`` must also be within that many seconds of ``now``.
    """
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        return False
    if tolerance_seconds is not None:
        try:
            sent_at = int(timestamp)
        except (TypeError, ValueError):
            return False
        current = time.time() if now is None else now
        if abs(current - sent_at) > tolerance_seconds:
            return False
    return hmac.compare_digest(sign_webhook(payload, timestamp, secret), signature)
