"""
Webhook Signing

Enforcement webhooks carry two headers:
- X-Shield-Signature: hex HMAC-SHA256 of the exact JSON body bytes
- X-Shield-Timestamp: sender clock in epoch milliseconds

The timestamp is not part of the signed bytes; receivers bound replay
by rejecting timestamps outside the replay window.
"""

import hashlib
import hmac
import json
import time
from typing import Any, Optional

from ..errors import WebhookVerificationError


SIGNATURE_HEADER = "X-Shield-Signature"
TIMESTAMP_HEADER = "X-Shield-Timestamp"

DEFAULT_REPLAY_WINDOW_MS = 5 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Serialize a payload to the bytes that get signed and sent."""
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def build_headers(body: bytes, secret: str, timestamp_ms: Optional[int] = None) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: sign_payload(body, secret),
        TIMESTAMP_HEADER: str(timestamp_ms if timestamp_ms is not None else now_ms()),
    }


def verify_webhook(
    body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
    secret: str,
    replay_window_ms: int = DEFAULT_REPLAY_WINDOW_MS,
    current_ms: Optional[int] = None,
) -> None:
    """
    Verify an incoming enforcement webhook.

    Raises:
        WebhookVerificationError: missing headers, stale or future
            timestamp, or signature mismatch
    """
    if not signature or not timestamp:
        raise WebhookVerificationError("Missing signature headers")

    try:
        sent_ms = int(timestamp)
    except ValueError:
        raise WebhookVerificationError("Malformed timestamp") from None

    current = current_ms if current_ms is not None else now_ms()
    if abs(current - sent_ms) > replay_window_ms:
        raise WebhookVerificationError("Request timestamp outside replay window")

    expected = sign_payload(body, secret)
    if not hmac.compare_digest(expected, signature):
        raise WebhookVerificationError("Invalid signature")
