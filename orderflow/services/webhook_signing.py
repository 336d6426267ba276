"""
Webhook payload signing.

Signature = hex HMAC-SHA256(secret, "{timestamp_ms}.{canonical_json(payload)}").
The request body is exactly canonical_json(payload), so receivers verify
against the raw bytes they received.
"""
import hmac
import hashlib
import json
import secrets
import time


SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


def canonical_json(payload) -> str:
    """Deterministic JSON: sorted keys, no insignificant whitespace, UTF-8 text."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def generate_webhook_secret() -> str:
    """256 random bits, hex encoded."""
    return secrets.token_hex(32)


def current_timestamp_ms() -> int:
    return int(time.time() * 1000)


def sign_body(secret: str, timestamp_ms: int, body: str) -> str:
    """Sign an already-serialized body."""
    message = f"{timestamp_ms}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def generate_webhook_signature(secret: str, timestamp_ms: int, payload) -> str:
    """Generate HMAC-SHA256 signature for a webhook payload."""
    return sign_body(secret, timestamp_ms, canonical_json(payload))


def verify_signature(
    secret: str,
    timestamp_ms: int | str,
    body: bytes | str,
    signature: str,
    tolerance_seconds: int | None = None,
) -> bool:
    """
    Check a received webhook against its signature headers.

    With tolerance_seconds set, timestamps further than that from now are
    rejected to limit replays.
    """
    try:
        timestamp_ms = int(timestamp_ms)
    except (TypeError, ValueError):
        return False

    if tolerance_seconds is not None:
        if abs(current_timestamp_ms() - timestamp_ms) > tolerance_seconds * 1000:
            return False

    if isinstance(body, bytes):
        body = body.decode("utf-8")

    expected = sign_body(secret, timestamp_ms, body)
    return hmac.compare_digest(expected, signature)
