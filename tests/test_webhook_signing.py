"""
HMAC signing of webhook bodies.
"""
from orderflow.services.webhook_signing import (
    canonical_json,
    current_timestamp_ms,
    generate_webhook_secret,
    generate_webhook_signature,
    sign_body,
    verify_signature,
)


SECRET = "a" * 64
PAYLOAD = {"event": "order.placed", "data": {"order_id": "o-1", "total": "19.99"}}


def test_signature_is_deterministic_hex():
    first = generate_webhook_signature(SECRET, 1700000000000, PAYLOAD)
    second = generate_webhook_signature(SECRET, 1700000000000, PAYLOAD)

    assert first == second
    assert len(first) == 64
    int(first, 16)


def test_signature_depends_on_every_input():
    base = generate_webhook_signature(SECRET, 1700000000000, PAYLOAD)

    assert generate_webhook_signature("b" * 64, 1700000000000, PAYLOAD) != base
    assert generate_webhook_signature(SECRET, 1700000000001, PAYLOAD) != base

    body = canonical_json(PAYLOAD)
    tampered = body.replace("19.99", "19.98")
    assert sign_body(SECRET, 1700000000000, tampered) != base


def test_canonical_json_ignores_key_order():
    reordered = {"data": {"total": "19.99", "order_id": "o-1"}, "event": "order.placed"}

    assert canonical_json(reordered) == canonical_json(PAYLOAD)
    assert generate_webhook_signature(SECRET, 1, reordered) == generate_webhook_signature(SECRET, 1, PAYLOAD)
    assert " " not in canonical_json(PAYLOAD)


def test_verify_accepts_raw_body_bytes():
    timestamp = current_timestamp_ms()
    body = canonical_json(PAYLOAD).encode("utf-8")
    signature = sign_body(SECRET, timestamp, body.decode("utf-8"))

    assert verify_signature(SECRET, str(timestamp), body, signature)
    assert verify_signature(SECRET, timestamp, body, signature, tolerance_seconds=300)
    assert not verify_signature(SECRET, timestamp, body + b" ", signature)
    assert not verify_signature("wrong", timestamp, body, signature)
    assert not verify_signature(SECRET, "not-a-number", body, signature)


def test_verify_rejects_stale_timestamp():
    stale = current_timestamp_ms() - 10 * 60 * 1000
    body = canonical_json(PAYLOAD)
    signature = sign_body(SECRET, stale, body)

    assert verify_signature(SECRET, stale, body, signature)
    assert not verify_signature(SECRET, stale, body, signature, tolerance_seconds=300)


def test_secrets_are_unique():
    secrets = {generate_webhook_secret() for _ in range(20)}

    assert len(secrets) == 20
    assert all(len(s) == 64 for s in secrets)
