"""HMAC-SHA256 signing and verification for payment event payloads.

Header format: ``t=<unix seconds>,v1=<hex digest>[,v1=<hex digest>...]``.
The digest covers ``"<t>." + body`` so a captured signature cannot be
replayed against a different timestamp.
"""

from __future__ import annotations

import hashlib
import hmac
import time

from tessera.errors import WebhookSignatureError

SIGNATURE_HEADER = "Tessera-Signature"


def _digest(payload: bytes, secret: str, timestamp: str) -> str:
    message = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_event_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build the signature header value for *payload*."""
    ts = str(int(time.time()) if timestamp is None else timestamp)
    return f"t={ts},v1={_digest(payload, secret, ts)}"


def _parse_header(header: str) -> tuple[str, list[str]]:
    timestamp = ""
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_event_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance: int = 300,
) -> int:
    """Authenticate a payment event.

    Returns the signed timestamp. Raises ``WebhookSignatureError`` if the
    header is missing or malformed, the timestamp is outside *tolerance*
    seconds, or no ``v1`` digest matches.
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError(f"Missing {SIGNATURE_HEADER} header")

    timestamp, signatures = _parse_header(header)
    try:
        ts = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Malformed signature timestamp") from None
    if not signatures:
        raise WebhookSignatureError("No v1 signature in header")

    if abs(time.time() - ts) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = _digest(payload, secret, timestamp).encode()
    candidates = [candidate.encode("utf-8", "surrogateescape") for candidate in signatures]
    if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
        raise WebhookSignatureError("Signature mismatch")
    return ts
