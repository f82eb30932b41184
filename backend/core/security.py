"""
OrderOps Security Utilities

Webhook signature verification for the payment gateway and shipping provider.
"""

import hashlib
import hmac
import time

from core.config import get_settings


def compute_stripe_signature(secret: str, timestamp: int, payload: bytes) -> str:
    """HMAC-SHA256 over ``"{timestamp}.{payload}"``, hex encoded."""
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def _parse_signature_header(header: str) -> tuple[int | None, list[str]]:
    timestamp: int | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    payload: bytes,
    header: str,
    secret: str | None = None,
    tolerance_seconds: int | None = None,
    now: float | None = None,
) -> bool:
    """
    Verify a ``Stripe-Signature`` header (``t=<unix>,v1=<hex>[,v1=...]``).

    Any matching v1 signature is accepted as long as the timestamp falls
    within the tolerance window.
    """
    settings = get_settings()
    secret = secret if secret is not None else settings.stripe_webhook_secret
    tolerance = tolerance_seconds if tolerance_seconds is not None else settings.stripe_webhook_tolerance_seconds
    if not secret or not header:
        return False

    timestamp, signatures = _parse_signature_header(header)
    if timestamp is None or not signatures:
        return False
    current = now if now is not None else time.time()
    if abs(current - timestamp) > tolerance:
        return False

    expected = compute_stripe_signature(secret, timestamp, payload)
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


def verify_shared_token(provided: str | None, expected: str) -> bool:
    """Constant-time comparison for query-string webhook tokens. Empty expected disables the check."""
    if not expected:
        return True
    return hmac.compare_digest(provided or "", expected)
