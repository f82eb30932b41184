"""
Tests for webhook authentication helpers.
"""

import hashlib
import hmac

from core.security import compute_stripe_signature, verify_shared_token, verify_stripe_signature

SECRET = "whsec_test_secret"
PAYLOAD = b'{"type":"checkout.session.completed"}'
NOW = 1_700_000_000


def _header(timestamp=NOW, secret=SECRET, payload=PAYLOAD):
    return f"t={timestamp},v1={compute_stripe_signature(secret, timestamp, payload)}"


class TestStripeSignature:
    def test_signature_is_hmac_of_timestamp_and_body(self):
        expected = hmac.new(SECRET.encode(), f"{NOW}.".encode() + PAYLOAD, hashlib.sha256).hexdigest()
        assert compute_stripe_signature(SECRET, NOW, PAYLOAD) == expected

    def test_valid_signature(self):
        assert verify_stripe_signature(PAYLOAD, _header(), secret=SECRET, tolerance_seconds=300, now=NOW + 10)

    def test_any_matching_v1_is_accepted(self):
        header = f"t={NOW},v1=deadbeef,v1={compute_stripe_signature(SECRET, NOW, PAYLOAD)}"
        assert verify_stripe_signature(PAYLOAD, header, secret=SECRET, tolerance_seconds=300, now=NOW)

    def test_tampered_body(self):
        assert not verify_stripe_signature(b"{}", _header(), secret=SECRET, tolerance_seconds=300, now=NOW)

    def test_wrong_secret(self):
        header = _header(secret="whsec_other")
        assert not verify_stripe_signature(PAYLOAD, header, secret=SECRET, tolerance_seconds=300, now=NOW)

    def test_outside_tolerance(self):
        assert not verify_stripe_signature(PAYLOAD, _header(), secret=SECRET, tolerance_seconds=300, now=NOW + 301)

    def test_malformed_headers(self):
        unsigned = f"v1={compute_stripe_signature(SECRET, NOW, PAYLOAD)}"
        for header in ("", "garbage", f"t={NOW}", "t=abc,v1=00", unsigned):
            assert not verify_stripe_signature(PAYLOAD, header, secret=SECRET, tolerance_seconds=300, now=NOW)

    def test_missing_secret_never_verifies(self):
        assert not verify_stripe_signature(PAYLOAD, _header(), secret="", tolerance_seconds=300, now=NOW)


class TestSharedToken:
    def test_matching_token(self):
        assert verify_shared_token("hook-token", "hook-token")

    def test_wrong_or_missing_token(self):
        assert not verify_shared_token("nope", "hook-token")
        assert not verify_shared_token(None, "hook-token")

    def test_unconfigured_token_accepts_everything(self):
        assert verify_shared_token(None, "")
