"""Tests for HMAC-SHA256 body signing and verification."""

from __future__ import annotations

import hashlib
import hmac

import pytest

from src.crm.webhooks.signing import (
    SIGNATURE_PREFIX,
    compute_signature,
    signature_header_value,
    verify_signature,
)

BODY = b'{"event":"deal_won","data":{"id":"d-1"}}'
SECRET = "whsec_test"


class TestSigning:
    def test_signature_matches_hmac_sha256(self):
        expected = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert compute_signature(BODY, SECRET) == expected

    def test_same_bytes_same_signature(self):
        assert compute_signature(BODY, SECRET) == compute_signature(BODY, SECRET)

    def test_different_key_different_signature(self):
        assert compute_signature(BODY, SECRET) != compute_signature(BODY, "other")

    def test_header_value_is_prefixed(self):
        value = signature_header_value(BODY, SECRET)
        assert value.startswith(SIGNATURE_PREFIX)
        assert value[len(SIGNATURE_PREFIX):] == compute_signature(BODY, SECRET)


class TestVerify:
    def test_accepts_prefixed_and_bare_digest(self):
        digest = compute_signature(BODY, SECRET)
        assert verify_signature(BODY, f"sha256={digest}", SECRET)
        assert verify_signature(BODY, digest, SECRET)
        assert verify_signature(BODY, digest.upper(), SECRET)

    @pytest.mark.parametrize("provided", [None, "", "sha256=deadbeef", "garbage-ü"])
    def test_rejects_missing_or_wrong(self, provided):
        assert verify_signature(BODY, provided, SECRET) is False

    def test_rejects_tampered_body(self):
        signature = signature_header_value(BODY, SECRET)
        assert verify_signature(BODY + b" ", signature, SECRET) is False
