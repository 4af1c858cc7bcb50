"""HMAC-SHA256 signing for outbound bodies and verification of inbound ones.

Header format: ``X-Webhook-Signature: sha256=<hex digest>``. The digest is
computed over the raw body bytes, so identical bytes under the same key
always produce the same signature.
"""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed by ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signature_header_value(body: bytes, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}{compute_signature(body, secret)}"


def verify_signature(body: bytes, provided: str | None, secret: str) -> bool:
    """Constant-time check of a presented signature; the prefix is optional."""
    if not provided:
        return False
    candidate = provided.strip()
    if candidate.lower().startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX):]
    expected = compute_signature(body, secret)
    return hmac.compare_digest(candidate.lower().encode("ascii", "ignore"), expected.encode("ascii"))
