"""Credential helpers: API key checks and secret masking for logs."""

from __future__ import annotations

import hmac
import secrets


def verify_api_key(provided: str | None, expected: str) -> bool:
    """Constant-time comparison of a presented API key with the configured one."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def generate_token(nbytes: int = 24) -> str:
    """Generate a URL-safe random token for inbound receive URLs."""
    return secrets.token_urlsafe(nbytes)


def mask_secret(value: str | None) -> str | None:
    """Return a log-safe hint of a secret (first four characters only)."""
    if not value:
        return None
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}****"
