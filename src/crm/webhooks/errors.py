"""Error taxonomy for webhook dispatch and ingestion.

Every error carries the inbound log status it produces and the HTTP status
the receive endpoint answers with, so the ingestor can translate a raised
error into its log row and response in one place.
"""

from __future__ import annotations


class WebhookError(Exception):
    """Base class for webhook domain errors."""

    log_status: str = "failed"
    http_status: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(WebhookError):
    """Bad secret token, HMAC signature or source IP."""

    log_status = "rejected"
    http_status = 401


class ForbiddenIPError(AuthError):
    """Source IP not present in the inbound allow-list."""

    http_status = 403


class ValidationError(WebhookError):
    """Missing or malformed required fields (including unparseable bodies)."""

    log_status = "failed"
    http_status = 400


class MappingError(WebhookError):
    """A field transform could not be applied to the extracted value."""

    log_status = "failed"
    http_status = 200


class DuplicateError(WebhookError):
    """The lead identity was already ingested inside the dedup window."""

    log_status = "rejected"
    http_status = 429


class RateLimitError(WebhookError):
    """Per-webhook request budget for the current minute is spent."""

    log_status = "rejected"
    http_status = 429


class DeliveryError(WebhookError):
    """Outbound network failure, timeout or non-2xx response."""

    log_status = "failed"
    http_status = 502

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class ConfigError(WebhookError):
    """Webhook inactive or misconfigured."""

    log_status = "rejected"
    http_status = 403


class DealCreationError(WebhookError):
    """The deal store refused the mapped lead."""

    log_status = "failed"
    http_status = 200
