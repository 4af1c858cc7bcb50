"""Outbound HTTP sender for webhook deliveries.

WebhookSender performs exactly one HTTP call per ``send``; retry policy
lives in the dispatcher. Network errors, timeouts and non-2xx responses
raise DeliveryError internally and come back from ``send`` as a failed
DeliveryResult.
"""

from __future__ import annotations

import time

import httpx
import structlog

from src.crm.core.monitoring import webhook_delivery_duration_seconds
from src.crm.webhooks.errors import DeliveryError
from src.crm.webhooks.schemas import DeliveryResult, WebhookRead
from src.crm.webhooks.signing import SIGNATURE_HEADER, signature_header_value

logger = structlog.get_logger(__name__)

USER_AGENT = "crm-webhooks/0.1"


class WebhookSender:
    """Deliver serialized envelopes to subscriber URLs.

    Args:
        timeout: Per-call timeout in seconds (already clamped by settings).
        response_body_max_chars: Stored response bodies are cut to this size.
        client: Optional shared httpx.AsyncClient (tests pass one built on
            httpx.MockTransport).
    """

    def __init__(
        self,
        timeout: float = 10.0,
        response_body_max_chars: int = 5000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._max_chars = response_body_max_chars
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=False,
            )
        return self._client

    def build_headers(self, webhook: WebhookRead, body: bytes) -> dict[str, str]:
        """Configured headers plus content type, user agent and signature."""
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        headers.update(webhook.headers)
        if webhook.has_secret_key:
            headers[SIGNATURE_HEADER] = signature_header_value(
                body, webhook.secret_key.get_secret_value()
            )
        return headers

    async def send(self, webhook: WebhookRead, body: bytes, event_type: str) -> DeliveryResult:
        """Send ``body`` with the webhook's method and headers.

        Args:
            webhook: Destination subscription.
            body: Exact serialized envelope bytes (already signed over).
            event_type: Used for metrics labels only.

        Returns:
            DeliveryResult; ``success`` is True only for 2xx responses.
        """
        start = time.perf_counter()
        try:
            response = await self._request(webhook, body)
        except DeliveryError as exc:
            elapsed = time.perf_counter() - start
            webhook_delivery_duration_seconds.labels(event_type=event_type).observe(elapsed)
            return DeliveryResult(
                success=False,
                status_code=exc.status_code,
                body=exc.response_body,
                error=exc.message,
                time_ms=int(elapsed * 1000),
            )

        elapsed = time.perf_counter() - start
        webhook_delivery_duration_seconds.labels(event_type=event_type).observe(elapsed)
        return DeliveryResult(
            success=True,
            status_code=response.status_code,
            body=response.text[: self._max_chars],
            time_ms=int(elapsed * 1000),
        )

    async def _request(self, webhook: WebhookRead, body: bytes) -> httpx.Response:
        """One HTTP call.

        Raises:
            DeliveryError: Timeout, network failure, unusable request or non-2xx
                response.
        """
        try:
            response = await self._get_client().request(
                webhook.method.value,
                webhook.url,
                content=body,
                headers=self.build_headers(webhook, body),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise DeliveryError(f"Timeout after {self._timeout:g}s") from exc
        except httpx.HTTPError as exc:
            message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            raise DeliveryError(message) from exc
        except (httpx.InvalidURL, ValueError) as exc:
            # Unusable URL or a header value that is not ASCII encodable.
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            logger.debug(
                "webhook.non_2xx_response",
                webhook_id=webhook.id,
                status_code=response.status_code,
            )
            raise DeliveryError(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                response_body=response.text[: self._max_chars],
            )
        return response

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
