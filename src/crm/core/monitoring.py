"""Prometheus metrics and Sentry integration.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- webhook_* metrics recorded by the dispatcher and the ingestor
- init_sentry(): Initialize Sentry with secret scrubbing
- get_metrics_response(): Prometheus exposition for /metrics
"""

from __future__ import annotations

import time

import sentry_sdk
from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Webhook Metrics ──────────────────────────────────────────────────────────

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Outbound webhook delivery attempts by outcome",
    ["event_type", "status"],
)

webhook_delivery_duration_seconds = Histogram(
    "webhook_delivery_duration_seconds",
    "Outbound webhook HTTP call duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

webhook_auto_disabled_total = Counter(
    "webhook_auto_disabled_total",
    "Outbound webhooks deactivated after reaching the failure ceiling",
)

inbound_requests_total = Counter(
    "inbound_webhook_requests_total",
    "Inbound webhook requests by logged status",
    ["status"],
)

retry_queue_depth = Gauge(
    "webhook_retry_queue_depth",
    "Scheduled outbound retries waiting in the queue",
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Inbound receive URLs embed the secret token, so the matched route
    template is used as the endpoint label instead of the raw path.
    Skips the /metrics endpoint itself to avoid self-referential counting.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or "unmatched"

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────

_SCRUBBED_HEADERS = {"x-api-key", "x-webhook-signature", "authorization"}


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK with header scrubbing.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Drop credentials and receive-URL tokens from request data."""
        request = event.get("request") or {}
        headers = request.get("headers") or {}
        for name in list(headers):
            if name.lower() in _SCRUBBED_HEADERS:
                headers[name] = "[redacted]"
        url = request.get("url")
        if isinstance(url, str) and "/receive/" in url:
            request["url"] = url.split("/receive/", 1)[0] + "/receive/[redacted]"
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        send_default_pii=False,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
