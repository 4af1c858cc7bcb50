"""REST API endpoints for outbound webhook management.

Provides CRUD for subscriptions, a test send, manual re-enable after an
auto-disable, delivery log queries (including one event's full lineage)
and the daily stats summary. All endpoints require the management API key.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from src.crm.api.deps import (
    get_dispatcher,
    get_log_store,
    get_webhook_repository,
    require_api_key,
)
from src.crm.webhooks.schemas import (
    DeliveryStatus,
    LogFilter,
    WebhookCreate,
    WebhookLogRead,
    WebhookRead,
    WebhookStats,
    WebhookUpdate,
)

router = APIRouter(prefix="/webhooks", tags=["webhooks"], dependencies=[require_api_key])

_TEST_BODY_PREVIEW_CHARS = 1000


# ── Response Schemas ─────────────────────────────────────────────────────────


class WebhookResponse(BaseModel):
    """Webhook as returned by the API; the signing secret is never echoed."""

    id: str
    name: str
    url: str
    method: str
    headers: dict[str, str] = Field(default_factory=dict)
    events: list[str] = Field(default_factory=list)
    has_secret_key: bool = False
    is_active: bool = True
    ip_whitelist: list[str] | None = None
    retry_enabled: bool = True
    max_retries: int = 3
    consecutive_failures: int = 0
    last_triggered_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WebhookTestResponse(BaseModel):
    success: bool
    status_code: int | None = None
    response_time_ms: int = 0
    response_body: str | None = None
    error: str | None = None
    log_id: str


def _webhook_to_response(webhook: WebhookRead) -> WebhookResponse:
    return WebhookResponse(
        id=webhook.id,
        name=webhook.name,
        url=webhook.url,
        method=webhook.method.value,
        headers=webhook.headers,
        events=webhook.events,
        has_secret_key=webhook.has_secret_key,
        is_active=webhook.is_active,
        ip_whitelist=webhook.ip_whitelist,
        retry_enabled=webhook.retry_enabled,
        max_retries=webhook.max_retries,
        consecutive_failures=webhook.consecutive_failures,
        last_triggered_at=webhook.last_triggered_at,
        last_success_at=webhook.last_success_at,
        last_error=webhook.last_error,
        created_at=webhook.created_at,
        updated_at=webhook.updated_at,
    )


async def _require_webhook(repo: Any, webhook_id: str) -> WebhookRead:
    webhook = await repo.get_webhook(webhook_id)
    if webhook is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook not found: {webhook_id}",
        )
    return webhook


# ── Collection Endpoints ─────────────────────────────────────────────────────


@router.post("", response_model=WebhookResponse, status_code=201)
async def create_webhook(
    body: WebhookCreate,
    repo: Any = Depends(get_webhook_repository),
) -> WebhookResponse:
    """Create an outbound webhook subscription."""
    webhook = await repo.create_webhook(body)
    return _webhook_to_response(webhook)


@router.get("", response_model=list[WebhookResponse])
async def list_webhooks(
    active_only: bool = Query(default=False),
    repo: Any = Depends(get_webhook_repository),
) -> list[WebhookResponse]:
    webhooks = await repo.list_webhooks(active_only=active_only)
    return [_webhook_to_response(w) for w in webhooks]


@router.get("/stats", response_model=WebhookStats)
async def get_stats(logs: Any = Depends(get_log_store)) -> WebhookStats:
    """Today's delivery totals, success/failure counts and webhook health."""
    return await logs.stats()


@router.get("/logs", response_model=list[WebhookLogRead])
async def list_logs(
    webhook_id: str | None = Query(default=None),
    event_id: str | None = Query(default=None),
    log_status: DeliveryStatus | None = Query(default=None, alias="status"),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    logs: Any = Depends(get_log_store),
) -> list[WebhookLogRead]:
    """Outbound delivery logs, newest first."""
    filters = LogFilter(
        webhook_id=webhook_id,
        event_id=event_id,
        status=log_status.value if log_status else None,
        since=since,
        until=until,
        limit=limit,
    )
    return await logs.query_outbound(filters)


# ── Item Endpoints ───────────────────────────────────────────────────────────


@router.get("/{webhook_id}", response_model=WebhookResponse)
async def get_webhook(
    webhook_id: str,
    repo: Any = Depends(get_webhook_repository),
) -> WebhookResponse:
    return _webhook_to_response(await _require_webhook(repo, webhook_id))


@router.patch("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: str,
    body: WebhookUpdate,
    repo: Any = Depends(get_webhook_repository),
    dispatcher: Any = Depends(get_dispatcher),
) -> WebhookResponse:
    """Partially update a webhook.

    Deactivating it cancels its pending retries and settles their lineages.
    """
    webhook = await repo.update_webhook(webhook_id, body)
    if webhook is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook not found: {webhook_id}",
        )
    if body.is_active is False:
        await dispatcher.cancel_retries(webhook.id)
    return _webhook_to_response(webhook)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: str,
    repo: Any = Depends(get_webhook_repository),
    dispatcher: Any = Depends(get_dispatcher),
) -> Response:
    """Delete a webhook and its logs; pending retries are cancelled."""
    if not await repo.delete_webhook(webhook_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook not found: {webhook_id}",
        )
    await dispatcher.cancel_retries(webhook_id, reason="deleted")
    return Response(status_code=204)


@router.post("/{webhook_id}/enable", response_model=WebhookResponse)
async def enable_webhook(
    webhook_id: str,
    repo: Any = Depends(get_webhook_repository),
) -> WebhookResponse:
    """Re-activate a webhook (e.g. after auto-disable); resets its failure streak."""
    webhook = await repo.update_webhook(webhook_id, WebhookUpdate(is_active=True))
    if webhook is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Webhook not found: {webhook_id}",
        )
    return _webhook_to_response(webhook)


@router.post("/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook(
    webhook_id: str,
    repo: Any = Depends(get_webhook_repository),
    dispatcher: Any = Depends(get_dispatcher),
) -> WebhookTestResponse:
    """Send one sample ``test`` event; never retried, counters untouched."""
    webhook = await _require_webhook(repo, webhook_id)
    result, log_id = await dispatcher.send_test(webhook)
    return WebhookTestResponse(
        success=result.success,
        status_code=result.status_code,
        response_time_ms=result.time_ms,
        response_body=result.body[:_TEST_BODY_PREVIEW_CHARS] if result.body else result.body,
        error=result.error,
        log_id=log_id,
    )


@router.get("/{webhook_id}/events/{event_id}", response_model=list[WebhookLogRead])
async def get_lineage(
    webhook_id: str,
    event_id: str,
    repo: Any = Depends(get_webhook_repository),
    logs: Any = Depends(get_log_store),
) -> list[WebhookLogRead]:
    """Every attempt of one event to one webhook, oldest first."""
    await _require_webhook(repo, webhook_id)
    return await logs.lineage(webhook_id, event_id)
