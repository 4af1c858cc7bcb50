"""REST API endpoints for inbound webhook (receive endpoint) management.

CRUD for receive endpoints, token rotation and inbound request logs. The
secret token is returned to the authenticated owner so the receive URL can
be displayed; the HMAC secret is only reported as configured or not.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from src.crm.api.deps import get_inbound_repository, get_log_store, require_api_key
from src.crm.webhooks.schemas import (
    FieldMapping,
    InboundLogRead,
    InboundStatus,
    InboundWebhookCreate,
    InboundWebhookRead,
    InboundWebhookUpdate,
    LogFilter,
)

router = APIRouter(prefix="/inbound-webhooks", tags=["inbound-webhooks"], dependencies=[require_api_key])


# ── Response Schemas ─────────────────────────────────────────────────────────


class InboundWebhookResponse(BaseModel):
    id: str
    name: str
    pipeline_id: str
    phase_id: str | None = None
    secret_token: str
    receive_url: str
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    default_tags: list[str] = Field(default_factory=list)
    default_temperature: str = "warm"
    has_hmac_secret: bool = False
    ip_whitelist: list[str] | None = None
    is_active: bool = True
    requests_today: int = 0
    last_request_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


def _inbound_to_response(inbound: InboundWebhookRead, request: Request) -> InboundWebhookResponse:
    token = inbound.secret_token.get_secret_value()
    return InboundWebhookResponse(
        id=inbound.id,
        name=inbound.name,
        pipeline_id=inbound.pipeline_id,
        phase_id=inbound.phase_id,
        secret_token=token,
        receive_url=f"{str(request.base_url).rstrip('/')}/api/v1/receive/{token}",
        field_mappings=inbound.field_mappings,
        default_tags=inbound.default_tags,
        default_temperature=inbound.default_temperature.value,
        has_hmac_secret=inbound.has_hmac_secret,
        ip_whitelist=inbound.ip_whitelist,
        is_active=inbound.is_active,
        requests_today=inbound.requests_today,
        last_request_at=inbound.last_request_at,
        created_at=inbound.created_at,
        updated_at=inbound.updated_at,
    )


def _not_found(inbound_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Inbound webhook not found: {inbound_id}",
    )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", response_model=InboundWebhookResponse, status_code=201)
async def create_inbound_webhook(
    body: InboundWebhookCreate,
    request: Request,
    repo: Any = Depends(get_inbound_repository),
) -> InboundWebhookResponse:
    """Create a receive endpoint with a generated secret token."""
    inbound = await repo.create_inbound(body)
    return _inbound_to_response(inbound, request)


@router.get("", response_model=list[InboundWebhookResponse])
async def list_inbound_webhooks(
    request: Request,
    repo: Any = Depends(get_inbound_repository),
) -> list[InboundWebhookResponse]:
    return [_inbound_to_response(i, request) for i in await repo.list_inbound()]


@router.get("/logs", response_model=list[InboundLogRead])
async def list_inbound_logs(
    inbound_webhook_id: str | None = Query(default=None),
    log_status: InboundStatus | None = Query(default=None, alias="status"),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    logs: Any = Depends(get_log_store),
) -> list[InboundLogRead]:
    """Inbound request logs, newest first."""
    filters = LogFilter(
        webhook_id=inbound_webhook_id,
        status=log_status.value if log_status else None,
        since=since,
        until=until,
        limit=limit,
    )
    return await logs.query_inbound(filters)


@router.get("/{inbound_id}", response_model=InboundWebhookResponse)
async def get_inbound_webhook(
    inbound_id: str,
    request: Request,
    repo: Any = Depends(get_inbound_repository),
) -> InboundWebhookResponse:
    inbound = await repo.get_inbound(inbound_id)
    if inbound is None:
        raise _not_found(inbound_id)
    return _inbound_to_response(inbound, request)


@router.patch("/{inbound_id}", response_model=InboundWebhookResponse)
async def update_inbound_webhook(
    inbound_id: str,
    body: InboundWebhookUpdate,
    request: Request,
    repo: Any = Depends(get_inbound_repository),
) -> InboundWebhookResponse:
    inbound = await repo.update_inbound(inbound_id, body)
    if inbound is None:
        raise _not_found(inbound_id)
    return _inbound_to_response(inbound, request)


@router.post("/{inbound_id}/regenerate-token", response_model=InboundWebhookResponse)
async def regenerate_token(
    inbound_id: str,
    request: Request,
    repo: Any = Depends(get_inbound_repository),
) -> InboundWebhookResponse:
    """Rotate the secret token; the previous receive URL stops working."""
    inbound = await repo.regenerate_token(inbound_id)
    if inbound is None:
        raise _not_found(inbound_id)
    return _inbound_to_response(inbound, request)


@router.delete("/{inbound_id}", status_code=204)
async def delete_inbound_webhook(
    inbound_id: str,
    repo: Any = Depends(get_inbound_repository),
) -> Response:
    if not await repo.delete_inbound(inbound_id):
        raise _not_found(inbound_id)
    return Response(status_code=204)
