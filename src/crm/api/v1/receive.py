"""Public receive endpoint for third-party lead payloads.

No API key: the URL-embedded secret token (plus the optional IP
allow-list and HMAC signature) authenticates the sender. Responses are
always JSON ``{success, message | error}``.

The legacy ``/receive/{pipeline_id}/{secret_token}`` form is accepted as
well; its pipeline segment must match the webhook's pipeline.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from src.crm.api.deps import get_ingestor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/receive", tags=["receive"])


def client_ip(request: Request) -> str | None:
    """Caller IP: first X-Forwarded-For hop, then CF-Connecting-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    return request.client.host if request.client else None


async def _receive(
    request: Request, ingestor: Any, secret_token: str, pipeline_id: str | None = None
) -> JSONResponse:
    raw_body = await request.body()
    try:
        result = await ingestor.ingest(
            secret_token,
            raw_body,
            request.headers,
            client_ip(request),
            pipeline_id=pipeline_id,
        )
    except Exception:
        logger.exception("inbound.receive_crashed")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"},
        )
    return JSONResponse(status_code=result.status_code, content=result.body)


@router.post("/{secret_token}", name="receive_webhook")
async def receive_webhook(
    secret_token: str,
    request: Request,
    ingestor: Any = Depends(get_ingestor),
) -> JSONResponse:
    """Ingest one lead payload."""
    return await _receive(request, ingestor, secret_token)


@router.post("/{pipeline_id}/{secret_token}", name="receive_webhook_for_pipeline")
async def receive_webhook_for_pipeline(
    pipeline_id: str,
    secret_token: str,
    request: Request,
    ingestor: Any = Depends(get_ingestor),
) -> JSONResponse:
    return await _receive(request, ingestor, secret_token, pipeline_id=pipeline_id)
