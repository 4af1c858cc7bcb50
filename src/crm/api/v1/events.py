"""Event source endpoints: publish deal events and manage the dead letter queue.

``POST /events`` appends the event to the deal event stream and returns
at once; the worker delivers it. Without an event bus (tests, single
process setups) the event is dispatched in-process and the per-webhook
outcomes are returned.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.crm.api.deps import get_dead_letter_queue, get_event_bus, require_api_key
from src.crm.events.bus import DEAL_EVENTS_STREAM
from src.crm.events.schemas import DealEvent
from src.crm.webhooks.schemas import DealSnapshot, WebhookEvent

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/events", tags=["events"], dependencies=[require_api_key])


# ── Schemas ──────────────────────────────────────────────────────────────────


class PublishEventRequest(BaseModel):
    """A deal state change reported by the CRM."""

    event_type: WebhookEvent
    deal: DealSnapshot
    event_id: str | None = Field(default=None, max_length=200)
    occurred_at: datetime | None = None


class PublishEventResponse(BaseModel):
    event_id: str
    queued: bool
    message_id: str | None = None
    results: dict[str, str] = Field(default_factory=dict)


class DeadLetterMessage(BaseModel):
    message_id: str
    data: dict[str, Any]


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", response_model=PublishEventResponse, status_code=202)
async def publish_event(
    body: PublishEventRequest,
    request: Request,
    bus: Any = Depends(get_event_bus),
) -> PublishEventResponse:
    """Accept a deal event for delivery to subscribed webhooks."""
    fields: dict[str, Any] = {"event_type": body.event_type, "deal": body.deal}
    if body.event_id:
        fields["event_id"] = body.event_id
    if body.occurred_at:
        fields["occurred_at"] = body.occurred_at
    event = DealEvent(**fields)

    if bus is not None:
        message_id = await bus.publish(event)
        return PublishEventResponse(event_id=event.event_id, queued=True, message_id=message_id)

    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event delivery not initialized",
        )
    results = await dispatcher.dispatch(event)
    return PublishEventResponse(event_id=event.event_id, queued=False, results=results)


@router.get("/dlq", response_model=list[DeadLetterMessage])
async def list_dead_letters(
    count: int = Query(default=50, ge=1, le=500),
    dlq: Any = Depends(get_dead_letter_queue),
) -> list[DeadLetterMessage]:
    """Events whose dispatch failed past the consumer's retry budget."""
    messages = await dlq.list_dlq_messages(DEAL_EVENTS_STREAM, count=count)
    return [DeadLetterMessage(message_id=mid, data=data) for mid, data in messages]


@router.post("/dlq/{message_id}/replay")
async def replay_dead_letter(
    message_id: str,
    dlq: Any = Depends(get_dead_letter_queue),
) -> dict[str, str]:
    try:
        new_id = await dlq.replay_message(DEAL_EVENTS_STREAM, message_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return {"message_id": new_id}
