"""Integration tests for the event source and dead letter endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from src.crm.api.deps import get_api_key
from src.crm.events.bus import DEAL_EVENTS_STREAM
from src.crm.events.schemas import DealEvent

BASE = "/api/v1/events"

EVENT = {
    "event_type": "deal_won",
    "deal": {"id": "deal-1", "name": "Acme", "value": 9000, "stage": "Fechado"},
}


def _make_mock_app(**state):
    """Create a minimal FastAPI app with the events router and given app.state."""
    from fastapi import FastAPI

    from src.crm.api.v1.events import router

    app = FastAPI()
    app.include_router(router, prefix="/api/v1")
    app.dependency_overrides[get_api_key] = lambda: "test-key"
    for name, value in state.items():
        setattr(app.state, name, value)
    return app


async def _post(app, path: str, **kwargs):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.post(path, **kwargs)


async def _get(app, path: str, **kwargs):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get(path, **kwargs)


# ── Publish ──────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_publish_queues_on_bus():
    bus = MagicMock()
    bus.publish = AsyncMock(return_value="1700000000000-0")
    app = _make_mock_app(event_bus=bus)

    response = await _post(app, BASE, json={**EVENT, "event_id": "crm-evt-42"})

    assert response.status_code == 202
    assert response.json() == {
        "event_id": "crm-evt-42",
        "queued": True,
        "message_id": "1700000000000-0",
        "results": {},
    }
    event = bus.publish.call_args[0][0]
    assert isinstance(event, DealEvent)
    assert event.deal.id == "deal-1"
    assert event.deal.model_dump()["stage"] == "Fechado"


@pytest.mark.asyncio
async def test_publish_derives_stable_event_id():
    bus = MagicMock()
    bus.publish = AsyncMock(return_value="1-0")
    app = _make_mock_app(event_bus=bus)
    body = {**EVENT, "occurred_at": "2026-03-01T12:00:00Z"}

    first = await _post(app, BASE, json=body)
    second = await _post(app, BASE, json=body)

    assert first.json()["event_id"] == second.json()["event_id"]


@pytest.mark.asyncio
async def test_publish_without_bus_dispatches_inline():
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(return_value={"wh-1": "success", "wh-2": "retrying"})
    app = _make_mock_app(event_bus=None, dispatcher=dispatcher)

    response = await _post(app, BASE, json=EVENT)

    assert response.status_code == 202
    data = response.json()
    assert data["queued"] is False
    assert data["results"] == {"wh-1": "success", "wh-2": "retrying"}
    dispatcher.dispatch.assert_awaited_once()


@pytest.mark.asyncio
async def test_publish_without_any_delivery_path():
    app = _make_mock_app(event_bus=None)

    response = await _post(app, BASE, json=EVENT)

    assert response.status_code == 503


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"event_type": "deal_exploded", "deal": {"id": "d"}},
        {"event_type": "deal_won"},
        {"event_type": "deal_won", "deal": {"name": "no id"}},
    ],
)
async def test_publish_validation(body):
    app = _make_mock_app(event_bus=MagicMock())

    response = await _post(app, BASE, json=body)

    assert response.status_code == 422


# ── Dead Letters ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_list_dead_letters():
    dlq = MagicMock()
    dlq.list_dlq_messages = AsyncMock(
        return_value=[("1-0", {"event_id": "evt-1", "_dlq_error": "boom"})]
    )
    app = _make_mock_app(dead_letter_queue=dlq)

    response = await _get(app, f"{BASE}/dlq", params={"count": 5})

    assert response.status_code == 200
    assert response.json() == [
        {"message_id": "1-0", "data": {"event_id": "evt-1", "_dlq_error": "boom"}}
    ]
    dlq.list_dlq_messages.assert_awaited_once_with(DEAL_EVENTS_STREAM, count=5)


@pytest.mark.asyncio
async def test_replay_dead_letter():
    dlq = MagicMock()
    dlq.replay_message = AsyncMock(return_value="2-0")
    app = _make_mock_app(dead_letter_queue=dlq)

    response = await _post(app, f"{BASE}/dlq/1-0/replay")

    assert response.status_code == 200
    assert response.json() == {"message_id": "2-0"}


@pytest.mark.asyncio
async def test_replay_missing_dead_letter():
    dlq = MagicMock()
    dlq.replay_message = AsyncMock(side_effect=LookupError("DLQ message '9-9' not found"))
    app = _make_mock_app(dead_letter_queue=dlq)

    response = await _post(app, f"{BASE}/dlq/9-9/replay")

    assert response.status_code == 404
    assert "not found" in response.json()["detail"]
