"""FastAPI dependencies for authentication and service lookup.

Management endpoints require the ``X-API-Key`` header. Services are
created once in the application lifespan and read from ``app.state``;
a missing service means startup did not finish and answers 503.
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from src.crm.config import get_settings
from src.crm.core.security import verify_api_key

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def get_api_key(api_key: str | None = Depends(_api_key_header)) -> str:
    """Validate the management API key.

    Raises:
        HTTPException(401): If the key is missing or wrong.
    """
    settings = get_settings()
    if not verify_api_key(api_key, settings.ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return api_key  # type: ignore[return-value]


# Alias for cleaner endpoint signatures
require_api_key = Depends(get_api_key)


def _get_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_webhook_repository(request: Request) -> Any:
    return _get_state(request, "webhook_repository", "Webhook repository")


def get_inbound_repository(request: Request) -> Any:
    return _get_state(request, "inbound_repository", "Inbound webhook repository")


def get_log_store(request: Request) -> Any:
    return _get_state(request, "log_store", "Delivery log store")


def get_dispatcher(request: Request) -> Any:
    return _get_state(request, "dispatcher", "Outbound dispatcher")


def get_ingestor(request: Request) -> Any:
    return _get_state(request, "ingestor", "Inbound ingestor")


def get_conversion_service(request: Request) -> Any:
    return _get_state(request, "conversion_service", "Conversion service")


def get_event_bus(request: Request) -> Any | None:
    """Event bus, or None when events are dispatched in-process."""
    return getattr(request.app.state, "event_bus", None)


def get_dead_letter_queue(request: Request) -> Any:
    return _get_state(request, "dead_letter_queue", "Dead letter queue")
