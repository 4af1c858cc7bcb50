"""V1 API router -- aggregates all v1 endpoint routers.

Health checks stay at the root for load balancers; everything else is
served under ``/api/v1``.
"""

from __future__ import annotations

from fastapi import APIRouter

from src.crm.api.v1 import conversions, events, health, inbound, receive, webhooks

API_PREFIX = "/api/v1"

router = APIRouter()

router.include_router(health.router)

api_router = APIRouter(prefix=API_PREFIX)
api_router.include_router(webhooks.router)
api_router.include_router(inbound.router)
api_router.include_router(receive.router)
api_router.include_router(events.router)
api_router.include_router(conversions.router)

router.include_router(api_router)
