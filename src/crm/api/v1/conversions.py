"""Offline conversion endpoint: report a won deal to the ad platform once."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from src.crm.api.deps import get_conversion_service, require_api_key
from src.crm.webhooks.schemas import ConversionCreate

router = APIRouter(prefix="/conversions", tags=["conversions"], dependencies=[require_api_key])


@router.post("")
async def create_conversion(
    body: ConversionCreate,
    service: Any = Depends(get_conversion_service),
) -> JSONResponse:
    """Record and upload a conversion.

    A deal that already converted answers 200 with the existing record and
    ``duplicate: true``; nothing is uploaded again.
    """
    conversion, duplicate = await service.record(body)
    if duplicate:
        return JSONResponse(
            status_code=200,
            content={
                "success": True,
                "duplicate": True,
                "message": "Conversion already sent",
                "conversion_id": conversion.id,
            },
        )
    return JSONResponse(
        status_code=201,
        content={
            "success": True,
            "duplicate": False,
            "conversion_id": conversion.id,
            "status": conversion.status.value,
        },
    )
