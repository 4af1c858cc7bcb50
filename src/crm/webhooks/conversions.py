"""Offline conversion uploads for won deals.

Provides:
- ConversionRepository: one ``offline_conversions`` row per deal id
- ConversionUploader: httpx client posting to the ad platform endpoint with
  tenacity retry (3 attempts, exponential backoff 1-10s)
- ConversionService: idempotent record-and-upload entry point

A deal converts once. A second request for the same deal returns the stored
record and never uploads again.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.crm.config import Settings, get_settings
from src.crm.webhooks.models import OfflineConversionModel
from src.crm.webhooks.repository import SessionFactory, parse_uuid
from src.crm.webhooks.schemas import ConversionCreate, ConversionRead, ConversionStatus

logger = structlog.get_logger(__name__)

_upload_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.ConnectError, httpx.TimeoutException)),
    reraise=True,
)


def _model_to_conversion(model: OfflineConversionModel) -> ConversionRead:
    return ConversionRead(
        id=str(model.id),
        deal_id=model.deal_id,
        gclid=model.gclid,
        conversion_name=model.conversion_name,
        conversion_value=model.conversion_value,
        conversion_time=model.conversion_time,
        status=ConversionStatus(model.status),
        platform_response=model.platform_response,
        sent_at=model.sent_at,
        created_at=model.created_at,
    )


class ConversionRepository:
    """Offline conversion records, unique per deal.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def find_by_deal(self, deal_id: str) -> ConversionRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(OfflineConversionModel).where(OfflineConversionModel.deal_id == deal_id)
            )
            model = result.scalar_one_or_none()
            return _model_to_conversion(model) if model is not None else None

    async def create_pending(
        self, data: ConversionCreate, conversion_time: datetime
    ) -> ConversionRead | None:
        """Insert a pending record.

        Returns:
            The new record, or None if the deal already has one (the unique
            constraint on ``deal_id`` settles concurrent inserts).
        """
        async for session in self._session_factory():
            model = OfflineConversionModel(
                deal_id=data.deal_id,
                gclid=data.gclid,
                conversion_name=data.conversion_name,
                conversion_value=data.conversion_value,
                conversion_time=conversion_time,
                status=ConversionStatus.PENDING.value,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            await session.refresh(model)
            return _model_to_conversion(model)

    async def _set_status(self, conversion_id: str, **values: Any) -> ConversionRead | None:
        cid = parse_uuid(conversion_id)
        if cid is None:
            return None
        async for session in self._session_factory():
            stmt = (
                update(OfflineConversionModel)
                .where(OfflineConversionModel.id == cid)
                .values(**values)
                .returning(OfflineConversionModel)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            await session.commit()
            return _model_to_conversion(model) if model is not None else None

    async def mark_sent(
        self, conversion_id: str, response: dict[str, Any], at: datetime
    ) -> ConversionRead | None:
        return await self._set_status(
            conversion_id,
            status=ConversionStatus.SENT.value,
            platform_response=response,
            sent_at=at,
        )

    async def mark_failed(self, conversion_id: str, error: str) -> ConversionRead | None:
        return await self._set_status(
            conversion_id,
            status=ConversionStatus.FAILED.value,
            platform_response={"error": error},
        )


class ConversionUploader:
    """Posts conversions to the ad platform's offline conversion endpoint.

    Args:
        endpoint: Upload URL. Empty disables uploads.
        api_key: Bearer token for the endpoint.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, endpoint: str, api_key: str = "", timeout: float = 10.0) -> None:
        self._endpoint = endpoint
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._endpoint)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    @_upload_retry
    async def upload(self, conversion: ConversionRead) -> dict[str, Any]:
        """Upload one conversion.

        Returns:
            The platform's JSON response (empty dict for an empty body).

        Raises:
            httpx.HTTPError: After retries are exhausted.
        """
        body = {
            "gclid": conversion.gclid,
            "conversion_action": conversion.conversion_name,
            "conversion_value": conversion.conversion_value,
            "conversion_date_time": conversion.conversion_time.isoformat(),
            "order_id": conversion.deal_id,
        }
        async with self._client() as client:
            response = await client.post(self._endpoint, json=body)
            response.raise_for_status()
            data = response.json() if response.content else {}
            logger.info(
                "conversion.uploaded",
                deal_id=conversion.deal_id,
                status_code=response.status_code,
            )
            return data if isinstance(data, dict) else {"response": data}


class ConversionService:
    """Record a won deal's conversion once and upload it.

    Args:
        repository: Conversion persistence.
        uploader: Ad platform client.
    """

    def __init__(self, repository: ConversionRepository, uploader: ConversionUploader) -> None:
        self._repository = repository
        self._uploader = uploader

    @classmethod
    def from_settings(
        cls, session_factory: SessionFactory, settings: Settings | None = None
    ) -> ConversionService:
        settings = settings or get_settings()
        return cls(
            ConversionRepository(session_factory),
            ConversionUploader(
                settings.ADS_CONVERSION_ENDPOINT,
                settings.ADS_CONVERSION_API_KEY,
                timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
            ),
        )

    async def record(self, data: ConversionCreate) -> tuple[ConversionRead, bool]:
        """Record and upload a conversion.

        Returns:
            ``(conversion, duplicate)``; ``duplicate`` is True when the deal
            already had a conversion, which is returned unchanged.
        """
        existing = await self._repository.find_by_deal(data.deal_id)
        if existing is not None:
            logger.info("conversion.duplicate", deal_id=data.deal_id, conversion_id=existing.id)
            return existing, True

        conversion_time = data.conversion_time or datetime.now(timezone.utc)
        created = await self._repository.create_pending(data, conversion_time)
        if created is None:
            existing = await self._repository.find_by_deal(data.deal_id)
            if existing is None:
                raise RuntimeError(f"Conversion for deal {data.deal_id} vanished after conflict")
            return existing, True

        if not self._uploader.enabled:
            logger.info("conversion.upload_disabled", deal_id=data.deal_id)
            return created, False

        try:
            response = await self._uploader.upload(created)
        except httpx.HTTPError as exc:
            logger.warning("conversion.upload_failed", deal_id=data.deal_id, error=str(exc))
            failed = await self._repository.mark_failed(created.id, str(exc))
            return failed or created, False

        sent = await self._repository.mark_sent(created.id, response, datetime.now(timezone.utc))
        return sent or created, False
