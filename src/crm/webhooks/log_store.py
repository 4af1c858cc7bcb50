"""Delivery log store -- append-only ledger for both webhook directions.

Outbound rows follow ``pending -> (retrying)* -> success | failed``. A row
is appended as ``pending`` before its HTTP call and written exactly once
afterwards; ``finalize_attempt`` refuses rows that are already terminal.
Inbound rows are written once with their final status.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm.webhooks.models import InboundWebhookLogModel, WebhookLogModel, WebhookModel
from src.crm.webhooks.repository import parse_uuid
from src.crm.webhooks.schemas import (
    DeliveryStatus,
    InboundLogRead,
    InboundStatus,
    LogFilter,
    LogOutcome,
    WebhookLogRead,
    WebhookStats,
)

logger = structlog.get_logger(__name__)

_TERMINAL = (DeliveryStatus.SUCCESS.value, DeliveryStatus.FAILED.value)


def _model_to_log(model: WebhookLogModel) -> WebhookLogRead:
    return WebhookLogRead(
        id=str(model.id),
        webhook_id=str(model.webhook_id),
        event_id=model.event_id,
        event_type=model.event_type,
        payload=model.payload or {},
        attempt=model.attempt,
        status=model.status,
        response_status=model.response_status,
        response_body=model.response_body,
        response_time_ms=model.response_time_ms,
        error_message=model.error_message,
        next_retry_at=model.next_retry_at,
        created_at=model.created_at,
    )


def _model_to_inbound_log(model: InboundWebhookLogModel) -> InboundLogRead:
    return InboundLogRead(
        id=str(model.id),
        inbound_webhook_id=str(model.inbound_webhook_id),
        source_ip=model.source_ip,
        payload=model.payload or {},
        mapped_data=model.mapped_data,
        deal_created_id=str(model.deal_created_id) if model.deal_created_id else None,
        status=model.status,
        error_message=model.error_message,
        created_at=model.created_at,
    )


def _start_of_day(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class DeliveryLogStore:
    """Append and query outbound and inbound webhook logs.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Outbound ────────────────────────────────────────────────────────────

    async def append_attempt(
        self,
        webhook_id: str,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        attempt: int,
    ) -> str:
        """Append a ``pending`` row for an attempt about to be sent.

        Returns:
            The new log row ID.
        """
        async for session in self._session_factory():
            model = WebhookLogModel(
                webhook_id=uuid.UUID(webhook_id),
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                attempt=attempt,
                status=DeliveryStatus.PENDING.value,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return str(model.id)

    async def finalize_attempt(self, log_id: str, outcome: LogOutcome) -> bool:
        """Write the outcome of an attempt.

        Returns:
            False if the row is already terminal (it is left untouched).
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(WebhookLogModel)
                .where(
                    WebhookLogModel.id == uuid.UUID(log_id),
                    WebhookLogModel.status.not_in(_TERMINAL),
                )
                .values(
                    status=outcome.status.value,
                    response_status=outcome.response_status,
                    response_body=outcome.response_body,
                    response_time_ms=outcome.response_time_ms,
                    error_message=outcome.error_message,
                    next_retry_at=outcome.next_retry_at,
                )
            )
            await session.commit()
            if result.rowcount == 0:
                logger.warning("webhook_log.finalize_refused", log_id=log_id)
                return False
            return True

    async def settle_lineage(self, webhook_id: str, event_id: str, error: str | None = None) -> int:
        """Move a lineage's remaining ``retrying`` rows to ``failed``.

        Called when the lineage reaches its terminal outcome so that every
        row ends absorbed.

        Returns:
            Number of rows settled.
        """
        values: dict[str, Any] = {
            "status": DeliveryStatus.FAILED.value,
            "next_retry_at": None,
        }
        if error is not None:
            values["error_message"] = error
        async for session in self._session_factory():
            result = await session.execute(
                update(WebhookLogModel)
                .where(
                    WebhookLogModel.webhook_id == uuid.UUID(webhook_id),
                    WebhookLogModel.event_id == event_id,
                    WebhookLogModel.status == DeliveryStatus.RETRYING.value,
                )
                .values(**values)
            )
            await session.commit()
            return result.rowcount

    async def get_log(self, log_id: str) -> WebhookLogRead | None:
        lid = parse_uuid(log_id)
        if lid is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(WebhookLogModel).where(WebhookLogModel.id == lid)
            )
            model = result.scalar_one_or_none()
            return _model_to_log(model) if model is not None else None

    async def lineage(self, webhook_id: str, event_id: str) -> list[WebhookLogRead]:
        """All attempts for one event occurrence, ordered by attempt."""
        async for session in self._session_factory():
            result = await session.execute(
                select(WebhookLogModel)
                .where(
                    WebhookLogModel.webhook_id == uuid.UUID(webhook_id),
                    WebhookLogModel.event_id == event_id,
                )
                .order_by(WebhookLogModel.attempt)
            )
            return [_model_to_log(m) for m in result.scalars().all()]

    async def query_outbound(self, filters: LogFilter) -> list[WebhookLogRead]:
        """Outbound logs, newest first, filtered by webhook, status and dates."""
        stmt = select(WebhookLogModel)
        if filters.webhook_id:
            wid = parse_uuid(filters.webhook_id)
            if wid is None:
                return []
            stmt = stmt.where(WebhookLogModel.webhook_id == wid)
        if filters.event_id:
            stmt = stmt.where(WebhookLogModel.event_id == filters.event_id)
        if filters.status:
            stmt = stmt.where(WebhookLogModel.status == filters.status)
        if filters.since:
            stmt = stmt.where(WebhookLogModel.created_at >= filters.since)
        if filters.until:
            stmt = stmt.where(WebhookLogModel.created_at < filters.until)
        stmt = stmt.order_by(WebhookLogModel.created_at.desc()).limit(filters.limit)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_model_to_log(m) for m in result.scalars().all()]

    # ── Inbound ─────────────────────────────────────────────────────────────

    async def append_inbound(
        self,
        inbound_webhook_id: str,
        source_ip: str | None,
        payload: dict[str, Any],
        status: InboundStatus,
        mapped_data: dict[str, Any] | None = None,
        deal_created_id: str | None = None,
        error_message: str | None = None,
    ) -> InboundLogRead:
        """Write the single log row of an inbound request."""
        async for session in self._session_factory():
            model = InboundWebhookLogModel(
                inbound_webhook_id=uuid.UUID(inbound_webhook_id),
                source_ip=source_ip,
                payload=payload,
                mapped_data=mapped_data,
                deal_created_id=uuid.UUID(deal_created_id) if deal_created_id else None,
                status=status.value,
                error_message=error_message,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_inbound_log(model)

    async def query_inbound(self, filters: LogFilter) -> list[InboundLogRead]:
        stmt = select(InboundWebhookLogModel)
        if filters.webhook_id:
            iid = parse_uuid(filters.webhook_id)
            if iid is None:
                return []
            stmt = stmt.where(InboundWebhookLogModel.inbound_webhook_id == iid)
        if filters.status:
            stmt = stmt.where(InboundWebhookLogModel.status == filters.status)
        if filters.since:
            stmt = stmt.where(InboundWebhookLogModel.created_at >= filters.since)
        if filters.until:
            stmt = stmt.where(InboundWebhookLogModel.created_at < filters.until)
        stmt = stmt.order_by(InboundWebhookLogModel.created_at.desc()).limit(filters.limit)

        async for session in self._session_factory():
            result = await session.execute(stmt)
            return [_model_to_inbound_log(m) for m in result.scalars().all()]

    # ── Stats ───────────────────────────────────────────────────────────────

    async def stats(self, now: datetime | None = None) -> WebhookStats:
        """Today's outbound summary plus webhook health counts."""
        day_start = _start_of_day(now or datetime.now(timezone.utc))
        day_end = day_start + timedelta(days=1)
        async for session in self._session_factory():
            logs = await session.execute(
                select(
                    func.count(WebhookLogModel.id),
                    func.count(WebhookLogModel.id).filter(
                        WebhookLogModel.status == DeliveryStatus.SUCCESS.value
                    ),
                    func.count(WebhookLogModel.id).filter(
                        WebhookLogModel.status == DeliveryStatus.FAILED.value
                    ),
                    func.avg(WebhookLogModel.response_time_ms),
                ).where(
                    WebhookLogModel.created_at >= day_start,
                    WebhookLogModel.created_at < day_end,
                )
            )
            total, success, failed, avg_ms = logs.one()

            hooks = await session.execute(
                select(
                    func.count(WebhookModel.id).filter(WebhookModel.is_active.is_(True)),
                    func.count(WebhookModel.id).filter(WebhookModel.consecutive_failures > 0),
                )
            )
            active, with_errors = hooks.one()

            return WebhookStats(
                total_today=total or 0,
                success_count=success or 0,
                failed_count=failed or 0,
                avg_response_time_ms=round(avg_ms) if avg_ms is not None else 0,
                active_webhooks=active or 0,
                webhooks_with_errors=with_errors or 0,
            )
