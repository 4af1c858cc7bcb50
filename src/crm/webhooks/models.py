"""Webhook persistence models.

Six SQLAlchemy models on the shared declarative Base:
- WebhookModel: Outbound subscription with retry policy and failure counter
- WebhookLogModel: One row per outbound attempt, grouped by event_id lineage
- InboundWebhookModel: Receive endpoint with token, mappings and telemetry
- InboundWebhookLogModel: One row per inbound request
- DealModel: Lead records created by inbound ingestion
- OfflineConversionModel: Ad-platform conversion uploads, unique per deal

Logs are owned by their webhook (FK with ON DELETE CASCADE). Secrets stay
on the webhook rows and are never copied into logs.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.crm.core.database import Base


def _uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )


def _created_at() -> Mapped[datetime]:
    return mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class WebhookModel(Base):
    """Outbound subscription.

    ``consecutive_failures`` counts lineages that ended ``failed`` since the
    last success. It is only modified through single conditional UPDATE
    statements in the repository.
    """

    __tablename__ = "webhooks"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    url: Mapped[str] = mapped_column(String(2000), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False, server_default="POST")
    headers: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json"), nullable=False
    )
    events: Mapped[list] = mapped_column(
        JSONB, default=list, server_default=text("'[]'::jsonb"), nullable=False
    )
    secret_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    ip_whitelist: Mapped[list | None] = mapped_column(JSON, nullable=True)
    retry_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("3"))
    consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class WebhookLogModel(Base):
    """One outbound delivery attempt.

    Rows sharing ``(webhook_id, event_id)`` form a lineage; ``attempt`` is
    1-based and strictly increasing within it.
    """

    __tablename__ = "webhook_logs"
    __table_args__ = (
        Index("ix_webhook_logs_webhook_created", "webhook_id", "created_at"),
        Index("ix_webhook_logs_lineage", "webhook_id", "event_id", "attempt"),
        Index("ix_webhook_logs_status_created", "status", "created_at"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    webhook_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False,
    )
    event_id: Mapped[str] = mapped_column(String(200), nullable=False)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, server_default="pending")
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()


class InboundWebhookModel(Base):
    """Receive endpoint addressed by its URL-embedded ``secret_token``."""

    __tablename__ = "inbound_webhooks"

    id: Mapped[uuid.UUID] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    pipeline_id: Mapped[str] = mapped_column(String(100), nullable=False)
    phase_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    secret_token: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    hmac_secret: Mapped[str | None] = mapped_column(String(500), nullable=True)
    field_mappings: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json"), nullable=False
    )
    default_tags: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json"), nullable=False
    )
    default_temperature: Mapped[str] = mapped_column(
        String(10), nullable=False, server_default="warm"
    )
    ip_whitelist: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    requests_today: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    last_request_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class InboundWebhookLogModel(Base):
    __tablename__ = "inbound_webhook_logs"
    __table_args__ = (
        Index("ix_inbound_logs_webhook_created", "inbound_webhook_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    inbound_webhook_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("inbound_webhooks.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_ip: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    mapped_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    deal_created_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = _created_at()


class DealModel(Base):
    """Lead created by inbound ingestion.

    ``identity_email``/``identity_phone`` hold the normalized lead identity
    used by the dedup window query.
    """

    __tablename__ = "deals"
    __table_args__ = (
        Index("ix_deals_inbound_email", "inbound_webhook_id", "identity_email", "created_at"),
        Index("ix_deals_inbound_phone", "inbound_webhook_id", "identity_phone", "created_at"),
    )

    id: Mapped[uuid.UUID] = _uuid_pk()
    pipeline_id: Mapped[str] = mapped_column(String(100), nullable=False)
    phase_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    contact_name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    company: Mapped[str | None] = mapped_column(String(300), nullable=True)
    value: Mapped[float] = mapped_column(Float, nullable=False, server_default=text("0"))
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tags: Mapped[list] = mapped_column(
        JSON, default=list, server_default=text("'[]'::json"), nullable=False
    )
    temperature: Mapped[str] = mapped_column(String(10), nullable=False, server_default="warm")
    source: Mapped[str] = mapped_column(String(100), nullable=False, server_default="Webhook")
    inbound_webhook_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("inbound_webhooks.id", ondelete="SET NULL"),
        nullable=True,
    )
    identity_email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    identity_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    raw_payload: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json"), nullable=False
    )
    created_at: Mapped[datetime] = _created_at()


class OfflineConversionModel(Base):
    __tablename__ = "offline_conversions"

    id: Mapped[uuid.UUID] = _uuid_pk()
    deal_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    gclid: Mapped[str] = mapped_column(String(500), nullable=False)
    conversion_name: Mapped[str] = mapped_column(String(200), nullable=False)
    conversion_value: Mapped[float] = mapped_column(Float, nullable=False)
    conversion_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, server_default="pending")
    platform_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = _created_at()
