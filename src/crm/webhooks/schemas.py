"""Pydantic schemas for outbound/inbound webhooks, logs, deals and conversions.

Defines all structured types for webhook automation:
- Enums: WebhookEvent, HttpMethod, DeliveryStatus, InboundStatus,
  FieldTransform, TargetField, Temperature, ConversionStatus
- Outbound subscriptions: WebhookCreate/Update/Read
- Inbound endpoints: FieldMapping, InboundWebhookCreate/Update/Read
- Deals: DealSnapshot (outbound data), DealCreate/Read (ingested leads)
- Log ledger: WebhookLogRead, InboundLogRead, LogFilter, LogOutcome, WebhookStats
- Delivery: DeliveryResult, FailureOutcome, IngestResult
- Offline conversions: ConversionCreate/Read

Secrets are held as ``SecretStr`` so they never render in reprs or logs.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

TEST_EVENT = "test"


# ── Enums ───────────────────────────────────────────────────────────────────


class WebhookEvent(str, Enum):
    """Deal lifecycle events a webhook can subscribe to."""

    DEAL_CREATED = "deal_created"
    DEAL_WON = "deal_won"
    DEAL_LOST = "deal_lost"
    DEAL_MOVED = "deal_moved"
    DEAL_UPDATED = "deal_updated"
    DEAL_ARCHIVED = "deal_archived"


class HttpMethod(str, Enum):
    POST = "POST"
    PUT = "PUT"


class DeliveryStatus(str, Enum):
    """Outbound log state: pending -> (retrying)* -> success | failed."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryStatus.SUCCESS, DeliveryStatus.FAILED)


class InboundStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    REJECTED = "rejected"


class FieldTransform(str, Enum):
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    FORMAT_PHONE = "format_phone"
    TRIM = "trim"


class TargetField(str, Enum):
    """CRM deal fields an inbound mapping may write."""

    CONTACT_NAME = "contact_name"
    EMAIL = "email"
    PHONE = "phone"
    VALUE = "value"
    NOTES = "notes"
    COMPANY = "company"


class Temperature(str, Enum):
    COLD = "cold"
    WARM = "warm"
    HOT = "hot"


class ConversionStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# ── Outbound Webhooks ───────────────────────────────────────────────────────


def _check_url(value: str) -> str:
    if not value.startswith(("http://", "https://")):
        raise ValueError("url must start with http:// or https://")
    return value


class WebhookCreate(BaseModel):
    """Schema for creating an outbound webhook subscription."""

    name: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1, max_length=2000)
    method: HttpMethod = HttpMethod.POST
    headers: dict[str, str] = Field(default_factory=dict)
    events: list[WebhookEvent] = Field(min_length=1)
    secret_key: SecretStr | None = None
    is_active: bool = True
    ip_whitelist: list[str] | None = None
    retry_enabled: bool = True
    max_retries: int = Field(default=3, ge=0, le=10)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        return _check_url(value)


class WebhookUpdate(BaseModel):
    """Schema for partial webhook updates (all fields optional)."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    url: str | None = None
    method: HttpMethod | None = None
    headers: dict[str, str] | None = None
    events: list[WebhookEvent] | None = None
    secret_key: SecretStr | None = None
    is_active: bool | None = None
    ip_whitelist: list[str] | None = None
    retry_enabled: bool | None = None
    max_retries: int | None = Field(default=None, ge=0, le=10)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str | None) -> str | None:
        return _check_url(value) if value is not None else value


class WebhookRead(BaseModel):
    """Schema for reading a webhook (includes counters and timestamps)."""

    id: str
    name: str
    url: str
    method: HttpMethod = HttpMethod.POST
    headers: dict[str, str] = Field(default_factory=dict)
    events: list[str] = Field(default_factory=list)
    secret_key: SecretStr | None = None
    is_active: bool = True
    ip_whitelist: list[str] | None = None
    retry_enabled: bool = True
    max_retries: int = 3
    consecutive_failures: int = 0
    last_triggered_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_secret_key(self) -> bool:
        return bool(self.secret_key and self.secret_key.get_secret_value())


# ── Inbound Webhooks ────────────────────────────────────────────────────────


class FieldMapping(BaseModel):
    """Source JSON path -> target CRM field, with an optional transform."""

    source: str = Field(min_length=1, max_length=500)
    target: TargetField
    transform: FieldTransform | None = None


class InboundWebhookCreate(BaseModel):
    """Schema for creating an inbound receive endpoint."""

    name: str = Field(min_length=1, max_length=200)
    pipeline_id: str = Field(min_length=1)
    phase_id: str | None = None
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    default_tags: list[str] = Field(default_factory=list)
    default_temperature: Temperature = Temperature.WARM
    hmac_secret: SecretStr | None = None
    ip_whitelist: list[str] | None = None
    is_active: bool = True


class InboundWebhookUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    pipeline_id: str | None = None
    phase_id: str | None = None
    field_mappings: list[FieldMapping] | None = None
    default_tags: list[str] | None = None
    default_temperature: Temperature | None = None
    hmac_secret: SecretStr | None = None
    ip_whitelist: list[str] | None = None
    is_active: bool | None = None


class InboundWebhookRead(BaseModel):
    id: str
    name: str
    pipeline_id: str
    phase_id: str | None = None
    secret_token: SecretStr
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    default_tags: list[str] = Field(default_factory=list)
    default_temperature: Temperature = Temperature.WARM
    hmac_secret: SecretStr | None = None
    ip_whitelist: list[str] | None = None
    is_active: bool = True
    requests_today: int = 0
    last_request_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_hmac_secret(self) -> bool:
        return bool(self.hmac_secret and self.hmac_secret.get_secret_value())


# ── Deals ───────────────────────────────────────────────────────────────────


class DealSnapshot(BaseModel):
    """Deal fields carried in the ``data`` member of an outbound envelope.

    The event source owns the deal shape; unknown fields pass through.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    name: str | None = None
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    value: float | None = None
    pipeline: str | None = None
    stage: str | None = None
    tags: list[str] = Field(default_factory=list)
    temperature: str | None = None
    source: str | None = None
    utm_data: dict[str, str] = Field(default_factory=dict)


class DealCreate(BaseModel):
    """Mapped inbound lead, ready to become a deal."""

    pipeline_id: str
    phase_id: str | None = None
    title: str
    contact_name: str
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    value: float = 0.0
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    temperature: Temperature = Temperature.WARM
    source: str = "Webhook"
    inbound_webhook_id: str | None = None
    identity_email: str | None = None
    identity_phone: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)


class DealRead(DealCreate):
    id: str
    created_at: datetime | None = None


# ── Log Ledger ──────────────────────────────────────────────────────────────


class WebhookLogRead(BaseModel):
    id: str
    webhook_id: str
    event_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempt: int = 1
    status: DeliveryStatus = DeliveryStatus.PENDING
    response_status: int | None = None
    response_body: str | None = None
    response_time_ms: int | None = None
    error_message: str | None = None
    next_retry_at: datetime | None = None
    created_at: datetime | None = None


class InboundLogRead(BaseModel):
    id: str
    inbound_webhook_id: str
    source_ip: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    mapped_data: dict[str, Any] | None = None
    deal_created_id: str | None = None
    status: InboundStatus
    error_message: str | None = None
    created_at: datetime | None = None


class LogFilter(BaseModel):
    """Query filter shared by outbound and inbound log queries."""

    webhook_id: str | None = None
    event_id: str | None = None
    status: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int = Field(default=100, ge=1, le=500)


class LogOutcome(BaseModel):
    """Fields written to an outbound log row after its HTTP call."""

    status: DeliveryStatus
    response_status: int | None = None
    response_body: str | None = None
    response_time_ms: int | None = None
    error_message: str | None = None
    next_retry_at: datetime | None = None


class WebhookStats(BaseModel):
    """Daily delivery summary for the management dashboard."""

    total_today: int = 0
    success_count: int = 0
    failed_count: int = 0
    avg_response_time_ms: int = 0
    active_webhooks: int = 0
    webhooks_with_errors: int = 0


# ── Delivery ────────────────────────────────────────────────────────────────


class DeliveryResult(BaseModel):
    """Outcome of one outbound HTTP call."""

    success: bool
    status_code: int | None = None
    body: str | None = None
    error: str | None = None
    time_ms: int = 0


class FailureOutcome(BaseModel):
    """Counter state after an atomic failure increment."""

    consecutive_failures: int
    deactivated: bool = False


class IngestResult(BaseModel):
    """Receive endpoint answer: HTTP status plus JSON body."""

    status_code: int
    body: dict[str, Any]
    log_id: str | None = None
    deal_id: str | None = None


# ── Offline Conversions ─────────────────────────────────────────────────────


class ConversionCreate(BaseModel):
    deal_id: str = Field(min_length=1)
    gclid: str = Field(min_length=1)
    conversion_value: float = Field(ge=0)
    conversion_time: datetime | None = None
    conversion_name: str = "CRM_Lead_Ganho"


class ConversionRead(BaseModel):
    id: str
    deal_id: str
    gclid: str
    conversion_name: str
    conversion_value: float
    conversion_time: datetime
    status: ConversionStatus = ConversionStatus.PENDING
    platform_response: dict[str, Any] | None = None
    sent_at: datetime | None = None
    created_at: datetime | None = None
