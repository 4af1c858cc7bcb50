"""Webhook repositories -- async CRUD and atomic counter updates.

Provides three repositories with the session_factory callable pattern:
- WebhookRepository: outbound subscriptions, failure streak bookkeeping
- InboundWebhookRepository: receive endpoints, token lookup, telemetry
- DealRepository: deals created from inbound leads, dedup lookups

Shared counters (``consecutive_failures``, ``requests_today``) are only
changed by single UPDATE ... RETURNING statements, so concurrent
deliveries and requests never lose increments.
"""

from __future__ import annotations

import hmac
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

import structlog
from pydantic import SecretStr
from sqlalchemy import case, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm.core.security import generate_token
from src.crm.webhooks.models import DealModel, InboundWebhookModel, WebhookModel
from src.crm.webhooks.schemas import (
    DealCreate,
    DealRead,
    FailureOutcome,
    FieldMapping,
    InboundWebhookCreate,
    InboundWebhookRead,
    InboundWebhookUpdate,
    WebhookCreate,
    WebhookRead,
    WebhookUpdate,
)

logger = structlog.get_logger(__name__)

SessionFactory = Callable[..., AsyncGenerator[AsyncSession, None]]


def parse_uuid(value: str) -> uuid.UUID | None:
    """Parse an id from a URL or payload; malformed ids match nothing."""
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _secret_value(secret: SecretStr | None) -> str | None:
    """Unwrap a SecretStr; an empty secret clears the stored value."""
    if secret is None:
        return None
    return secret.get_secret_value() or None


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_webhook(model: WebhookModel) -> WebhookRead:
    """Convert WebhookModel to WebhookRead schema."""
    return WebhookRead(
        id=str(model.id),
        name=model.name,
        url=model.url,
        method=model.method,
        headers=model.headers or {},
        events=list(model.events or []),
        secret_key=SecretStr(model.secret_key) if model.secret_key else None,
        is_active=model.is_active,
        ip_whitelist=model.ip_whitelist,
        retry_enabled=model.retry_enabled,
        max_retries=model.max_retries,
        consecutive_failures=model.consecutive_failures,
        last_triggered_at=model.last_triggered_at,
        last_success_at=model.last_success_at,
        last_error=model.last_error,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_inbound(model: InboundWebhookModel) -> InboundWebhookRead:
    """Convert InboundWebhookModel to InboundWebhookRead schema."""
    mappings = []
    for raw in model.field_mappings or []:
        try:
            mappings.append(FieldMapping.model_validate(raw))
        except ValueError:
            logger.warning(
                "inbound.invalid_field_mapping_skipped",
                inbound_webhook_id=str(model.id),
                mapping=raw,
            )
    return InboundWebhookRead(
        id=str(model.id),
        name=model.name,
        pipeline_id=model.pipeline_id,
        phase_id=model.phase_id,
        secret_token=SecretStr(model.secret_token),
        field_mappings=mappings,
        default_tags=list(model.default_tags or []),
        default_temperature=model.default_temperature,
        hmac_secret=SecretStr(model.hmac_secret) if model.hmac_secret else None,
        ip_whitelist=model.ip_whitelist,
        is_active=model.is_active,
        requests_today=model.requests_today,
        last_request_at=model.last_request_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        pipeline_id=model.pipeline_id,
        phase_id=model.phase_id,
        title=model.title,
        contact_name=model.contact_name,
        email=model.email,
        phone=model.phone,
        company=model.company,
        value=model.value,
        notes=model.notes,
        tags=list(model.tags or []),
        temperature=model.temperature,
        source=model.source,
        inbound_webhook_id=str(model.inbound_webhook_id) if model.inbound_webhook_id else None,
        identity_email=model.identity_email,
        identity_phone=model.identity_phone,
        raw_payload=model.raw_payload or {},
        created_at=model.created_at,
    )


# ── Outbound Webhooks ───────────────────────────────────────────────────────


class WebhookRepository:
    """Async CRUD and counter updates for outbound webhooks.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create_webhook(self, data: WebhookCreate) -> WebhookRead:
        """Create a new outbound subscription."""
        async for session in self._session_factory():
            model = WebhookModel(
                name=data.name,
                url=data.url,
                method=data.method.value,
                headers=data.headers,
                events=[e.value for e in data.events],
                secret_key=_secret_value(data.secret_key),
                is_active=data.is_active,
                ip_whitelist=data.ip_whitelist,
                retry_enabled=data.retry_enabled,
                max_retries=data.max_retries,
                consecutive_failures=0,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_webhook(model)

    async def get_webhook(self, webhook_id: str) -> WebhookRead | None:
        """Get a webhook by ID, None if absent or the ID is malformed."""
        wid = parse_uuid(webhook_id)
        if wid is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(select(WebhookModel).where(WebhookModel.id == wid))
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_webhook(model)

    async def list_webhooks(self, active_only: bool = False) -> list[WebhookRead]:
        async for session in self._session_factory():
            stmt = select(WebhookModel).order_by(WebhookModel.created_at.desc())
            if active_only:
                stmt = stmt.where(WebhookModel.is_active.is_(True))
            result = await session.execute(stmt)
            return [_model_to_webhook(m) for m in result.scalars().all()]

    async def list_subscribed(self, event_type: str) -> list[WebhookRead]:
        """Active webhooks whose ``events`` contain ``event_type``."""
        async for session in self._session_factory():
            stmt = select(WebhookModel).where(
                WebhookModel.is_active.is_(True),
                WebhookModel.events.contains([event_type]),
            )
            result = await session.execute(stmt)
            return [_model_to_webhook(m) for m in result.scalars().all()]

    async def update_webhook(self, webhook_id: str, data: WebhookUpdate) -> WebhookRead | None:
        """Apply a partial update.

        Re-activating a webhook resets its failure streak so it gets a full
        ceiling's worth of attempts again.

        Returns:
            Updated WebhookRead, or None if the webhook does not exist.
        """
        wid = parse_uuid(webhook_id)
        if wid is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(select(WebhookModel).where(WebhookModel.id == wid))
            model = result.scalar_one_or_none()
            if model is None:
                return None

            fields = data.model_fields_set
            if "secret_key" in fields:
                model.secret_key = _secret_value(data.secret_key)
            if "ip_whitelist" in fields:
                model.ip_whitelist = data.ip_whitelist
            if data.is_active and not model.is_active:
                model.consecutive_failures = 0

            update_data = data.model_dump(
                mode="json",
                exclude_none=True,
                exclude={"secret_key", "ip_whitelist"},
            )
            for key, value in update_data.items():
                setattr(model, key, value)

            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_webhook(model)

    async def delete_webhook(self, webhook_id: str) -> bool:
        wid = parse_uuid(webhook_id)
        if wid is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(delete(WebhookModel).where(WebhookModel.id == wid))
            await session.commit()
            return result.rowcount > 0

    async def record_success(self, webhook_id: str, at: datetime) -> None:
        """Reset the failure streak after a successful delivery."""
        async for session in self._session_factory():
            await session.execute(
                update(WebhookModel)
                .where(WebhookModel.id == uuid.UUID(webhook_id))
                .values(
                    consecutive_failures=0,
                    last_success_at=at,
                    last_triggered_at=at,
                    last_error=None,
                )
            )
            await session.commit()

    async def record_attempt_error(self, webhook_id: str, error: str, at: datetime) -> None:
        """Note a failed attempt that will be retried (streak unchanged)."""
        async for session in self._session_factory():
            await session.execute(
                update(WebhookModel)
                .where(WebhookModel.id == uuid.UUID(webhook_id))
                .values(last_error=error, last_triggered_at=at)
            )
            await session.commit()

    async def record_failure(
        self, webhook_id: str, error: str, ceiling: int, at: datetime
    ) -> FailureOutcome | None:
        """Increment the failure streak; deactivate at the ceiling.

        One conditional UPDATE ... RETURNING, so concurrent lineages of the
        same webhook each count exactly once.

        Returns:
            New counter state, or None if the webhook no longer exists.
        """
        next_count = WebhookModel.consecutive_failures + 1
        async for session in self._session_factory():
            result = await session.execute(
                update(WebhookModel)
                .where(WebhookModel.id == uuid.UUID(webhook_id))
                .values(
                    consecutive_failures=next_count,
                    is_active=case(
                        (next_count >= ceiling, False),
                        else_=WebhookModel.is_active,
                    ),
                    last_error=error,
                    last_triggered_at=at,
                )
                .returning(WebhookModel.consecutive_failures, WebhookModel.is_active)
            )
            row = result.one_or_none()
            await session.commit()
            if row is None:
                return None
            count, is_active = row
            return FailureOutcome(
                consecutive_failures=count,
                deactivated=(not is_active and count >= ceiling),
            )


# ── Inbound Webhooks ────────────────────────────────────────────────────────


class InboundWebhookRepository:
    """Async CRUD, token lookup and telemetry for inbound receive endpoints.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create_inbound(self, data: InboundWebhookCreate) -> InboundWebhookRead:
        """Create a receive endpoint with a freshly generated secret token."""
        async for session in self._session_factory():
            model = InboundWebhookModel(
                name=data.name,
                pipeline_id=data.pipeline_id,
                phase_id=data.phase_id,
                secret_token=generate_token(),
                hmac_secret=_secret_value(data.hmac_secret),
                field_mappings=[m.model_dump(mode="json") for m in data.field_mappings],
                default_tags=data.default_tags,
                default_temperature=data.default_temperature.value,
                ip_whitelist=data.ip_whitelist,
                is_active=data.is_active,
                requests_today=0,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_inbound(model)

    async def get_inbound(self, inbound_id: str) -> InboundWebhookRead | None:
        iid = parse_uuid(inbound_id)
        if iid is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(InboundWebhookModel).where(InboundWebhookModel.id == iid)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_inbound(model)

    async def get_by_token(self, secret_token: str) -> InboundWebhookRead | None:
        """Resolve a receive URL token.

        The indexed lookup is confirmed with a constant-time comparison
        before the record is returned.
        """
        if not secret_token:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(InboundWebhookModel).where(
                    InboundWebhookModel.secret_token == secret_token
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            if not hmac.compare_digest(model.secret_token.encode(), secret_token.encode()):
                return None
            return _model_to_inbound(model)

    async def list_inbound(self) -> list[InboundWebhookRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(InboundWebhookModel).order_by(InboundWebhookModel.created_at.desc())
            )
            return [_model_to_inbound(m) for m in result.scalars().all()]

    async def update_inbound(
        self, inbound_id: str, data: InboundWebhookUpdate
    ) -> InboundWebhookRead | None:
        iid = parse_uuid(inbound_id)
        if iid is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                select(InboundWebhookModel).where(InboundWebhookModel.id == iid)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None

            fields = data.model_fields_set
            if "hmac_secret" in fields:
                model.hmac_secret = _secret_value(data.hmac_secret)
            if "ip_whitelist" in fields:
                model.ip_whitelist = data.ip_whitelist
            if "phase_id" in fields:
                model.phase_id = data.phase_id
            if data.name is not None:
                model.name = data.name
            if data.pipeline_id is not None:
                model.pipeline_id = data.pipeline_id
            if data.field_mappings is not None:
                model.field_mappings = [m.model_dump(mode="json") for m in data.field_mappings]
            if data.default_tags is not None:
                model.default_tags = data.default_tags
            if data.default_temperature is not None:
                model.default_temperature = data.default_temperature.value
            if data.is_active is not None:
                model.is_active = data.is_active

            model.updated_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(model)
            return _model_to_inbound(model)

    async def regenerate_token(self, inbound_id: str) -> InboundWebhookRead | None:
        """Rotate the receive URL token; the old URL stops working at once."""
        iid = parse_uuid(inbound_id)
        if iid is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(
                update(InboundWebhookModel)
                .where(InboundWebhookModel.id == iid)
                .values(secret_token=generate_token(), updated_at=datetime.now(timezone.utc))
                .returning(InboundWebhookModel)
            )
            model = result.scalar_one_or_none()
            await session.commit()
            if model is None:
                return None
            return _model_to_inbound(model)

    async def delete_inbound(self, inbound_id: str) -> bool:
        iid = parse_uuid(inbound_id)
        if iid is None:
            return False
        async for session in self._session_factory():
            result = await session.execute(
                delete(InboundWebhookModel).where(InboundWebhookModel.id == iid)
            )
            await session.commit()
            return result.rowcount > 0

    async def record_request(self, inbound_id: str, at: datetime) -> None:
        """Atomically bump ``requests_today`` and stamp ``last_request_at``."""
        async for session in self._session_factory():
            await session.execute(
                update(InboundWebhookModel)
                .where(InboundWebhookModel.id == uuid.UUID(inbound_id))
                .values(
                    requests_today=InboundWebhookModel.requests_today + 1,
                    last_request_at=at,
                )
            )
            await session.commit()

    async def reset_daily_counters(self) -> int:
        """Zero every ``requests_today``. Returns the number of rows touched."""
        async for session in self._session_factory():
            result = await session.execute(
                update(InboundWebhookModel)
                .where(InboundWebhookModel.requests_today != 0)
                .values(requests_today=0)
            )
            await session.commit()
            return result.rowcount


# ── Deals ───────────────────────────────────────────────────────────────────


class DealRepository:
    """Deals created from inbound leads.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def create_deal(self, data: DealCreate) -> DealRead:
        async for session in self._session_factory():
            model = DealModel(
                pipeline_id=data.pipeline_id,
                phase_id=data.phase_id,
                title=data.title,
                contact_name=data.contact_name,
                email=data.email,
                phone=data.phone,
                company=data.company,
                value=data.value,
                notes=data.notes,
                tags=data.tags,
                temperature=data.temperature.value,
                source=data.source,
                inbound_webhook_id=(
                    uuid.UUID(data.inbound_webhook_id) if data.inbound_webhook_id else None
                ),
                identity_email=data.identity_email,
                identity_phone=data.identity_phone,
                raw_payload=data.raw_payload,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_deal(model)

    async def get_deal(self, deal_id: str) -> DealRead | None:
        did = parse_uuid(deal_id)
        if did is None:
            return None
        async for session in self._session_factory():
            result = await session.execute(select(DealModel).where(DealModel.id == did))
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_deal(model)

    async def find_duplicate(
        self,
        inbound_webhook_id: str,
        email: str | None,
        phone: str | None,
        since: datetime,
    ) -> DealRead | None:
        """Most recent deal from the same inbound webhook matching either identity."""
        conditions = []
        if email:
            conditions.append(DealModel.identity_email == email)
        if phone:
            conditions.append(DealModel.identity_phone == phone)
        if not conditions:
            return None
        async for session in self._session_factory():
            stmt = (
                select(DealModel)
                .where(
                    DealModel.inbound_webhook_id == uuid.UUID(inbound_webhook_id),
                    DealModel.created_at >= since,
                    or_(*conditions),
                )
                .order_by(DealModel.created_at.desc())
                .limit(1)
            )
            result = await session.execute(stmt)
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_deal(model)
