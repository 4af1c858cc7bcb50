"""Inbound ingestor -- authenticate, map, dedup and turn leads into deals.

Checks run in a fixed order and the first failure decides the outcome:

    token -> (telemetry) -> active -> rate limit -> IP allow-list -> HMAC
          -> JSON body -> field mapping -> dedup -> deal creation

Every request with a resolvable token writes exactly one inbound log row.
Requests with an unknown token have no owner to log against; they only
produce a structured warning.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.crm.config import Settings, get_settings
from src.crm.core.monitoring import inbound_requests_total
from src.crm.webhooks.errors import (
    AuthError,
    ConfigError,
    DealCreationError,
    DuplicateError,
    ForbiddenIPError,
    RateLimitError,
    ValidationError,
    WebhookError,
)
from src.crm.webhooks.guard import InboundGuard
from src.crm.webhooks.log_store import DeliveryLogStore
from src.crm.webhooks.payload import (
    JSONValue,
    lead_identity,
    map_fields,
    parse_deal_value,
    parse_json_object,
)
from src.crm.webhooks.repository import DealRepository, InboundWebhookRepository
from src.crm.webhooks.schemas import (
    DealCreate,
    InboundStatus,
    InboundWebhookRead,
    IngestResult,
    TargetField,
)
from src.crm.webhooks.signing import SIGNATURE_HEADER, verify_signature

logger = structlog.get_logger(__name__)

_RAW_BODY_LOG_CHARS = 5000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ip_allowed(source_ip: str | None, whitelist: list[str] | None) -> bool:
    """Check a caller against an allow-list of IPs, CIDR ranges or ``*``.

    An empty or missing list allows everyone.
    """
    if not whitelist:
        return True
    if "*" in whitelist:
        return True
    if not source_ip:
        return False
    try:
        address = ipaddress.ip_address(source_ip)
    except ValueError:
        return source_ip in whitelist

    for entry in whitelist:
        entry = entry.strip()
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            if entry == source_ip:
                return True
    return False


class InboundIngestor:
    """Process requests arriving at ``/receive/{secret_token}``.

    Args:
        inbound: Inbound webhook repository (token lookup, telemetry).
        deals: Deal repository (dedup lookup, creation).
        logs: Delivery log store for the inbound log row.
        guard: Redis rate limiter and lead claims.
        settings: Dedup window, rate limit and default contact name.
        clock: Injectable UTC clock.
    """

    def __init__(
        self,
        inbound: InboundWebhookRepository,
        deals: DealRepository,
        logs: DeliveryLogStore,
        guard: InboundGuard,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._inbound = inbound
        self._deals = deals
        self._logs = logs
        self._guard = guard
        self._settings = settings or get_settings()
        self._clock = clock

    async def ingest(
        self,
        secret_token: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        source_ip: str | None,
        pipeline_id: str | None = None,
    ) -> IngestResult:
        """Run the full check sequence for one request.

        Args:
            secret_token: Token from the receive URL.
            raw_body: Exact request body (HMAC is computed over it).
            headers: Request headers (case-insensitive mapping).
            source_ip: Caller IP as resolved by the route.
            pipeline_id: Optional pipeline segment of the legacy URL form;
                must match the webhook's pipeline when given.

        Returns:
            IngestResult with HTTP status and JSON body.
        """
        webhook = await self._inbound.get_by_token(secret_token)
        if webhook is None or (pipeline_id is not None and pipeline_id != webhook.pipeline_id):
            inbound_requests_total.labels(status="unauthenticated").inc()
            logger.warning("inbound.unknown_token", source_ip=source_ip)
            error = AuthError("Webhook not found")
            return IngestResult(
                status_code=error.http_status,
                body={"success": False, "error": error.message},
            )

        now = self._clock()
        await self._inbound.record_request(webhook.id, now)

        payload, parse_error = self._parse(raw_body)
        mapped_data: dict[str, Any] | None = None
        try:
            await self._authorize(webhook, raw_body, headers, source_ip)
            if parse_error is not None:
                raise parse_error

            mapped = map_fields(payload, webhook.field_mappings)
            deal_data = self._build_deal(webhook, mapped, payload)
            mapped_data = deal_data.model_dump(
                mode="json",
                exclude={"raw_payload", "identity_email", "identity_phone"},
            )
            deal = await self._create_unique(webhook, deal_data, now)
        except WebhookError as exc:
            log = await self._logs.append_inbound(
                webhook.id,
                source_ip,
                payload,
                InboundStatus(exc.log_status),
                mapped_data=mapped_data,
                error_message=exc.message,
            )
            inbound_requests_total.labels(status=exc.log_status).inc()
            logger.info(
                "inbound.request_not_ingested",
                inbound_webhook_id=webhook.id,
                status=exc.log_status,
                error_type=type(exc).__name__,
                error=exc.message,
                log_id=log.id,
            )
            return IngestResult(
                status_code=exc.http_status,
                body={"success": False, "error": exc.message, "log_id": log.id},
                log_id=log.id,
            )

        log = await self._logs.append_inbound(
            webhook.id,
            source_ip,
            payload,
            InboundStatus.SUCCESS,
            mapped_data=mapped_data,
            deal_created_id=deal.id,
        )
        inbound_requests_total.labels(status=InboundStatus.SUCCESS.value).inc()
        logger.info(
            "inbound.deal_created",
            inbound_webhook_id=webhook.id,
            deal_id=deal.id,
            log_id=log.id,
        )
        return IngestResult(
            status_code=200,
            body={
                "success": True,
                "message": "Lead received and deal created",
                "deal_id": deal.id,
                "log_id": log.id,
            },
            log_id=log.id,
            deal_id=deal.id,
        )

    # ── Steps ───────────────────────────────────────────────────────────────

    @staticmethod
    def _parse(raw_body: bytes) -> tuple[dict[str, JSONValue], ValidationError | None]:
        """Parse up front so rejected requests still log their payload."""
        try:
            return parse_json_object(raw_body), None
        except ValidationError as exc:
            raw_text = raw_body.decode("utf-8", errors="replace")[:_RAW_BODY_LOG_CHARS]
            return {"_raw": raw_text}, exc

    async def _authorize(
        self,
        webhook: InboundWebhookRead,
        raw_body: bytes,
        headers: Mapping[str, str],
        source_ip: str | None,
    ) -> None:
        if not webhook.is_active:
            raise ConfigError("Webhook is inactive")

        if not await self._guard.allow_request(webhook.id):
            raise RateLimitError(
                f"Rate limit exceeded ({self._settings.INBOUND_RATE_LIMIT_PER_MINUTE} req/min)"
            )

        if not ip_allowed(source_ip, webhook.ip_whitelist):
            raise ForbiddenIPError(f"IP not whitelisted: {source_ip or 'unknown'}")

        if webhook.has_hmac_secret:
            signature = headers.get(SIGNATURE_HEADER) or headers.get(SIGNATURE_HEADER.lower())
            if not verify_signature(raw_body, signature, webhook.hmac_secret.get_secret_value()):
                raise AuthError("Invalid HMAC signature")

    def _build_deal(
        self,
        webhook: InboundWebhookRead,
        mapped: dict[str, str],
        payload: dict[str, JSONValue],
    ) -> DealCreate:
        """Apply defaults to mapped fields. Raises MappingError on a bad value."""
        raw_name = payload.get("name")
        contact_name = (
            mapped.get(TargetField.CONTACT_NAME.value, "").strip()
            or (raw_name.strip() if isinstance(raw_name, str) else "")
            or self._settings.INBOUND_DEFAULT_CONTACT_NAME
        )
        company = mapped.get(TargetField.COMPANY.value) or None
        email, phone_digits = lead_identity(mapped)
        return DealCreate(
            pipeline_id=webhook.pipeline_id,
            phase_id=webhook.phase_id,
            title=f"{contact_name} - {company}" if company else contact_name,
            contact_name=contact_name,
            email=mapped.get(TargetField.EMAIL.value) or None,
            phone=mapped.get(TargetField.PHONE.value) or None,
            company=company,
            value=parse_deal_value(mapped.get(TargetField.VALUE.value, "")),
            notes=mapped.get(TargetField.NOTES.value) or None,
            tags=list(webhook.default_tags),
            temperature=webhook.default_temperature,
            source="Webhook",
            inbound_webhook_id=webhook.id,
            identity_email=email,
            identity_phone=phone_digits,
            raw_payload=payload,
        )

    async def _create_unique(
        self, webhook: InboundWebhookRead, deal_data: DealCreate, now: datetime
    ):
        """Reject repeats of a lead identity, then create the deal."""
        email, phone = deal_data.identity_email, deal_data.identity_phone
        claimed = False
        if email or phone:
            since = now - timedelta(minutes=self._settings.INBOUND_DEDUP_WINDOW_MINUTES)
            existing = await self._deals.find_duplicate(webhook.id, email, phone, since)
            if existing is not None:
                raise DuplicateError(
                    f"Duplicate lead: deal {existing.id} was created from the same "
                    f"contact within the last {self._settings.INBOUND_DEDUP_WINDOW_MINUTES} minutes"
                )
            if not await self._guard.claim_lead(webhook.id, email, phone):
                raise DuplicateError("Duplicate lead: the same contact is already being processed")
            claimed = True

        try:
            return await self._deals.create_deal(deal_data)
        except Exception as exc:
            logger.exception("inbound.deal_creation_failed", inbound_webhook_id=webhook.id)
            if claimed:
                await self._guard.release_lead(webhook.id, email, phone)
            raise DealCreationError(f"Deal creation failed: {exc}") from exc
