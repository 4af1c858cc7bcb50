"""Outbound dispatcher -- fan deal events out to subscribed webhooks.

For each event the dispatcher selects the active webhooks subscribed to
its type, serializes one envelope, and runs one delivery lineage per
webhook concurrently. A lineage is the sequence of attempts of one event
occurrence to one webhook:

    attempt 1 --fail--> retrying --backoff--> attempt 2 ... --> success | failed

Attempts of one lineage never overlap: the first is guarded by the
lineage lock, later ones are claimed one at a time from the retry queue.
Failures in one webhook's lineage are logged and never reach the event
producer or the other webhooks.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.crm.config import Settings, get_settings
from src.crm.core.monitoring import (
    retry_queue_depth,
    webhook_auto_disabled_total,
    webhook_deliveries_total,
)
from src.crm.events.schemas import DealEvent
from src.crm.webhooks.delivery import WebhookSender
from src.crm.webhooks.log_store import DeliveryLogStore
from src.crm.webhooks.payload import build_envelope, serialize_envelope
from src.crm.webhooks.repository import WebhookRepository
from src.crm.webhooks.retry_queue import RetryQueue, RetryTask, compute_backoff
from src.crm.webhooks.schemas import (
    TEST_EVENT,
    DeliveryResult,
    DeliveryStatus,
    LogOutcome,
    WebhookRead,
)

logger = structlog.get_logger(__name__)

SKIPPED = "skipped"
ERROR = "error"

SAMPLE_DEAL: dict[str, Any] = {
    "id": "test-123",
    "name": "Negócio de Teste",
    "contact_name": "João Silva",
    "email": "joao@example.com",
    "phone": "+5511999999999",
    "value": 5000.00,
    "pipeline": "Vendas",
    "stage": "Qualificação",
    "tags": ["teste", "webhook"],
    "temperature": "hot",
    "source": "Webhook Test",
    "utm_data": {
        "utm_source": "test",
        "utm_medium": "webhook",
        "utm_campaign": "test_campaign",
    },
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutboundDispatcher:
    """Deliver deal events with signing, retry, and failure-streak tracking.

    Args:
        webhooks: Outbound webhook repository.
        logs: Delivery log store.
        sender: HTTP sender.
        retry_queue: Durable retry queue holding lineage locks.
        settings: Backoff, ceiling and lock TTL tunables.
        clock: Injectable UTC clock.
    """

    def __init__(
        self,
        webhooks: WebhookRepository,
        logs: DeliveryLogStore,
        sender: WebhookSender,
        retry_queue: RetryQueue,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._webhooks = webhooks
        self._logs = logs
        self._sender = sender
        self._retry_queue = retry_queue
        self._settings = settings or get_settings()
        self._clock = clock

    # ── Fan-out ─────────────────────────────────────────────────────────────

    async def dispatch(self, event: DealEvent) -> dict[str, str]:
        """Deliver ``event`` to every active subscribed webhook.

        Returns:
            Mapping of webhook id to lineage state after the first attempt
            (``success``, ``retrying``, ``failed``, ``skipped`` or ``error``).
        """
        event_type = event.event_type.value
        webhooks = await self._webhooks.list_subscribed(event_type)
        if not webhooks:
            logger.debug("webhook.no_subscribers", event_type=event_type, event_id=event.event_id)
            return {}

        envelope = build_envelope(
            event_type,
            event.deal.model_dump(mode="json"),
            timestamp=event.occurred_at,
        )
        body = serialize_envelope(envelope)

        outcomes = await asyncio.gather(
            *(self._deliver_isolated(webhook, event.event_id, event_type, body) for webhook in webhooks)
        )
        results = {webhook.id: outcome for webhook, outcome in zip(webhooks, outcomes)}

        logger.info(
            "webhook.event_dispatched",
            event_type=event_type,
            event_id=event.event_id,
            webhooks=len(webhooks),
            results=results,
        )
        return results

    async def _deliver_isolated(
        self, webhook: WebhookRead, event_id: str, event_type: str, body: bytes
    ) -> str:
        try:
            if not await self._retry_queue.acquire_lineage(
                webhook.id, event_id, self._settings.WEBHOOK_LINEAGE_LOCK_TTL_SECONDS
            ):
                logger.info(
                    "webhook.duplicate_lineage_skipped",
                    webhook_id=webhook.id,
                    event_id=event_id,
                    event_type=event_type,
                )
                return SKIPPED
            return await self._attempt(webhook, event_id, event_type, body, attempt=1)
        except Exception:
            logger.exception(
                "webhook.delivery_crashed",
                webhook_id=webhook.id,
                event_id=event_id,
                event_type=event_type,
            )
            await self._release_quietly(webhook.id, event_id)
            return ERROR

    # ── Retries ─────────────────────────────────────────────────────────────

    async def run_due_retries(self, limit: int | None = None) -> int:
        """Claim and run retries whose backoff has elapsed.

        Returns:
            Number of retry tasks claimed.
        """
        tasks = await self._retry_queue.claim_due(
            limit=limit or self._settings.WEBHOOK_RETRY_BATCH_SIZE
        )
        if tasks:
            await asyncio.gather(*(self._retry_isolated(task) for task in tasks))
        retry_queue_depth.set(await self._retry_queue.pending_count())
        return len(tasks)

    async def _retry_isolated(self, task: RetryTask) -> str:
        try:
            return await self.process_retry(task)
        except Exception:
            logger.exception(
                "webhook.retry_crashed",
                webhook_id=task.webhook_id,
                event_id=task.event_id,
                attempt=task.attempt,
            )
            await self._release_quietly(task.webhook_id, task.event_id)
            return ERROR

    async def process_retry(self, task: RetryTask) -> str:
        """Run one claimed retry, unless its webhook was deactivated meanwhile."""
        webhook = await self._webhooks.get_webhook(task.webhook_id)
        if webhook is None or not webhook.is_active:
            reason = "deleted" if webhook is None else "inactive"
            if webhook is not None:
                await self._logs.settle_lineage(
                    task.webhook_id, task.event_id, error=f"Retry cancelled: webhook {reason}"
                )
            await self._retry_queue.release_lineage(task.webhook_id, task.event_id)
            logger.info(
                "webhook.retry_dropped",
                webhook_id=task.webhook_id,
                event_id=task.event_id,
                attempt=task.attempt,
                reason=reason,
            )
            return SKIPPED
        return await self._attempt(
            webhook, task.event_id, task.event_type, task.body.encode("utf-8"), task.attempt
        )

    # ── Single Attempt ──────────────────────────────────────────────────────

    async def _attempt(
        self,
        webhook: WebhookRead,
        event_id: str,
        event_type: str,
        body: bytes,
        attempt: int,
    ) -> str:
        """Log, send, and record the outcome of one attempt.

        The caller holds the lineage lock. It is released here on a terminal
        outcome and kept while a retry is queued.
        """
        log_id = await self._logs.append_attempt(
            webhook.id, event_id, event_type, json.loads(body), attempt
        )
        result = await self._send_guarded(webhook, body, event_type, event_id, attempt)
        now = self._clock()

        if result.success:
            await self._logs.finalize_attempt(log_id, self._outcome(DeliveryStatus.SUCCESS, result))
            await self._logs.settle_lineage(webhook.id, event_id)
            await self._webhooks.record_success(webhook.id, now)
            await self._retry_queue.release_lineage(webhook.id, event_id)
            webhook_deliveries_total.labels(event_type=event_type, status="success").inc()
            logger.info(
                "webhook.delivered",
                webhook_id=webhook.id,
                event_id=event_id,
                attempt=attempt,
                status_code=result.status_code,
                time_ms=result.time_ms,
            )
            return DeliveryStatus.SUCCESS.value

        error = result.error or "Delivery failed"

        if webhook.retry_enabled and attempt <= webhook.max_retries:
            delay = compute_backoff(
                attempt,
                self._settings.WEBHOOK_RETRY_BASE_SECONDS,
                self._settings.WEBHOOK_RETRY_MAX_DELAY_SECONDS,
            )
            next_attempt = attempt + 1
            outcome = self._outcome(
                DeliveryStatus.RETRYING,
                result,
                error=f"{error} (retry {next_attempt}/{webhook.max_retries + 1} in {delay}s)",
                next_retry_at=now + timedelta(seconds=delay),
            )
            await self._logs.finalize_attempt(log_id, outcome)
            await self._webhooks.record_attempt_error(webhook.id, error, now)
            await self._retry_queue.schedule(
                RetryTask(
                    webhook_id=webhook.id,
                    event_id=event_id,
                    event_type=event_type,
                    attempt=next_attempt,
                    body=body.decode("utf-8"),
                ),
                delay,
            )
            webhook_deliveries_total.labels(event_type=event_type, status="retrying").inc()
            logger.warning(
                "webhook.delivery_retry_scheduled",
                webhook_id=webhook.id,
                event_id=event_id,
                attempt=attempt,
                next_attempt=next_attempt,
                delay_seconds=delay,
                error=error,
            )
            return DeliveryStatus.RETRYING.value

        await self._logs.finalize_attempt(log_id, self._outcome(DeliveryStatus.FAILED, result))
        await self._logs.settle_lineage(webhook.id, event_id)
        failure = await self._webhooks.record_failure(
            webhook.id, error, self._settings.WEBHOOK_FAILURE_CEILING, now
        )
        webhook_deliveries_total.labels(event_type=event_type, status="failed").inc()
        logger.warning(
            "webhook.delivery_failed",
            webhook_id=webhook.id,
            event_id=event_id,
            attempt=attempt,
            error=error,
            consecutive_failures=failure.consecutive_failures if failure else None,
        )

        if failure is not None and failure.deactivated:
            cancelled = await self.cancel_retries(webhook.id)
            if failure.consecutive_failures == self._settings.WEBHOOK_FAILURE_CEILING:
                webhook_auto_disabled_total.inc()
            logger.error(
                "webhook.auto_disabled",
                webhook_id=webhook.id,
                consecutive_failures=failure.consecutive_failures,
                ceiling=self._settings.WEBHOOK_FAILURE_CEILING,
                cancelled_retries=cancelled,
            )

        await self._retry_queue.release_lineage(webhook.id, event_id)
        return DeliveryStatus.FAILED.value

    async def _send_guarded(
        self, webhook: WebhookRead, body: bytes, event_type: str, event_id: str, attempt: int
    ) -> DeliveryResult:
        """Send, turning an unexpected sender error into a failed result.

        The attempt row is already ``pending``; it must still reach the
        retry or failure branch.
        """
        try:
            return await self._sender.send(webhook, body, event_type)
        except Exception as exc:
            logger.exception(
                "webhook.sender_crashed",
                webhook_id=webhook.id,
                event_id=event_id,
                attempt=attempt,
            )
            message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            return DeliveryResult(success=False, error=message)

    @staticmethod
    def _outcome(
        status: DeliveryStatus,
        result: DeliveryResult,
        error: str | None = None,
        next_retry_at: datetime | None = None,
    ) -> LogOutcome:
        return LogOutcome(
            status=status,
            response_status=result.status_code,
            response_body=result.body,
            response_time_ms=result.time_ms,
            error_message=error if error is not None else result.error,
            next_retry_at=next_retry_at,
        )

    async def _release_quietly(self, webhook_id: str, event_id: str) -> None:
        try:
            await self._retry_queue.release_lineage(webhook_id, event_id)
        except Exception:
            logger.warning(
                "webhook.lineage_release_failed",
                webhook_id=webhook_id,
                event_id=event_id,
                exc_info=True,
            )

    # ── Manual Actions ──────────────────────────────────────────────────────

    async def cancel_retries(self, webhook_id: str, reason: str = "inactive") -> int:
        """Cancel queued retries of a webhook and settle their lineages.

        Returns:
            Number of lineages cancelled.
        """
        event_ids = await self._retry_queue.cancel_for_webhook(webhook_id)
        for event_id in event_ids:
            await self._logs.settle_lineage(
                webhook_id, event_id, error=f"Retry cancelled: webhook {reason}"
            )
        return len(event_ids)

    async def send_test(self, webhook: WebhookRead) -> tuple[DeliveryResult, str]:
        """Send one sample ``test`` event.

        Logged like any attempt, never retried, and the failure streak is
        left untouched.

        Returns:
            ``(result, log_id)``.
        """
        envelope = build_envelope(TEST_EVENT, SAMPLE_DEAL, timestamp=self._clock())
        body = serialize_envelope(envelope)
        event_id = f"test-{uuid.uuid4()}"
        log_id = await self._logs.append_attempt(webhook.id, event_id, TEST_EVENT, envelope, 1)
        result = await self._send_guarded(webhook, body, TEST_EVENT, event_id, 1)
        status = DeliveryStatus.SUCCESS if result.success else DeliveryStatus.FAILED
        await self._logs.finalize_attempt(log_id, self._outcome(status, result))
        webhook_deliveries_total.labels(event_type=TEST_EVENT, status=status.value).inc()
        logger.info(
            "webhook.test_sent",
            webhook_id=webhook.id,
            success=result.success,
            status_code=result.status_code,
        )
        return result, log_id
