"""Tests for OutboundDispatcher lineages: fan-out, retry, exhaustion, auto-disable.

Uses the in-memory repository and log store from conftest, a FakeRedis
backed RetryQueue, and a scripted sender so no HTTP is performed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from src.crm.events.schemas import DealEvent
from src.crm.webhooks.delivery import WebhookSender
from src.crm.webhooks.dispatcher import ERROR, SKIPPED, OutboundDispatcher
from src.crm.webhooks.schemas import (
    TEST_EVENT,
    DealSnapshot,
    DeliveryResult,
    DeliveryStatus,
    WebhookEvent,
    WebhookUpdate,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _ok() -> DeliveryResult:
    return DeliveryResult(success=True, status_code=200, body="ok", time_ms=12)


def _fail(status_code: int = 500) -> DeliveryResult:
    return DeliveryResult(
        success=False, status_code=status_code, body="boom", error=f"HTTP {status_code}", time_ms=8
    )


class ScriptedSender:
    """Returns queued results per URL; raises queued exceptions."""

    def __init__(self) -> None:
        self.script: dict[str, list[DeliveryResult | Exception]] = {}
        self.calls: list[tuple[str, bytes, str]] = []

    def queue(self, url: str, *results: DeliveryResult | Exception) -> None:
        self.script.setdefault(url, []).extend(results)

    async def send(self, webhook, body: bytes, event_type: str) -> DeliveryResult:
        self.calls.append((webhook.url, body, event_type))
        outcome = self.script[webhook.url].pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _event(event_id: str = "evt-1", event_type: WebhookEvent = WebhookEvent.DEAL_WON) -> DealEvent:
    return DealEvent(
        event_id=event_id,
        event_type=event_type,
        occurred_at=NOW,
        deal=DealSnapshot(id="deal-1", name="Acme expansion", value=5000.0),
    )


@pytest.fixture
def sender() -> ScriptedSender:
    return ScriptedSender()


@pytest.fixture
def dispatcher(webhook_repo, log_store, sender, retry_queue, settings) -> OutboundDispatcher:
    return OutboundDispatcher(
        webhook_repo, log_store, sender, retry_queue, settings=settings, clock=lambda: NOW
    )


# ── Fan-out ──────────────────────────────────────────────────────────────


class TestDispatch:
    @pytest.mark.asyncio
    async def test_success_logs_and_releases_lineage(
        self, dispatcher, make_webhook, sender, log_store, webhook_repo, retry_queue
    ):
        webhook = await make_webhook()
        sender.queue(webhook.url, _ok())

        results = await dispatcher.dispatch(_event())

        assert results == {webhook.id: "success"}
        rows = await log_store.lineage(webhook.id, "evt-1")
        assert [(r.attempt, r.status) for r in rows] == [(1, DeliveryStatus.SUCCESS)]
        assert rows[0].response_status == 200
        assert rows[0].payload["event"] == "deal_won"
        assert rows[0].payload["data"]["id"] == "deal-1"

        stored = await webhook_repo.get_webhook(webhook.id)
        assert stored.consecutive_failures == 0
        assert stored.last_success_at == NOW
        assert await retry_queue.acquire_lineage(webhook.id, "evt-1", 60) is True

    @pytest.mark.asyncio
    async def test_only_active_subscribers_receive(self, dispatcher, make_webhook, sender):
        subscribed = await make_webhook(url="https://a.example.com")
        await make_webhook(url="https://b.example.com", events=["deal_lost"])
        await make_webhook(url="https://c.example.com", is_active=False)
        sender.queue(subscribed.url, _ok())

        results = await dispatcher.dispatch(_event())

        assert list(results) == [subscribed.id]
        assert [url for url, _body, _type in sender.calls] == [subscribed.url]

    @pytest.mark.asyncio
    async def test_no_subscribers_returns_empty(self, dispatcher, sender):
        assert await dispatcher.dispatch(_event()) == {}
        assert sender.calls == []

    @pytest.mark.asyncio
    async def test_every_webhook_gets_identical_bytes(self, dispatcher, make_webhook, sender):
        first = await make_webhook(url="https://a.example.com")
        second = await make_webhook(url="https://b.example.com", secret_key="k")
        sender.queue(first.url, _ok())
        sender.queue(second.url, _ok())

        await dispatcher.dispatch(_event())

        bodies = {body for _url, body, _type in sender.calls}
        assert len(bodies) == 1

    @pytest.mark.asyncio
    async def test_sender_crash_goes_through_retry_policy(
        self, dispatcher, make_webhook, sender, log_store, retry_queue
    ):
        broken = await make_webhook(url="https://broken.example.com")
        healthy = await make_webhook(url="https://healthy.example.com")
        sender.queue(broken.url, RuntimeError("socket exploded"))
        sender.queue(healthy.url, _ok())

        results = await dispatcher.dispatch(_event())

        assert results == {broken.id: "retrying", healthy.id: "success"}
        (row,) = await log_store.lineage(broken.id, "evt-1")
        assert row.status == DeliveryStatus.RETRYING
        assert row.error_message.startswith("RuntimeError: socket exploded")
        assert await retry_queue.pending_count() == 1

    @pytest.mark.asyncio
    async def test_log_store_crash_isolated_and_releases_lineage(
        self, dispatcher, make_webhook, sender, log_store, retry_queue
    ):
        webhook = await make_webhook()
        log_store.append_attempt = AsyncMock(side_effect=ConnectionError("db down"))

        results = await dispatcher.dispatch(_event())

        assert results == {webhook.id: ERROR}
        assert sender.calls == []
        assert await retry_queue.acquire_lineage(webhook.id, "evt-1", 60) is True

    @pytest.mark.asyncio
    async def test_unencodable_header_counts_as_failed_delivery(
        self, webhook_repo, log_store, retry_queue, settings, make_webhook
    ):
        calls: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = OutboundDispatcher(
            webhook_repo,
            log_store,
            WebhookSender(client=client),
            retry_queue,
            settings=settings,
            clock=lambda: NOW,
        )
        webhook = await make_webhook(headers={"X-Owner": "João"}, max_retries=0)

        results = await dispatcher.dispatch(_event())
        await client.aclose()

        assert results == {webhook.id: "failed"}
        assert calls == []
        (row,) = await log_store.lineage(webhook.id, "evt-1")
        assert row.status == DeliveryStatus.FAILED
        assert row.error_message.startswith("UnicodeEncodeError")
        stored = await webhook_repo.get_webhook(webhook.id)
        assert stored.consecutive_failures == 1
        assert stored.last_error.startswith("UnicodeEncodeError")

    @pytest.mark.asyncio
    async def test_duplicate_event_skipped_while_lineage_in_flight(
        self, dispatcher, make_webhook, sender, log_store
    ):
        webhook = await make_webhook()
        sender.queue(webhook.url, _fail())

        first = await dispatcher.dispatch(_event())
        second = await dispatcher.dispatch(_event())

        assert first == {webhook.id: "retrying"}
        assert second == {webhook.id: SKIPPED}
        assert len(await log_store.lineage(webhook.id, "evt-1")) == 1

    @pytest.mark.asyncio
    async def test_reemitted_transition_without_event_id_is_skipped(
        self, dispatcher, make_webhook, sender
    ):
        webhook = await make_webhook()
        sender.queue(webhook.url, _fail())
        deal = DealSnapshot(id="deal-1", name="Acme expansion", value=5000.0)

        first = await dispatcher.dispatch(DealEvent(event_type=WebhookEvent.DEAL_WON, deal=deal))
        second = await dispatcher.dispatch(DealEvent(event_type=WebhookEvent.DEAL_WON, deal=deal))

        assert first == {webhook.id: "retrying"}
        assert second == {webhook.id: SKIPPED}
        assert len(sender.calls) == 1


# ── Retries ──────────────────────────────────────────────────────────────


class TestRetries:
    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(
        self, dispatcher, make_webhook, sender, log_store, retry_queue, webhook_repo
    ):
        webhook = await make_webhook(max_retries=3)
        sender.queue(webhook.url, _fail())

        results = await dispatcher.dispatch(_event())

        assert results == {webhook.id: "retrying"}
        (row,) = await log_store.lineage(webhook.id, "evt-1")
        assert row.status == DeliveryStatus.RETRYING
        assert row.error_message == "HTTP 500 (retry 2/4 in 30s)"
        assert (row.next_retry_at - NOW).total_seconds() == 30
        assert await retry_queue.pending_count() == 1
        # lineage stays locked while the retry is queued
        assert await retry_queue.acquire_lineage(webhook.id, "evt-1", 60) is False

        stored = await webhook_repo.get_webhook(webhook.id)
        assert stored.last_error == "HTTP 500"
        assert stored.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_retry_success_settles_lineage(
        self, dispatcher, make_webhook, sender, log_store, retry_queue, far_future
    ):
        webhook = await make_webhook()
        sender.queue(webhook.url, _fail(), _ok())
        await dispatcher.dispatch(_event())

        (task,) = await retry_queue.claim_due(now=far_future)
        outcome = await dispatcher.process_retry(task)

        assert outcome == "success"
        rows = await log_store.lineage(webhook.id, "evt-1")
        assert [(r.attempt, r.status) for r in rows] == [
            (1, DeliveryStatus.FAILED),
            (2, DeliveryStatus.SUCCESS),
        ]
        assert sender.calls[0][1] == sender.calls[1][1]
        assert await retry_queue.acquire_lineage(webhook.id, "evt-1", 60) is True

    @pytest.mark.asyncio
    async def test_exhaustion_fails_lineage_and_counts_once(
        self, dispatcher, make_webhook, sender, log_store, retry_queue, webhook_repo, far_future
    ):
        webhook = await make_webhook(max_retries=1)
        sender.queue(webhook.url, _fail(), _fail(503))
        await dispatcher.dispatch(_event())

        (task,) = await retry_queue.claim_due(now=far_future)
        outcome = await dispatcher.process_retry(task)

        assert outcome == "failed"
        rows = await log_store.lineage(webhook.id, "evt-1")
        assert [r.status for r in rows] == [DeliveryStatus.FAILED, DeliveryStatus.FAILED]
        assert rows[1].error_message == "HTTP 503"
        assert await retry_queue.pending_count() == 0

        stored = await webhook_repo.get_webhook(webhook.id)
        assert stored.consecutive_failures == 1
        assert stored.is_active is True

    @pytest.mark.asyncio
    async def test_three_attempt_lineage_all_failing(
        self, dispatcher, make_webhook, sender, log_store, retry_queue, webhook_repo, far_future
    ):
        """max_retries=2 against a destination that always answers 500."""
        webhook = await make_webhook(max_retries=2)
        sender.queue(webhook.url, _fail(), _fail(), _fail())

        assert await dispatcher.dispatch(_event()) == {webhook.id: "retrying"}
        (second,) = await retry_queue.claim_due(now=far_future)
        assert second.attempt == 2
        assert await dispatcher.process_retry(second) == "retrying"
        (third,) = await retry_queue.claim_due(now=far_future)
        assert third.attempt == 3
        assert await dispatcher.process_retry(third) == "failed"

        rows = await log_store.lineage(webhook.id, "evt-1")
        assert [(r.attempt, r.status) for r in rows] == [
            (1, DeliveryStatus.FAILED),
            (2, DeliveryStatus.FAILED),
            (3, DeliveryStatus.FAILED),
        ]
        assert rows[0].error_message == "HTTP 500 (retry 2/3 in 30s)"
        assert rows[1].error_message == "HTTP 500 (retry 3/3 in 60s)"
        assert rows[2].error_message == "HTTP 500"
        assert len(sender.calls) == 3
        assert await retry_queue.pending_count() == 0

        stored = await webhook_repo.get_webhook(webhook.id)
        assert stored.consecutive_failures == 1
        assert stored.last_error == "HTTP 500"

    @pytest.mark.asyncio
    async def test_retry_disabled_fails_immediately(
        self, dispatcher, make_webhook, sender, retry_queue
    ):
        webhook = await make_webhook(retry_enabled=False)
        sender.queue(webhook.url, _fail())

        assert await dispatcher.dispatch(_event()) == {webhook.id: "failed"}
        assert await retry_queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_retry_for_inactive_webhook_is_dropped(
        self, dispatcher, make_webhook, sender, log_store, retry_queue, webhook_repo, far_future
    ):
        webhook = await make_webhook()
        sender.queue(webhook.url, _fail())
        await dispatcher.dispatch(_event())
        await webhook_repo.update_webhook(webhook.id, WebhookUpdate(is_active=False))

        (task,) = await retry_queue.claim_due(now=far_future)
        outcome = await dispatcher.process_retry(task)

        assert outcome == SKIPPED
        assert len(sender.calls) == 1
        (row,) = await log_store.lineage(webhook.id, "evt-1")
        assert row.status == DeliveryStatus.FAILED
        assert row.error_message == "Retry cancelled: webhook inactive"
        assert await retry_queue.acquire_lineage(webhook.id, "evt-1", 60) is True

    @pytest.mark.asyncio
    async def test_retry_for_deleted_webhook_is_dropped(
        self, dispatcher, make_webhook, sender, retry_queue, webhook_repo, far_future
    ):
        webhook = await make_webhook()
        sender.queue(webhook.url, _fail())
        await dispatcher.dispatch(_event())
        await webhook_repo.delete_webhook(webhook.id)

        (task,) = await retry_queue.claim_due(now=far_future)

        assert await dispatcher.process_retry(task) == SKIPPED
        assert len(sender.calls) == 1

    @pytest.mark.asyncio
    async def test_run_due_retries_runs_elapsed_tasks(
        self, webhook_repo, log_store, sender, retry_queue, settings, make_webhook
    ):
        immediate = settings.model_copy(update={"WEBHOOK_RETRY_BASE_SECONDS": 0})
        dispatcher = OutboundDispatcher(
            webhook_repo, log_store, sender, retry_queue, settings=immediate, clock=lambda: NOW
        )
        webhook = await make_webhook()
        sender.queue(webhook.url, _fail(), _ok())
        await dispatcher.dispatch(_event())

        claimed = await dispatcher.run_due_retries()

        assert claimed == 1
        statuses = [r.status for r in await log_store.lineage(webhook.id, "evt-1")]
        assert statuses[-1] == DeliveryStatus.SUCCESS


# ── Auto-disable ─────────────────────────────────────────────────────────


class TestAutoDisable:
    @pytest.mark.asyncio
    async def test_ceiling_deactivates_webhook(
        self, dispatcher, make_webhook, sender, webhook_repo, settings
    ):
        webhook = await make_webhook(max_retries=0)
        ceiling = settings.WEBHOOK_FAILURE_CEILING
        sender.queue(webhook.url, *[_fail() for _ in range(ceiling)])

        for n in range(ceiling):
            assert await dispatcher.dispatch(_event(f"evt-{n}")) == {webhook.id: "failed"}

        stored = await webhook_repo.get_webhook(webhook.id)
        assert stored.is_active is False
        assert stored.consecutive_failures == ceiling
        assert await dispatcher.dispatch(_event("evt-after")) == {}

    @pytest.mark.asyncio
    async def test_auto_disable_settles_queued_lineages(
        self, dispatcher, make_webhook, sender, webhook_repo, log_store, retry_queue, settings
    ):
        webhook = await make_webhook(max_retries=3)
        ceiling = settings.WEBHOOK_FAILURE_CEILING
        sender.queue(webhook.url, *[_fail() for _ in range(ceiling + 1)])
        assert await dispatcher.dispatch(_event("evt-queued")) == {webhook.id: "retrying"}
        await webhook_repo.update_webhook(webhook.id, WebhookUpdate(retry_enabled=False))

        for n in range(ceiling):
            await dispatcher.dispatch(_event(f"evt-{n}"))

        assert (await webhook_repo.get_webhook(webhook.id)).is_active is False
        assert await retry_queue.pending_count() == 0
        (row,) = await log_store.lineage(webhook.id, "evt-queued")
        assert row.status == DeliveryStatus.FAILED
        assert row.error_message == "Retry cancelled: webhook inactive"
        assert await retry_queue.acquire_lineage(webhook.id, "evt-queued", 60) is True

    @pytest.mark.asyncio
    async def test_success_resets_streak(self, dispatcher, make_webhook, sender, webhook_repo):
        webhook = await make_webhook(max_retries=0)
        sender.queue(webhook.url, _fail(), _fail(), _ok())

        for n in range(3):
            await dispatcher.dispatch(_event(f"evt-{n}"))

        stored = await webhook_repo.get_webhook(webhook.id)
        assert stored.consecutive_failures == 0
        assert stored.is_active is True

    @pytest.mark.asyncio
    async def test_reenable_resets_counter(self, dispatcher, make_webhook, sender, webhook_repo):
        webhook = await make_webhook(max_retries=0)
        sender.queue(webhook.url, _fail(), _fail(), _fail())
        for n in range(3):
            await dispatcher.dispatch(_event(f"evt-{n}"))

        enabled = await webhook_repo.update_webhook(webhook.id, WebhookUpdate(is_active=True))

        assert enabled.is_active is True
        assert enabled.consecutive_failures == 0


# ── Manual Test ──────────────────────────────────────────────────────────


class TestSendTest:
    @pytest.mark.asyncio
    async def test_failed_test_send_is_logged_but_not_counted(
        self, dispatcher, make_webhook, sender, log_store, webhook_repo, retry_queue
    ):
        webhook = await make_webhook(retry_enabled=True)
        sender.queue(webhook.url, _fail(404))

        result, log_id = await dispatcher.send_test(webhook)

        assert result.success is False
        log = await log_store.get_log(log_id)
        assert log.event_type == TEST_EVENT
        assert log.event_id.startswith("test-")
        assert log.status == DeliveryStatus.FAILED
        assert log.payload["data"]["id"] == "test-123"
        assert sender.calls[0][2] == TEST_EVENT

        stored = await webhook_repo.get_webhook(webhook.id)
        assert stored.consecutive_failures == 0
        assert await retry_queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_successful_test_send(self, dispatcher, make_webhook, sender, log_store):
        webhook = await make_webhook()
        sender.queue(webhook.url, _ok())

        result, log_id = await dispatcher.send_test(webhook)

        assert result.success is True
        assert (await log_store.get_log(log_id)).status == DeliveryStatus.SUCCESS
