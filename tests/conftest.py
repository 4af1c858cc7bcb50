"""Shared fixtures for webhook tests.

Provides in-memory test doubles so the dispatcher, ingestor and API can be
exercised without PostgreSQL or Redis:
- FakeRedis: the subset of redis.asyncio commands the service uses
- InMemoryWebhookRepository / InMemoryInboundRepository / InMemoryDealRepository
- InMemoryLogStore: mirrors DeliveryLogStore, including the refusal to
  rewrite terminal rows
- settings: explicit Settings instance (no .env lookup)
"""

from __future__ import annotations

import fnmatch
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.crm.config import Settings
from src.crm.core.security import generate_token
from src.crm.webhooks.retry_queue import RetryQueue
from src.crm.webhooks.schemas import (
    DealCreate,
    DealRead,
    DeliveryStatus,
    FailureOutcome,
    InboundLogRead,
    InboundStatus,
    InboundWebhookCreate,
    InboundWebhookRead,
    InboundWebhookUpdate,
    LogFilter,
    LogOutcome,
    WebhookCreate,
    WebhookLogRead,
    WebhookRead,
    WebhookStats,
    WebhookUpdate,
)


# ── Fake Redis ───────────────────────────────────────────────────────────────


class FakePipeline:
    """Queues commands and runs them on ``execute()``."""

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._calls: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> FakePipeline:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._calls.clear()

    def __getattr__(self, name: str):
        def queue(*args: Any, **kwargs: Any) -> FakePipeline:
            self._calls.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> list[Any]:
        results = []
        for name, args, kwargs in self._calls:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._calls.clear()
        return results


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` (decode_responses=True)."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}

    # strings
    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        if nx and key in self.strings:
            return None
        self.strings[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key: str) -> str | None:
        return self.strings.get(key)

    async def incr(self, key: str) -> int:
        value = int(self.strings.get(key, "0")) + 1
        self.strings[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for store in (self.strings, self.zsets, self.hashes, self.sets):
                if key in store:
                    del store[key]
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, key: str) -> int:
        return int(any(key in s for s in (self.strings, self.zsets, self.hashes, self.sets)))

    def keys_matching(self, pattern: str) -> list[str]:
        return [k for k in self.strings if fnmatch.fnmatch(k, pattern)]

    # sorted sets
    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in zset)
        zset.update(mapping)
        return added

    async def zrangebyscore(
        self, key: str, min: Any, max: Any, start: int = 0, num: int | None = None
    ) -> list[str]:
        low = float("-inf") if min == "-inf" else float(min)
        high = float("inf") if max == "+inf" else float(max)
        members = sorted(
            (score, member)
            for member, score in self.zsets.get(key, {}).items()
            if low <= score <= high
        )
        selected = [m for _score, m in members][start:]
        return selected[:num] if num is not None else selected

    async def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in zset:
                del zset[member]
                removed += 1
        return removed

    async def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    async def zscore(self, key: str, member: str) -> float | None:
        return self.zsets.get(key, {}).get(member)

    # hashes
    async def hset(self, key: str, field: str, value: str) -> int:
        bucket = self.hashes.setdefault(key, {})
        is_new = field not in bucket
        bucket[field] = value
        return int(is_new)

    async def hget(self, key: str, field: str) -> str | None:
        return self.hashes.get(key, {}).get(field)

    async def hdel(self, key: str, *fields: str) -> int:
        bucket = self.hashes.get(key, {})
        return sum(1 for f in fields if bucket.pop(f, None) is not None)

    # sets
    async def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def srem(self, key: str, *members: str) -> int:
        bucket = self.sets.get(key, set())
        removed = sum(1 for m in members if m in bucket)
        bucket.difference_update(members)
        return removed

    async def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)


# ── Repository Doubles ───────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryWebhookRepository:
    """In-memory WebhookRepository with the same counter semantics."""

    def __init__(self) -> None:
        self.webhooks: dict[str, WebhookRead] = {}

    def _store(self, webhook: WebhookRead) -> WebhookRead:
        self.webhooks[webhook.id] = webhook
        return webhook

    async def create_webhook(self, data: WebhookCreate) -> WebhookRead:
        now = _now()
        return self._store(
            WebhookRead(
                id=str(uuid.uuid4()),
                name=data.name,
                url=data.url,
                method=data.method,
                headers=data.headers,
                events=[e.value for e in data.events],
                secret_key=data.secret_key,
                is_active=data.is_active,
                ip_whitelist=data.ip_whitelist,
                retry_enabled=data.retry_enabled,
                max_retries=data.max_retries,
                created_at=now,
                updated_at=now,
            )
        )

    async def get_webhook(self, webhook_id: str) -> WebhookRead | None:
        return self.webhooks.get(webhook_id)

    async def list_webhooks(self, active_only: bool = False) -> list[WebhookRead]:
        return [w for w in self.webhooks.values() if w.is_active or not active_only]

    async def list_subscribed(self, event_type: str) -> list[WebhookRead]:
        return [w for w in self.webhooks.values() if w.is_active and event_type in w.events]

    async def update_webhook(self, webhook_id: str, data: WebhookUpdate) -> WebhookRead | None:
        webhook = self.webhooks.get(webhook_id)
        if webhook is None:
            return None
        changes: dict[str, Any] = {}
        fields = data.model_fields_set
        if "secret_key" in fields:
            changes["secret_key"] = data.secret_key
        if "ip_whitelist" in fields:
            changes["ip_whitelist"] = data.ip_whitelist
        if data.is_active and not webhook.is_active:
            changes["consecutive_failures"] = 0
        for key, value in data.model_dump(
            exclude_none=True, exclude={"secret_key", "ip_whitelist"}
        ).items():
            changes[key] = [e.value for e in data.events] if key == "events" else value
        changes["updated_at"] = _now()
        return self._store(webhook.model_copy(update=changes))

    async def delete_webhook(self, webhook_id: str) -> bool:
        return self.webhooks.pop(webhook_id, None) is not None

    async def record_success(self, webhook_id: str, at: datetime) -> None:
        webhook = self.webhooks[webhook_id]
        self._store(
            webhook.model_copy(
                update={
                    "consecutive_failures": 0,
                    "last_success_at": at,
                    "last_triggered_at": at,
                    "last_error": None,
                }
            )
        )

    async def record_attempt_error(self, webhook_id: str, error: str, at: datetime) -> None:
        webhook = self.webhooks[webhook_id]
        self._store(webhook.model_copy(update={"last_error": error, "last_triggered_at": at}))

    async def record_failure(
        self, webhook_id: str, error: str, ceiling: int, at: datetime
    ) -> FailureOutcome | None:
        webhook = self.webhooks.get(webhook_id)
        if webhook is None:
            return None
        count = webhook.consecutive_failures + 1
        is_active = False if count >= ceiling else webhook.is_active
        self._store(
            webhook.model_copy(
                update={
                    "consecutive_failures": count,
                    "is_active": is_active,
                    "last_error": error,
                    "last_triggered_at": at,
                }
            )
        )
        return FailureOutcome(
            consecutive_failures=count,
            deactivated=(not is_active and count >= ceiling),
        )


class InMemoryInboundRepository:
    def __init__(self) -> None:
        self.inbound: dict[str, InboundWebhookRead] = {}

    async def create_inbound(self, data: InboundWebhookCreate) -> InboundWebhookRead:
        now = _now()
        inbound = InboundWebhookRead(
            id=str(uuid.uuid4()),
            secret_token=generate_token(),
            created_at=now,
            updated_at=now,
            **data.model_dump(exclude={"hmac_secret"}),
            hmac_secret=data.hmac_secret,
        )
        self.inbound[inbound.id] = inbound
        return inbound

    async def get_inbound(self, inbound_id: str) -> InboundWebhookRead | None:
        return self.inbound.get(inbound_id)

    async def get_by_token(self, secret_token: str) -> InboundWebhookRead | None:
        for inbound in self.inbound.values():
            if inbound.secret_token.get_secret_value() == secret_token:
                return inbound
        return None

    async def list_inbound(self) -> list[InboundWebhookRead]:
        return list(self.inbound.values())

    async def update_inbound(
        self, inbound_id: str, data: InboundWebhookUpdate
    ) -> InboundWebhookRead | None:
        inbound = self.inbound.get(inbound_id)
        if inbound is None:
            return None
        changes = {k: getattr(data, k) for k in data.model_fields_set}
        updated = inbound.model_copy(update=changes)
        self.inbound[inbound_id] = updated
        return updated

    async def regenerate_token(self, inbound_id: str) -> InboundWebhookRead | None:
        inbound = self.inbound.get(inbound_id)
        if inbound is None:
            return None
        from pydantic import SecretStr

        updated = inbound.model_copy(update={"secret_token": SecretStr(generate_token())})
        self.inbound[inbound_id] = updated
        return updated

    async def delete_inbound(self, inbound_id: str) -> bool:
        return self.inbound.pop(inbound_id, None) is not None

    async def record_request(self, inbound_id: str, at: datetime) -> None:
        inbound = self.inbound[inbound_id]
        self.inbound[inbound_id] = inbound.model_copy(
            update={"requests_today": inbound.requests_today + 1, "last_request_at": at}
        )

    async def reset_daily_counters(self) -> int:
        touched = 0
        for inbound_id, inbound in list(self.inbound.items()):
            if inbound.requests_today:
                self.inbound[inbound_id] = inbound.model_copy(update={"requests_today": 0})
                touched += 1
        return touched


class InMemoryDealRepository:
    def __init__(self) -> None:
        self.deals: dict[str, DealRead] = {}
        self.fail_with: Exception | None = None

    async def create_deal(self, data: DealCreate) -> DealRead:
        if self.fail_with is not None:
            raise self.fail_with
        deal = DealRead(id=str(uuid.uuid4()), created_at=_now(), **data.model_dump())
        self.deals[deal.id] = deal
        return deal

    async def get_deal(self, deal_id: str) -> DealRead | None:
        return self.deals.get(deal_id)

    async def find_duplicate(
        self,
        inbound_webhook_id: str,
        email: str | None,
        phone: str | None,
        since: datetime,
    ) -> DealRead | None:
        for deal in sorted(self.deals.values(), key=lambda d: d.created_at, reverse=True):
            if deal.inbound_webhook_id != inbound_webhook_id or deal.created_at < since:
                continue
            if (email and deal.identity_email == email) or (
                phone and deal.identity_phone == phone
            ):
                return deal
        return None


class InMemoryLogStore:
    """In-memory DeliveryLogStore."""

    def __init__(self) -> None:
        self.outbound: dict[str, WebhookLogRead] = {}
        self.inbound: list[InboundLogRead] = []
        self.refused: list[str] = []

    async def append_attempt(
        self,
        webhook_id: str,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        attempt: int,
    ) -> str:
        log = WebhookLogRead(
            id=str(uuid.uuid4()),
            webhook_id=webhook_id,
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            attempt=attempt,
            status=DeliveryStatus.PENDING,
            created_at=_now(),
        )
        self.outbound[log.id] = log
        return log.id

    async def finalize_attempt(self, log_id: str, outcome: LogOutcome) -> bool:
        log = self.outbound.get(log_id)
        if log is None or log.status.is_terminal:
            self.refused.append(log_id)
            return False
        self.outbound[log_id] = log.model_copy(update=outcome.model_dump())
        return True

    async def settle_lineage(self, webhook_id: str, event_id: str, error: str | None = None) -> int:
        settled = 0
        for log in list(self.outbound.values()):
            if (
                log.webhook_id == webhook_id
                and log.event_id == event_id
                and log.status == DeliveryStatus.RETRYING
            ):
                changes: dict[str, Any] = {"status": DeliveryStatus.FAILED, "next_retry_at": None}
                if error is not None:
                    changes["error_message"] = error
                self.outbound[log.id] = log.model_copy(update=changes)
                settled += 1
        return settled

    async def get_log(self, log_id: str) -> WebhookLogRead | None:
        return self.outbound.get(log_id)

    async def lineage(self, webhook_id: str, event_id: str) -> list[WebhookLogRead]:
        rows = [
            log
            for log in self.outbound.values()
            if log.webhook_id == webhook_id and log.event_id == event_id
        ]
        return sorted(rows, key=lambda log: log.attempt)

    async def query_outbound(self, filters: LogFilter) -> list[WebhookLogRead]:
        rows = [
            log
            for log in self.outbound.values()
            if (not filters.webhook_id or log.webhook_id == filters.webhook_id)
            and (not filters.event_id or log.event_id == filters.event_id)
            and (not filters.status or log.status.value == filters.status)
        ]
        return list(reversed(rows))[: filters.limit]

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
        log = InboundLogRead(
            id=str(uuid.uuid4()),
            inbound_webhook_id=inbound_webhook_id,
            source_ip=source_ip,
            payload=payload,
            mapped_data=mapped_data,
            deal_created_id=deal_created_id,
            status=status,
            error_message=error_message,
            created_at=_now(),
        )
        self.inbound.append(log)
        return log

    async def query_inbound(self, filters: LogFilter) -> list[InboundLogRead]:
        rows = [
            log
            for log in self.inbound
            if (not filters.webhook_id or log.inbound_webhook_id == filters.webhook_id)
            and (not filters.status or log.status.value == filters.status)
        ]
        return list(reversed(rows))[: filters.limit]

    async def stats(self, now: datetime | None = None) -> WebhookStats:
        rows = list(self.outbound.values())
        return WebhookStats(
            total_today=len(rows),
            success_count=sum(1 for r in rows if r.status == DeliveryStatus.SUCCESS),
            failed_count=sum(1 for r in rows if r.status == DeliveryStatus.FAILED),
        )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        ADMIN_API_KEY="test-admin-key",
        WEBHOOK_RETRY_BASE_SECONDS=30,
        WEBHOOK_RETRY_MAX_DELAY_SECONDS=3600,
        WEBHOOK_FAILURE_CEILING=3,
        INBOUND_RATE_LIMIT_PER_MINUTE=5,
        INBOUND_DEDUP_WINDOW_MINUTES=1440,
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def retry_queue(fake_redis: FakeRedis) -> RetryQueue:
    return RetryQueue(fake_redis)


@pytest.fixture
def webhook_repo() -> InMemoryWebhookRepository:
    return InMemoryWebhookRepository()


@pytest.fixture
def inbound_repo() -> InMemoryInboundRepository:
    return InMemoryInboundRepository()


@pytest.fixture
def deal_repo() -> InMemoryDealRepository:
    return InMemoryDealRepository()


@pytest.fixture
def log_store() -> InMemoryLogStore:
    return InMemoryLogStore()


@pytest.fixture
def far_future() -> float:
    """Epoch seconds after every backoff a test could schedule."""
    return (_now() + timedelta(days=2)).timestamp()


@pytest.fixture
def make_webhook(webhook_repo: InMemoryWebhookRepository):
    """Factory creating outbound webhooks in the in-memory repository."""

    async def _make(**overrides: Any) -> WebhookRead:
        fields: dict[str, Any] = {
            "name": "CRM Sync",
            "url": "https://hooks.example.com/deals",
            "events": ["deal_won"],
        }
        fields.update(overrides)
        return await webhook_repo.create_webhook(WebhookCreate(**fields))

    return _make


@pytest.fixture
def make_inbound(inbound_repo: InMemoryInboundRepository):
    """Factory creating inbound receive endpoints."""

    async def _make(**overrides: Any) -> InboundWebhookRead:
        fields: dict[str, Any] = {
            "name": "Facebook Lead Ads",
            "pipeline_id": "pipeline-1",
            "phase_id": "phase-new",
            "field_mappings": [
                {"source": "full_name", "target": "contact_name", "transform": "trim"},
                {"source": "email", "target": "email", "transform": "lowercase"},
                {"source": "phone_number", "target": "phone", "transform": "format_phone"},
                {"source": "budget", "target": "value"},
            ],
            "default_tags": ["facebook"],
        }
        fields.update(overrides)
        return await inbound_repo.create_inbound(InboundWebhookCreate(**fields))

    return _make
