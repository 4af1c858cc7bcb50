"""Durable retry queue and lineage locks backed by Redis.

Scheduled retries survive process restarts. Each task is keyed by
``{webhook_id}:{event_id}:{attempt}`` and stored in two structures:

    crm:webhooks:retries              ZSET   member -> due time (epoch seconds)
    crm:webhooks:retry_tasks          HASH   member -> task JSON
    crm:webhooks:retries:{webhook_id} SET    members queued for one webhook

A task is claimed by the worker whose ZREM removes it, so two workers
polling the same queue never run the same attempt.

The lineage lock ``crm:webhooks:lineage:{webhook_id}:{event_id}`` is taken
with SET NX before a lineage's first attempt and released at its terminal
outcome. While it is held, a duplicate of the same event occurrence is not
delivered to that webhook.
"""

from __future__ import annotations

import time

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel

from src.crm.core.redis import redis_key

logger = structlog.get_logger(__name__)


def compute_backoff(attempt: int, base_seconds: int, max_delay_seconds: int) -> int:
    """Delay before the attempt following ``attempt`` (1-based).

    ``base * 2^(attempt-1)``, capped, hence non-decreasing in ``attempt``.
    """
    exponent = max(attempt - 1, 0)
    if exponent >= 32:
        return max_delay_seconds
    return min(base_seconds * (2 ** exponent), max_delay_seconds)


class RetryTask(BaseModel):
    """A scheduled re-attempt of one lineage."""

    webhook_id: str
    event_id: str
    event_type: str
    attempt: int
    body: str

    @property
    def member(self) -> str:
        return f"{self.webhook_id}:{self.event_id}:{self.attempt}"


class RetryQueue:
    """Schedule, claim and cancel outbound retries.

    Args:
        redis: Raw async Redis client (decode_responses=True).
    """

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis
        self._schedule_key = redis_key("webhooks", "retries")
        self._tasks_key = redis_key("webhooks", "retry_tasks")

    def _webhook_index_key(self, webhook_id: str) -> str:
        return redis_key("webhooks", "retries", webhook_id)

    def _lineage_key(self, webhook_id: str, event_id: str) -> str:
        return redis_key("webhooks", "lineage", webhook_id, event_id)

    # ── Lineage Locks ───────────────────────────────────────────────────────

    async def acquire_lineage(self, webhook_id: str, event_id: str, ttl_seconds: int) -> bool:
        """Take the in-flight lock for ``(webhook, event occurrence)``.

        Returns:
            False if another delivery of the same lineage is in flight.
        """
        acquired = await self._redis.set(
            self._lineage_key(webhook_id, event_id), "1", nx=True, ex=ttl_seconds,
        )
        return bool(acquired)

    async def release_lineage(self, webhook_id: str, event_id: str) -> None:
        await self._redis.delete(self._lineage_key(webhook_id, event_id))

    # ── Scheduling ──────────────────────────────────────────────────────────

    async def schedule(self, task: RetryTask, delay_seconds: float, now: float | None = None) -> float:
        """Queue ``task`` to become due after ``delay_seconds``.

        Returns:
            Due time as epoch seconds.
        """
        due_at = (now if now is not None else time.time()) + delay_seconds
        member = task.member
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._tasks_key, member, task.model_dump_json())
            pipe.zadd(self._schedule_key, {member: due_at})
            pipe.sadd(self._webhook_index_key(task.webhook_id), member)
            await pipe.execute()

        logger.debug(
            "retry.scheduled",
            webhook_id=task.webhook_id,
            event_id=task.event_id,
            attempt=task.attempt,
            delay_seconds=delay_seconds,
        )
        return due_at

    async def claim_due(self, limit: int = 50, now: float | None = None) -> list[RetryTask]:
        """Claim up to ``limit`` tasks whose due time has passed."""
        now = now if now is not None else time.time()
        members = await self._redis.zrangebyscore(
            self._schedule_key, "-inf", now, start=0, num=limit,
        )
        claimed: list[RetryTask] = []
        for member in members:
            # Whoever removes the member owns the task.
            if await self._redis.zrem(self._schedule_key, member) != 1:
                continue
            raw = await self._redis.hget(self._tasks_key, member)
            await self._redis.hdel(self._tasks_key, member)
            if raw is None:
                logger.warning("retry.task_payload_missing", member=member)
                continue
            task = RetryTask.model_validate_json(raw)
            await self._redis.srem(self._webhook_index_key(task.webhook_id), member)
            claimed.append(task)
        return claimed

    async def cancel_for_webhook(self, webhook_id: str) -> list[str]:
        """Drop every queued retry of a webhook (deactivated or deleted).

        The caller settles the log rows of the returned lineages.

        Returns:
            Event ids of the cancelled lineages.
        """
        index_key = self._webhook_index_key(webhook_id)
        members = list(await self._redis.smembers(index_key))
        if not members:
            return []
        removed = await self._redis.zrem(self._schedule_key, *members)
        await self._redis.hdel(self._tasks_key, *members)
        await self._redis.delete(index_key)

        # Lineage locks of cancelled retries would otherwise block
        # redelivery of those events until they expire.
        prefix = f"{webhook_id}:"
        event_ids = sorted({member[len(prefix):].rsplit(":", 1)[0] for member in members})
        for event_id in event_ids:
            await self.release_lineage(webhook_id, event_id)

        logger.info("retry.cancelled_for_webhook", webhook_id=webhook_id, removed=removed)
        return event_ids

    async def pending_count(self) -> int:
        return await self._redis.zcard(self._schedule_key)
