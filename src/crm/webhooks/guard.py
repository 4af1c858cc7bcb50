"""Redis-backed request budget and lead claims for inbound webhooks.

Rate limit: fixed one-minute window per inbound webhook,
``crm:inbound:rate:{webhook_id}:{epoch_minute}``.

Lead claims: ``crm:inbound:lead:{webhook_id}:{kind}:{digest}`` taken with
SET NX for the dedup window, so two concurrent requests carrying the same
lead cannot both pass the database duplicate check. Identities are hashed
so no email or phone number is written to Redis.
"""

from __future__ import annotations

import hashlib
import time

import redis.asyncio as aioredis
import structlog

from src.crm.core.redis import redis_key

logger = structlog.get_logger(__name__)


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:40]


class InboundGuard:
    """Per-webhook request budget and concurrent dedup claims.

    Args:
        redis: Raw async Redis client.
        rate_limit_per_minute: Requests accepted per webhook per minute.
        dedup_window_minutes: Lifetime of a lead claim.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        rate_limit_per_minute: int = 100,
        dedup_window_minutes: int = 1440,
    ) -> None:
        self._redis = redis
        self._limit = rate_limit_per_minute
        self._claim_ttl = dedup_window_minutes * 60

    async def allow_request(self, webhook_id: str, now: float | None = None) -> bool:
        """Count this request against the current minute's budget."""
        minute = int((now if now is not None else time.time()) // 60)
        key = redis_key("inbound", "rate", webhook_id, minute)
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, 120)
        return count <= self._limit

    def _claim_keys(self, webhook_id: str, email: str | None, phone: str | None) -> list[str]:
        keys = []
        if email:
            keys.append(redis_key("inbound", "lead", webhook_id, "email", _digest(email)))
        if phone:
            keys.append(redis_key("inbound", "lead", webhook_id, "phone", _digest(phone)))
        return keys

    async def claim_lead(self, webhook_id: str, email: str | None, phone: str | None) -> bool:
        """Claim every identity part of a lead; all or nothing.

        Returns:
            False if another request already holds any part of the identity.
        """
        acquired: list[str] = []
        for key in self._claim_keys(webhook_id, email, phone):
            if await self._redis.set(key, "1", nx=True, ex=self._claim_ttl):
                acquired.append(key)
                continue
            if acquired:
                await self._redis.delete(*acquired)
            return False
        return True

    async def release_lead(self, webhook_id: str, email: str | None, phone: str | None) -> None:
        """Drop claims of a lead whose deal was not created."""
        keys = self._claim_keys(webhook_id, email, phone)
        if keys:
            await self._redis.delete(*keys)
