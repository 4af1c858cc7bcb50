"""Deal event bus using Redis Streams.

Decouples the event source from webhook delivery: producers append deal
events to a stream and return immediately, the worker's consumer group
feeds them to the outbound dispatcher.

Stream key pattern: crm:events:{stream_name}
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as aioredis
import structlog

from src.crm.core.redis import redis_key
from src.crm.events.schemas import DealEvent

logger = structlog.get_logger(__name__)

DEAL_EVENTS_STREAM = "deal_events"
STREAM_MAXLEN = 10000


def stream_key(stream: str) -> str:
    """Full key like ``crm:events:{stream}``."""
    return redis_key("events", stream)


class DealEventBus:
    """Publish and subscribe to deal event streams.

    Consumer groups let several workers share one stream; a message stays
    pending until acknowledged.

    Args:
        redis: Raw async Redis client.
    """

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    @property
    def redis(self) -> aioredis.Redis:
        return self._redis

    async def publish(self, event: DealEvent, stream: str = DEAL_EVENTS_STREAM) -> str:
        """Append an event with approximate trimming.

        Returns:
            Redis message ID assigned by XADD.
        """
        return await self.publish_raw(stream, event.to_stream_dict(), event_id=event.event_id)

    async def publish_raw(
        self, stream: str, data: dict[str, str], event_id: str | None = None
    ) -> str:
        """Append an already-serialized event (used for re-publishing)."""
        key = stream_key(stream)
        message_id = await self._redis.xadd(
            key,
            data,
            maxlen=STREAM_MAXLEN,
            approximate=True,
        )
        logger.debug(
            "event.published",
            stream=key,
            event_type=data.get("event_type"),
            event_id=event_id or data.get("event_id"),
            message_id=message_id,
        )
        return message_id

    async def subscribe(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block: int = 5000,
    ) -> list[tuple[str, list[tuple[str, dict[str, str]]]]]:
        """Read new events as a member of a consumer group.

        Creates the consumer group if it does not already exist.
        """
        key = stream_key(stream)

        try:
            await self._redis.xgroup_create(key, group, id="0", mkstream=True)
        except aioredis.ResponseError:
            pass  # group exists

        messages = await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={key: ">"},
            count=count,
            block=block,
        )
        return messages or []

    async def ack(self, stream: str, group: str, message_id: str) -> None:
        await self._redis.xack(stream_key(stream), group, message_id)

    async def get_stream_info(self, stream: str = DEAL_EVENTS_STREAM) -> dict[str, Any]:
        """Stream length, groups and first/last entry, for monitoring."""
        return await self._redis.xinfo_stream(stream_key(stream))

    async def get_pending(self, stream: str, group: str) -> dict[str, Any]:
        return await self._redis.xpending(stream_key(stream), group)
