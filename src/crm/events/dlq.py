"""Dead letter queue for deal events whose dispatch kept crashing.

Webhook delivery failures never reach this queue; they are handled by the
dispatcher's own retry lineage. Events land here only when the dispatch
call itself raised (database or Redis outage, malformed message) more
times than the consumer's retry budget allows.

DLQ key pattern: crm:events:{original_stream}:dlq
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
import structlog

from src.crm.events.bus import STREAM_MAXLEN, stream_key

logger = structlog.get_logger(__name__)


class DeadLetterQueue:
    """Dead letter queue backed by Redis Streams.

    Args:
        redis: Raw async Redis client.
    """

    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    @staticmethod
    def _dlq_key(original_stream: str) -> str:
        return f"{stream_key(original_stream)}:dlq"

    async def send_to_dlq(
        self,
        original_stream: str,
        message_id: str,
        data: dict[str, str],
        error: str,
        retry_count: int,
    ) -> str:
        """Store a failed event with its failure metadata.

        Returns:
            DLQ message ID assigned by XADD.
        """
        dlq_key = self._dlq_key(original_stream)
        dlq_data: dict[str, str] = {
            **data,
            "_dlq_original_stream": original_stream,
            "_dlq_original_id": message_id,
            "_dlq_error": error,
            "_dlq_retry_count": str(retry_count),
            "_dlq_timestamp": datetime.now(timezone.utc).isoformat(),
        }

        dlq_message_id = await self._redis.xadd(dlq_key, dlq_data)

        logger.warning(
            "event.dead_lettered",
            dlq_key=dlq_key,
            original_id=message_id,
            event_id=data.get("event_id"),
            error=error,
            retry_count=retry_count,
        )
        return dlq_message_id

    async def list_dlq_messages(
        self,
        original_stream: str,
        count: int = 50,
    ) -> list[tuple[str, dict[str, Any]]]:
        """Oldest-first ``(message_id, data)`` pairs for review."""
        return await self._redis.xrange(self._dlq_key(original_stream), count=count)

    async def replay_message(self, original_stream: str, dlq_message_id: str) -> str:
        """Re-publish a DLQ message to its stream and remove it from the DLQ.

        DLQ metadata and the retry count are stripped so the event gets a
        fresh retry budget. Its ``event_id`` is kept, so webhooks that
        already received the event are skipped by their lineage lock.

        Raises:
            LookupError: If the DLQ message ID is not found.
        """
        dlq_key = self._dlq_key(original_stream)

        messages = await self._redis.xrange(
            dlq_key,
            min=dlq_message_id,
            max=dlq_message_id,
            count=1,
        )
        if not messages:
            msg = f"DLQ message '{dlq_message_id}' not found"
            raise LookupError(msg)

        _msg_id, data = messages[0]
        replay_data = {k: v for k, v in data.items() if not k.startswith("_dlq_")}
        replay_data.pop("_retry_count", None)

        new_id = await self._redis.xadd(
            stream_key(original_stream),
            replay_data,
            maxlen=STREAM_MAXLEN,
            approximate=True,
        )
        await self._redis.xdel(dlq_key, dlq_message_id)

        logger.info(
            "event.replayed",
            original_stream=original_stream,
            dlq_message_id=dlq_message_id,
            new_message_id=new_id,
        )
        return new_id
