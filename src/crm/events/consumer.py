"""Event consumer feeding deal events to the outbound dispatcher.

Reads from the deal event stream through a consumer group, deserializes
each message into a DealEvent and invokes the handler. A handler that
raises is retried by re-publishing the message with backoff (1s, 4s, 16s);
after 3 retries the message goes to the dead letter queue.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from src.crm.events.bus import DealEventBus, stream_key
from src.crm.events.dlq import DeadLetterQueue
from src.crm.events.schemas import DealEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[DealEvent], Awaitable[object]]


class EventConsumer:
    """Consumer-group reader with retry and dead-lettering.

    Args:
        bus: DealEventBus to read from.
        stream: Stream name to consume.
        group: Consumer group name.
        consumer_name: Unique consumer identifier within the group.
        dlq: DeadLetterQueue for messages that exhausted their retries.
    """

    MAX_RETRIES: int = 3
    RETRY_DELAYS: list[int] = [1, 4, 16]

    def __init__(
        self,
        bus: DealEventBus,
        stream: str,
        group: str,
        consumer_name: str,
        dlq: DeadLetterQueue,
    ) -> None:
        self._bus = bus
        self._stream = stream
        self._group = group
        self._consumer_name = consumer_name
        self._dlq = dlq
        self._running = False

    async def process_loop(self, handler: EventHandler) -> None:
        """Read, deserialize, handle and ack until ``stop()`` is called."""
        self._running = True
        logger.info(
            "consumer.started",
            stream=self._stream,
            group=self._group,
            consumer=self._consumer_name,
        )

        while self._running:
            messages = await self._bus.subscribe(
                self._stream,
                self._group,
                self._consumer_name,
            )
            for _stream_key, stream_messages in messages:
                for message_id, raw_data in stream_messages:
                    await self._process_with_retry(message_id, raw_data, handler)

        logger.info("consumer.stopped", consumer=self._consumer_name)

    async def _process_with_retry(
        self,
        message_id: str,
        raw_data: dict[str, str],
        handler: EventHandler,
    ) -> None:
        """Handle one message; re-publish with backoff or dead-letter on failure.

        The original message is acknowledged in every branch, so it never
        stays pending after this returns.
        """
        retry_count = int(raw_data.get("_retry_count", "0"))

        try:
            event = DealEvent.from_stream_dict(raw_data)
            await handler(event)
            await self._bus.ack(self._stream, self._group, message_id)
            logger.debug(
                "event.processed",
                event_id=event.event_id,
                event_type=event.event_type.value,
                message_id=message_id,
            )
            return
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.warning(
                "event.processing_failed",
                message_id=message_id,
                retry_count=retry_count,
                error=error,
            )

        if retry_count >= self.MAX_RETRIES:
            await self._dlq.send_to_dlq(
                original_stream=self._stream,
                message_id=message_id,
                data=raw_data,
                error=error,
                retry_count=retry_count,
            )
            await self._bus.ack(self._stream, self._group, message_id)
            logger.error(
                "event.sent_to_dlq",
                message_id=message_id,
                retry_count=retry_count,
                error=error,
            )
            return

        delay = self.RETRY_DELAYS[min(retry_count, len(self.RETRY_DELAYS) - 1)]
        await asyncio.sleep(delay)

        retry_data = dict(raw_data)
        retry_data["_retry_count"] = str(retry_count + 1)
        await self._bus.publish_raw(self._stream, retry_data)
        await self._bus.ack(self._stream, self._group, message_id)
        logger.info(
            "event.retried",
            message_id=message_id,
            retry_count=retry_count + 1,
            delay=delay,
        )

    async def reclaim_abandoned(self, handler: EventHandler, idle_time_ms: int = 60000) -> int:
        """Take over and process messages left pending by a dead consumer.

        Returns:
            Number of messages reclaimed.
        """
        result = await self._bus.redis.xautoclaim(
            stream_key(self._stream),
            self._group,
            self._consumer_name,
            min_idle_time=idle_time_ms,
            start_id="0",
            count=10,
        )
        claimed = result[1] if result and len(result) > 1 else []
        for message_id, raw_data in claimed:
            if raw_data:
                await self._process_with_retry(message_id, raw_data, handler)
        if claimed:
            logger.info("consumer.reclaimed", count=len(claimed), consumer=self._consumer_name)
        return len(claimed)

    def stop(self) -> None:
        """Signal the processing loop to stop after the current read."""
        self._running = False
