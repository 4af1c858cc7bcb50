"""Event backbone for deal event delivery.

Provides Redis Streams pub/sub for deal events, consumer group processing
with exponential-backoff retry, and dead letter queue handling.

Exports:
    DealEvent: Deal state change with its occurrence key.
    DealEventBus: Publish/subscribe to deal event streams.
    EventConsumer: Consumer with retry logic and consumer group management.
    DeadLetterQueue: DLQ handler for failed event review and replay.
"""

from __future__ import annotations

from src.crm.events.schemas import DealEvent

__all__ = [
    "DeadLetterQueue",
    "DealEvent",
    "DealEventBus",
    "EventConsumer",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load bus, consumer, and DLQ so schema imports stay light."""
    if name == "DealEventBus":
        from src.crm.events.bus import DealEventBus

        return DealEventBus
    if name == "EventConsumer":
        from src.crm.events.consumer import EventConsumer

        return EventConsumer
    if name == "DeadLetterQueue":
        from src.crm.events.dlq import DeadLetterQueue

        return DeadLetterQueue
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
