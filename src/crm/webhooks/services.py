"""Service graph shared by the API process and the worker.

``build_services()`` wires repositories, the log store, the Redis-backed
queue and guard, the HTTP sender and the high-level dispatcher/ingestor
from one session factory and one Redis client.
"""

from __future__ import annotations

from dataclasses import dataclass

import redis.asyncio as aioredis

from src.crm.config import Settings, get_settings
from src.crm.events.bus import DealEventBus
from src.crm.events.dlq import DeadLetterQueue
from src.crm.webhooks.conversions import ConversionService
from src.crm.webhooks.delivery import WebhookSender
from src.crm.webhooks.dispatcher import OutboundDispatcher
from src.crm.webhooks.guard import InboundGuard
from src.crm.webhooks.ingestor import InboundIngestor
from src.crm.webhooks.log_store import DeliveryLogStore
from src.crm.webhooks.repository import (
    DealRepository,
    InboundWebhookRepository,
    SessionFactory,
    WebhookRepository,
)
from src.crm.webhooks.retry_queue import RetryQueue


@dataclass
class WebhookServices:
    webhook_repository: WebhookRepository
    inbound_repository: InboundWebhookRepository
    deal_repository: DealRepository
    log_store: DeliveryLogStore
    retry_queue: RetryQueue
    sender: WebhookSender
    dispatcher: OutboundDispatcher
    ingestor: InboundIngestor
    conversion_service: ConversionService
    event_bus: DealEventBus
    dead_letter_queue: DeadLetterQueue

    async def close(self) -> None:
        await self.sender.close()


def build_services(
    session_factory: SessionFactory,
    redis: aioredis.Redis,
    settings: Settings | None = None,
) -> WebhookServices:
    settings = settings or get_settings()

    webhooks = WebhookRepository(session_factory)
    inbound = InboundWebhookRepository(session_factory)
    deals = DealRepository(session_factory)
    logs = DeliveryLogStore(session_factory)
    retry_queue = RetryQueue(redis)
    sender = WebhookSender(
        timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
        response_body_max_chars=settings.WEBHOOK_RESPONSE_BODY_MAX_CHARS,
    )
    guard = InboundGuard(
        redis,
        rate_limit_per_minute=settings.INBOUND_RATE_LIMIT_PER_MINUTE,
        dedup_window_minutes=settings.INBOUND_DEDUP_WINDOW_MINUTES,
    )

    return WebhookServices(
        webhook_repository=webhooks,
        inbound_repository=inbound,
        deal_repository=deals,
        log_store=logs,
        retry_queue=retry_queue,
        sender=sender,
        dispatcher=OutboundDispatcher(webhooks, logs, sender, retry_queue, settings=settings),
        ingestor=InboundIngestor(inbound, deals, logs, guard, settings=settings),
        conversion_service=ConversionService.from_settings(session_factory, settings),
        event_bus=DealEventBus(redis),
        dead_letter_queue=DeadLetterQueue(redis),
    )
