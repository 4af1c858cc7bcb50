"""Background worker: deal event consumer plus retry and reset schedules.

Run with ``python -m src.crm.worker``. Several workers may run side by
side: they share the consumer group, retry tasks are claimed atomically
and lineage locks keep duplicate events from being delivered twice.
"""

from __future__ import annotations

import asyncio
import os
import signal
import socket

import structlog

from src.crm.config import get_settings
from src.crm.core.database import close_db, get_session, init_db
from src.crm.core.monitoring import init_sentry
from src.crm.core.redis import close_redis, get_redis_pool
from src.crm.api.middleware.logging import configure_structlog
from src.crm.events.bus import DEAL_EVENTS_STREAM
from src.crm.events.consumer import EventConsumer
from src.crm.webhooks.scheduler import WebhookScheduler
from src.crm.webhooks.services import build_services

logger = structlog.get_logger(__name__)

CONSUMER_GROUP = "webhook_dispatchers"


def consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


async def run_worker() -> None:
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    services = build_services(get_session, get_redis_pool(), settings)
    consumer = EventConsumer(
        services.event_bus,
        DEAL_EVENTS_STREAM,
        CONSUMER_GROUP,
        consumer_name(),
        services.dead_letter_queue,
    )
    scheduler = WebhookScheduler(
        services.dispatcher,
        services.inbound_repository,
        poll_seconds=settings.WEBHOOK_RETRY_POLL_SECONDS,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, consumer.stop)
        except NotImplementedError:
            pass  # Windows

    scheduler.start()
    logger.info("worker.started", consumer_group=CONSUMER_GROUP, stream=DEAL_EVENTS_STREAM)
    try:
        await consumer.reclaim_abandoned(services.dispatcher.dispatch)
        await consumer.process_loop(services.dispatcher.dispatch)
    finally:
        scheduler.stop()
        await services.close()
        await close_db()
        await close_redis()
        logger.info("worker.stopped")


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
