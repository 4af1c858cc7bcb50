"""Background scheduler for outbound retries and daily inbound counters.

Provides a lightweight APScheduler wrapper:
- Retry sweep every WEBHOOK_RETRY_POLL_SECONDS (claims due retry tasks)
- Daily reset of inbound ``requests_today`` at midnight UTC

Exports:
    WebhookScheduler: Async scheduler for retry claiming and counter resets.
"""

from __future__ import annotations

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import structlog

from src.crm.webhooks.dispatcher import OutboundDispatcher
from src.crm.webhooks.repository import InboundWebhookRepository

logger = structlog.get_logger(__name__)


class WebhookScheduler:
    """Periodic jobs of the webhook worker.

    The retry job runs with ``max_instances=1`` so a slow sweep is never
    overlapped by the next one; tasks are claimed atomically either way.

    Args:
        dispatcher: Outbound dispatcher that runs claimed retries.
        inbound: Inbound webhook repository for the daily counter reset.
        poll_seconds: Interval of the retry sweep.
    """

    def __init__(
        self,
        dispatcher: OutboundDispatcher,
        inbound: InboundWebhookRepository,
        poll_seconds: int = 5,
    ) -> None:
        self._dispatcher = dispatcher
        self._inbound = inbound
        self._poll_seconds = poll_seconds
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Start the scheduler. Must be called with a running event loop."""
        self._scheduler = AsyncIOScheduler(timezone="UTC")

        self._scheduler.add_job(
            self._run_retries,
            trigger=IntervalTrigger(seconds=self._poll_seconds),
            id="webhook_retry_sweep",
            name="Claim and deliver due webhook retries",
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.add_job(
            self._reset_daily_counters,
            trigger=CronTrigger(hour=0, minute=0, timezone="UTC"),
            id="inbound_daily_reset",
            name="Reset inbound requests_today counters",
            misfire_grace_time=3600,
        )

        self._scheduler.start()
        logger.info(
            "webhook_scheduler.started",
            jobs=["webhook_retry_sweep", "inbound_daily_reset"],
            retry_poll_seconds=self._poll_seconds,
        )

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("webhook_scheduler.stopped")
        self._scheduler = None

    async def _run_retries(self) -> None:
        try:
            claimed = await self._dispatcher.run_due_retries()
        except Exception:
            logger.exception("webhook_scheduler.retry_sweep_failed")
            return
        if claimed:
            logger.info("webhook_scheduler.retries_claimed", count=claimed)

    async def _reset_daily_counters(self) -> None:
        try:
            reset = await self._inbound.reset_daily_counters()
        except Exception:
            logger.exception("webhook_scheduler.daily_reset_failed")
            return
        logger.info("webhook_scheduler.daily_reset", inbound_webhooks=reset)
