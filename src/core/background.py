"""Periodic background tasks."""

import asyncio
from abc import ABC, abstractmethod
from datetime import date, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.clock import Clock, utc_now
from src.core.events import AlertEventPublisher, InventoryEventPublisher
from src.core.logging import get_logger
from src.repositories.inventory import InventoryRepository
from src.services.fanout import FanoutHub

logger = get_logger(__name__)


class PeriodicTask(ABC):
    """Runs ``run_once`` every ``interval`` seconds until stopped."""

    name = "periodic_task"

    def __init__(self, interval: float) -> None:
        """Initialize the task.

        Args:
            interval: Interval in seconds between runs
        """
        self.interval = interval
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("Background task is already running", task=self.name)
            return

        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info("Background task started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        """Stop the background loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Background task stopped", task=self.name)

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Background task run failed", task=self.name)

    @abstractmethod
    async def run_once(self) -> object:
        """Run a single pass of the task."""


class HeartbeatMonitor(PeriodicTask):
    """Drops subscribers that stopped sending heartbeats."""

    name = "heartbeat_monitor"

    def __init__(self, hub: FanoutHub, interval: float = 30.0) -> None:
        super().__init__(interval)
        self.hub = hub

    async def run_once(self) -> None:
        expired = await self.hub.sweep()
        if expired:
            logger.info("Expired subscribers removed", count=len(expired))


class PendingAlertSweeper(PeriodicTask):
    """Publishes alert revisions left pending by an earlier broker outage."""

    name = "pending_alert_sweeper"

    def __init__(self, publisher: AlertEventPublisher, interval: float = 30.0) -> None:
        super().__init__(interval)
        self.publisher = publisher

    async def run_once(self) -> None:
        events = await self.publisher.publish_pending()
        if events:
            logger.info("Pending alert changes published", count=len(events))


class ExpiryRescanner(PeriodicTask):
    """Re-announces items whose expiry status may have changed with time.

    Expiry alerts depend on the clock as well as on inventory writes, so
    items expiring within the warning window are republished as updates and
    go through the regular alert pipeline. The first run also covers items
    that already expired; later runs start from the day of the previous run.
    """

    name = "expiry_rescanner"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: InventoryEventPublisher,
        *,
        window_days: int = 30,
        interval: float = 3600.0,
        batch_size: int = 500,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(interval)
        self.session_factory = session_factory
        self.publisher = publisher
        self.window_days = window_days
        self.batch_size = batch_size
        self._clock = clock
        self._last_scan: date | None = None

    async def run_once(self) -> int:
        """Republish every item inside the window; returns how many."""
        now = self._clock()
        horizon = (now + timedelta(days=self.window_days)).date()
        published = 0
        offset = 0
        while True:
            async with self.session_factory() as session:
                items = await InventoryRepository(session).get_expiring_items(
                    horizon,
                    limit=self.batch_size,
                    offset=offset,
                    expiring_on_or_after=self._last_scan,
                )
            for item in items:
                await self.publisher.publish_updated(
                    item.to_snapshot(), correlation_id="expiry-rescan",
                )
            published += len(items)
            if len(items) < self.batch_size:
                break
            offset += self.batch_size

        logger.info(
            "Expiry rescan completed",
            items=published,
            since=self._last_scan.isoformat() if self._last_scan else None,
            horizon=horizon.isoformat(),
        )
        self._last_scan = now.date()
        return published
