"""Construction and lifecycle of the alerting components."""

from sqlalchemy.ext.asyncio import AsyncEngine

from src.core.background import ExpiryRescanner, HeartbeatMonitor, PendingAlertSweeper
from src.core.clock import Clock, utc_now
from src.core.config import Settings
from src.core.database import build_engine, build_session_factory, close_db, init_db
from src.core.event_bus import EventBus, build_event_bus
from src.core.events import AlertEventPublisher, InventoryEventPublisher
from src.core.logging import get_logger
from src.services.alert_consumer import AlertConsumer
from src.services.alert_store import AlertStoreGateway
from src.services.fanout import AlertRelay, FanoutHub

logger = get_logger(__name__)


class AlertingRuntime:
    """Owns one instance of every component and starts/stops them in order."""

    def __init__(
        self,
        settings: Settings,
        *,
        engine: AsyncEngine | None = None,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings
        self._owns_engine = engine is None
        self.engine = engine or build_engine(
            settings.database_url,
            echo=settings.environment == "development",
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_pool_max_overflow,
            pool_timeout=settings.db_pool_timeout,
        )
        self.session_factory = build_session_factory(self.engine)
        self.bus = bus or build_event_bus(settings)

        self.hub = FanoutHub(
            queue_size=settings.fanout_queue_size,
            send_timeout=settings.fanout_send_timeout_seconds,
            max_missed_heartbeats=settings.heartbeat_max_missed,
        )
        self.store = AlertStoreGateway(
            self.session_factory,
            conflict_retries=settings.storage_conflict_retries,
            clock=clock,
        )
        self.inventory_publisher = InventoryEventPublisher(self.bus, settings.inventory_topic)
        self.alert_publisher = AlertEventPublisher(
            self.bus, self.store, self.hub, settings.alerts_topic,
        )
        self.consumer = AlertConsumer(
            self.store,
            self.alert_publisher,
            expiry_window_days=settings.expiry_warning_days,
            clock=clock,
        )
        self.relay = (
            AlertRelay(self.hub, settings.alerts_topic)
            if settings.fanout_relay_enabled
            else None
        )
        self.heartbeat = HeartbeatMonitor(self.hub, settings.heartbeat_interval_seconds)
        self.sweeper = PendingAlertSweeper(
            self.alert_publisher, settings.pending_publish_interval_seconds,
        )
        self.rescanner = (
            ExpiryRescanner(
                self.session_factory,
                self.inventory_publisher,
                window_days=settings.expiry_warning_days,
                interval=settings.expiry_rescan_interval_seconds,
                clock=clock,
            )
            if settings.expiry_rescan_enabled
            else None
        )
        self._serve_subscribers = False
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, *, consume: bool = True, serve_subscribers: bool = True) -> None:
        """Start components.

        Args:
            consume: Run the alert consumer (and the expiry rescanner).
            serve_subscribers: Run the real-time side (heartbeats, relay).
        """
        if self._started:
            return

        if self.settings.auto_create_tables:
            await init_db(self.engine)

        if consume:
            await self.consumer.start(
                self.bus, self.settings.inventory_topic, self.settings.consumer_group,
            )
        if serve_subscribers and self.relay is not None:
            await self.relay.start(self.bus)

        await self.bus.start()

        if serve_subscribers:
            await self.heartbeat.start()
        if consume:
            await self.sweeper.start()
        if consume and self.rescanner is not None:
            await self.rescanner.start()

        self._serve_subscribers = serve_subscribers
        self._started = True
        logger.info(
            "Alerting runtime started",
            consume=consume,
            serve_subscribers=serve_subscribers,
            bus=type(self.bus).__name__,
        )

    async def stop(self) -> None:
        """Stop in reverse order; in-flight events finish before the bus closes."""
        if not self._started:
            return

        if self.rescanner is not None:
            await self.rescanner.stop()
        await self.sweeper.stop()
        if self._serve_subscribers:
            await self.heartbeat.stop()
        await self.bus.stop()
        await self.hub.close_all()
        if self._owns_engine:
            await close_db(self.engine)

        self._started = False
        logger.info("Alerting runtime stopped")
