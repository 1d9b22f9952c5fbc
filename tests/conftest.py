"""Test configuration and fixtures."""

import asyncio
import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from src.core.config import Settings
from src.core.database import build_engine, build_session_factory, init_db
from src.core.event_bus import InMemoryEventBus, RetryPolicy
from src.core.runtime import AlertingRuntime
from src.main import create_app
from src.models.alert import AlertKind, AlertSeverity, AlertStatus, ItemKind
from src.models.events import AlertChangeEvent, AlertEventKind, AlertPayload, InventorySnapshot
from src.services.alert_store import AlertStoreGateway

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeConnection:
    """Stand-in for a WebSocket connection."""

    def __init__(self, delay: float = 0.0, fail: bool = False) -> None:
        self.delay = delay
        self.fail = fail
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.close_code: int | None = None

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise ConnectionResetError("connection reset by peer")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_code = code

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [message for message in self.sent if message.get("type") == message_type]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until the predicate holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings for an isolated SQLite database and the in-memory bus."""
    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test_alerts.db'}",
        event_bus_backend="memory",
        bus_partitions=3,
        handler_max_attempts=3,
        handler_backoff_seconds=0.01,
        handler_backoff_max_seconds=0.05,
        heartbeat_interval_seconds=3600,
        pending_publish_interval_seconds=3600,
        fanout_send_timeout_seconds=0.5,
    )


@pytest_asyncio.fixture(scope="function")
async def test_db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine with all tables."""
    engine = build_engine(test_settings.database_url)
    await init_db(engine)

    yield engine

    # Cleanup
    await engine.dispose()


@pytest.fixture
def session_factory(test_db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_db_engine)


@pytest.fixture
def store(session_factory, clock: FixedClock) -> AlertStoreGateway:
    return AlertStoreGateway(session_factory, clock=clock)


@pytest_asyncio.fixture(scope="function")
async def memory_bus() -> AsyncGenerator[InMemoryEventBus, None]:
    bus = InMemoryEventBus(
        partitions=3,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.01, max_delay=0.05),
        redelivery_delay=0.01,
        drain_timeout=2.0,
    )
    yield bus
    await bus.stop()


@pytest_asyncio.fixture(scope="function")
async def runtime(
    test_settings: Settings,
    test_db_engine: AsyncEngine,
    memory_bus: InMemoryEventBus,
    clock: FixedClock,
) -> AsyncGenerator[AlertingRuntime, None]:
    """Fully wired runtime on the test database and in-memory bus."""
    alerting_runtime = AlertingRuntime(
        test_settings, engine=test_db_engine, bus=memory_bus, clock=clock,
    )
    await alerting_runtime.start()
    yield alerting_runtime
    await alerting_runtime.stop()


@pytest_asyncio.fixture(scope="function")
async def client(runtime: AlertingRuntime) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client bound to the test runtime."""
    app = create_app(runtime)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def make_snapshot() -> Callable[..., InventorySnapshot]:
    """Build inventory snapshots with sensible defaults."""

    def _make(**overrides: Any) -> InventorySnapshot:
        data: dict[str, Any] = {
            "id": uuid.uuid4(),
            "name": "Ibuprofen",
            "item_kind": ItemKind.MEDICINE,
            "current_count": 50,
            "low_stock_threshold": 10,
            "unit": "tablets",
            "expiry_date": None,
            "category": "pain relief",
            "location": "Cabinet A",
        }
        data.update(overrides)
        return InventorySnapshot(**data)

    return _make


def make_alert_event(item_kind: ItemKind = ItemKind.MEDICINE) -> AlertChangeEvent:
    """Alert change event for a low-stock alert of the given item kind."""
    payload = AlertPayload(
        id=uuid.uuid4(),
        kind=AlertKind.LOW_STOCK,
        severity=AlertSeverity.MEDIUM,
        status=AlertStatus.ACTIVE,
        title="Low Stock Alert: Milk",
        message="Milk is running low. Current count: 2 liters",
        item_id=uuid.uuid4(),
        item_name="Milk",
        item_kind=item_kind,
        current_count=2,
        threshold=5,
        created_at=NOW,
        updated_at=NOW,
    )
    return AlertChangeEvent(event_type=AlertEventKind.CREATED, revision=1, data=payload)
