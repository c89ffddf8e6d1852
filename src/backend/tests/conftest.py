"""Pytest configuration and fixtures for notification delivery tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from notify_reliability.core.config import Settings
from notify_reliability.main import create_app
from notify_reliability.models.notification_delivery import DeliveryChannel, DeliveryStatus
from notify_reliability.services.delivery.domain import DeliveryRecord
from notify_reliability.services.delivery.sql_store import SqlDeliveryStore, create_tables
from notify_reliability.services.delivery.store import DeliveryStore
from notify_reliability.services.delivery_service import NotificationDeliveryService

# Test database URL (use SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Wednesday
CLOCK_START = datetime(2026, 3, 11, 10, 30, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = CLOCK_START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ManualSleep:
    """Sleep that records the requested delay and blocks until released."""

    def __init__(self):
        self.delays: list[float] = []
        self._released = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await self._released.wait()

    def release(self) -> None:
        self._released.set()


class InstantSleep:
    """Sleep that records the requested delay and returns on the next loop pass."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


async def drain_retries(service: NotificationDeliveryService, rounds: int = 20) -> None:
    """Wait until every scheduled retry, including ones scheduled by retries, has run."""
    for _ in range(rounds):
        tasks = [e.task for e in service.scheduler._queue.values() if e.task is not None]
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)
    raise AssertionError("retry queue did not drain")


async def seed_records(
    store: DeliveryStore,
    channel: DeliveryChannel | str,
    status: DeliveryStatus | str,
    count: int,
    created_at: datetime,
    **fields,
) -> list[DeliveryRecord]:
    """Put `count` records straight into a store."""
    fields.setdefault("attempts", 1)
    records = []
    for i in range(count):
        record = DeliveryRecord(
            notification_id=f"seed-notification-{i}",
            user_id="seed-user",
            channel=channel,
            status=status,
            created_at=created_at,
            updated_at=created_at,
            **fields,
        )
        await store.put(record)
        records.append(record)
    return records


@pytest.fixture
def clock() -> FakeClock:
    """Clock pinned to a known Wednesday morning."""
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with metrics disabled and in-memory storage."""
    return Settings(
        metrics_enabled=False,
        storage_backend="memory",
        environment="test",
        log_level="WARNING",
    )


@pytest.fixture
def make_record(clock: FakeClock):
    """Factory for delivery records created at the fake clock's current time."""

    def _make(
        channel: DeliveryChannel | str = DeliveryChannel.EMAIL,
        status: DeliveryStatus | str = DeliveryStatus.FAILED,
        attempts: int = 1,
        **fields,
    ) -> DeliveryRecord:
        fields.setdefault("notification_id", "notification-1")
        fields.setdefault("user_id", "user-1")
        fields.setdefault("destination", "user@example.com")
        fields.setdefault("created_at", clock.now)
        fields.setdefault("updated_at", clock.now)
        return DeliveryRecord(channel=channel, status=status, attempts=attempts, **fields)

    return _make


@pytest_asyncio.fixture(scope="function")
async def service(clock, test_settings) -> AsyncGenerator[NotificationDeliveryService, None]:
    """In-memory service whose retries wait until the test releases them."""
    svc = NotificationDeliveryService(config=test_settings, clock=clock, sleep=ManualSleep())
    yield svc
    await svc.shutdown()


@pytest_asyncio.fixture(scope="function")
async def instant_service(clock, test_settings) -> AsyncGenerator[NotificationDeliveryService, None]:
    """In-memory service whose retries fire as soon as the loop yields."""
    svc = NotificationDeliveryService(config=test_settings, clock=clock, sleep=InstantSleep())
    yield svc
    await svc.shutdown()


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine with shared connection."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    await create_tables(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def sql_store(db_engine) -> SqlDeliveryStore:
    """SQL delivery store over the in-memory SQLite database."""
    session_factory = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return SqlDeliveryStore(session_factory)


@pytest_asyncio.fixture(scope="function")
async def api_service(test_settings) -> AsyncGenerator[NotificationDeliveryService, None]:
    """Service for API tests, on the real clock."""
    svc = NotificationDeliveryService(config=test_settings, sleep=ManualSleep())
    yield svc
    await svc.shutdown()


@pytest_asyncio.fixture(scope="function")
async def client(test_settings, api_service) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client bound to an injected delivery service."""
    app = create_app(test_settings)
    app.state.delivery_service = api_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
