from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from packages.db.models import ProviderTable, ServiceTable, TenantTable
from queueflow.core.clock import FrozenClock
from queueflow.metrics import MetricsRegistry, register_default_metrics
from queueflow.notifications.notifier import Notifier
from queueflow.notifications.sender import DeliveryResult
from queueflow.queue.errors import DeliveryFailure
from queueflow.queue.estimation import EstimationEngine
from queueflow.queue.events import InMemoryEventSink
from queueflow.queue.models import ActorContext, ActorRole, CreateTicketCommand
from queueflow.queue.repository import HistoryLog, NotificationLog, TicketRepository
from queueflow.queue.service import QueueService
from queueflow.queue.state import BookingChannel

NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)
SERVICE_DAY = date(2026, 10, 19)

SHOP_A = "shop-a"
SHOP_B = "shop-b"
BARBER_A = "barber-a"
BARBER_A2 = "barber-a2"
BARBER_B = "barber-b"
HAIRCUT = "haircut"
SHAVE = "shave"
HAIRCUT_B = "haircut-b"


class RecordingSender:
    """Message sender double that records every message and can be told to fail."""

    def __init__(self, *, failures: int = 0) -> None:
        self.sent: list[tuple[str, str]] = []
        self.failures = failures

    async def send(self, recipient: str, text: str) -> DeliveryResult:
        self.sent.append((recipient, text))
        if self.failures:
            self.failures -= 1
            raise DeliveryFailure("gateway unavailable")
        return DeliveryResult(delivered=True)


def make_command(
    *,
    channel: BookingChannel = BookingChannel.WALK_IN,
    tenant_id: str = SHOP_A,
    provider_id: str = BARBER_A,
    service_id: str = HAIRCUT,
    phone: str | None = "0812-0000-0001",
    name: str | None = "Andi",
    service_day: date = SERVICE_DAY,
    requested_time: str | None = None,
) -> CreateTicketCommand:
    return CreateTicketCommand(
        tenant_id=tenant_id,
        provider_id=provider_id,
        service_id=service_id,
        channel=channel,
        service_day=service_day,
        requested_time=requested_time,
        customer_name=name,
        customer_phone=phone,
    )


@pytest.fixture
def admin() -> ActorContext:
    return ActorContext(role=ActorRole.ADMIN, tenant_id=SHOP_A, user_id="admin-a")


@pytest.fixture
def outsider() -> ActorContext:
    return ActorContext(role=ActorRole.ADMIN, tenant_id=SHOP_B, user_id="admin-b")


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def metrics() -> MetricsRegistry:
    return register_default_metrics(MetricsRegistry())


@pytest.fixture
def events() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    try:
        yield engine
    finally:
        await engine.dispose()


async def prepare_database(engine: AsyncEngine) -> async_sessionmaker:
    """Create the schema on ``engine`` and seed two shops with their barbers and services."""

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        async with session.begin():
            session.add_all(
                [
                    TenantTable(id=SHOP_A, name="Barber Keren", address="Jl. Merdeka 1"),
                    TenantTable(id=SHOP_B, name="Cukur Kilat"),
                ]
            )
            await session.flush()
            session.add_all(
                [
                    ProviderTable(id=BARBER_A, tenant_id=SHOP_A, name="Budi"),
                    ProviderTable(id=BARBER_A2, tenant_id=SHOP_A, name="Joko"),
                    ProviderTable(id=BARBER_B, tenant_id=SHOP_B, name="Rudi"),
                    ServiceTable(id=HAIRCUT, tenant_id=SHOP_A, name="Haircut", duration_minutes=30, price=50000),
                    ServiceTable(id=SHAVE, tenant_id=SHOP_A, name="Shave", duration_minutes=15, price=25000),
                    ServiceTable(id=HAIRCUT_B, tenant_id=SHOP_B, name="Haircut", duration_minutes=20, price=40000),
                ]
            )
    return factory


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return await prepare_database(engine)


@pytest.fixture
def repository(session_factory: async_sessionmaker, engine: AsyncEngine) -> TicketRepository:
    return TicketRepository(session_factory, engine=engine)


@pytest.fixture
def history(session_factory: async_sessionmaker) -> HistoryLog:
    return HistoryLog(session_factory)


@pytest.fixture
def notification_log(session_factory: async_sessionmaker) -> NotificationLog:
    return NotificationLog(session_factory)


@pytest.fixture
def estimator(repository: TicketRepository, metrics: MetricsRegistry) -> EstimationEngine:
    return EstimationEngine(repository, buffer_minutes=5, metrics=metrics)


@pytest.fixture
def notifier(
    repository: TicketRepository,
    notification_log: NotificationLog,
    sender: RecordingSender,
    clock: FrozenClock,
    metrics: MetricsRegistry,
) -> Notifier:
    return Notifier(
        repository,
        notification_log,
        sender,
        clock,
        timezone=timezone.utc,
        frontend_url="https://queue.example.com",
        max_delivery_attempts=3,
        metrics=metrics,
    )


@pytest.fixture
def service(
    repository: TicketRepository,
    history: HistoryLog,
    estimator: EstimationEngine,
    clock: FrozenClock,
    events: InMemoryEventSink,
    metrics: MetricsRegistry,
) -> QueueService:
    return QueueService(repository, history, estimator, clock, events=events, metrics=metrics)
