from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from opentelemetry.sdk.trace import TracerProvider
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from queueflow.core.clock import Clock, SystemClock, resolve_timezone
from queueflow.core.config import Settings, get_settings
from queueflow.core.logging import configure_logging, init_tracer, shutdown_tracer
from queueflow.metrics import register_default_metrics
from queueflow.notifications.notifier import Notifier
from queueflow.notifications.sender import DisabledSender, MessageSender, WhatsAppSender
from queueflow.queue.estimation import EstimationEngine
from queueflow.queue.events import EventSink, LoggingEventSink
from queueflow.queue.repository import HistoryLog, NotificationLog, TicketRepository
from queueflow.queue.service import QueueService
from queueflow.scheduler.reminders import ReminderScheduler
from queueflow.scheduler.runner import ReminderRunner


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


@dataclass(slots=True)
class QueueApplication:
    """Everything a host process needs to drive the queue engine."""

    settings: Settings
    engine: AsyncEngine
    service: QueueService
    scheduler: ReminderScheduler
    runner: ReminderRunner
    sender: MessageSender
    tracer_provider: TracerProvider | None = None


def build_sender(settings: Settings) -> MessageSender:
    if not settings.whatsapp_enabled or not settings.whatsapp_api_token:
        return DisabledSender()
    return WhatsAppSender(
        api_url=settings.whatsapp_api_url,
        token=settings.whatsapp_api_token,
        country_code=settings.whatsapp_country_code,
        timeout=settings.whatsapp_timeout_seconds,
    )


def build_application(
    settings: Settings,
    engine: AsyncEngine,
    *,
    clock: Clock | None = None,
    sender: MessageSender | None = None,
    events: EventSink | None = None,
) -> QueueApplication:
    clock = clock or SystemClock()
    tz = resolve_timezone(settings.timezone)
    metrics = register_default_metrics()
    session_factory = async_sessionmaker(engine, expire_on_commit=False)

    sender = sender or build_sender(settings)
    repository = TicketRepository(session_factory, engine=engine)
    notifier = Notifier(
        repository,
        NotificationLog(session_factory),
        sender,
        clock,
        timezone=tz,
        frontend_url=settings.frontend_url,
        max_delivery_attempts=settings.max_delivery_attempts,
        metrics=metrics,
    )
    service = QueueService(
        repository,
        HistoryLog(session_factory),
        EstimationEngine(repository, buffer_minutes=settings.buffer_minutes, metrics=metrics),
        clock,
        events=events or LoggingEventSink(),
        notifier=notifier,
        retry_attempts=settings.command_retry_attempts,
        metrics=metrics,
    )
    scheduler = ReminderScheduler(
        repository,
        notifier,
        clock,
        timezone=tz,
        t30_lead_minutes=settings.t30_lead_minutes,
        t15_lead_minutes=settings.t15_lead_minutes,
        window_minutes=settings.reminder_window_minutes,
        metrics=metrics,
    )
    runner = ReminderRunner(
        scheduler,
        interval_seconds=settings.reminder_interval_seconds,
        enabled=settings.notification_job_enabled,
    )
    return QueueApplication(
        settings=settings,
        engine=engine,
        service=service,
        scheduler=scheduler,
        runner=runner,
        sender=sender,
    )


@asynccontextmanager
async def lifespan(settings: Settings | None = None) -> AsyncIterator[QueueApplication]:  # pragma: no cover
    settings = settings or get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    engine = create_async_engine(_to_asyncpg_dsn(settings.database_url), echo=settings.database_echo, future=True)
    application = build_application(settings, engine)
    application.tracer_provider = tracer_provider
    try:
        await application.service.ensure_schema()
        application.runner.start()
        logger.info("%s started (%s)", settings.app_name, settings.environment)
        yield application
    finally:
        await application.runner.stop()
        if isinstance(application.sender, WhatsAppSender):
            await application.sender.aclose()
        await engine.dispose()
        shutdown_tracer(tracer_provider)


async def serve(settings: Settings | None = None) -> None:  # pragma: no cover - long running host
    async with lifespan(settings):
        await asyncio.Event().wait()


def main() -> None:  # pragma: no cover
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Shutting down")


if __name__ == "__main__":  # pragma: no cover
    main()
