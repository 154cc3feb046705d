from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Mapping, Sequence

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from packages.db.models import (
    NotificationTable,
    ProviderTable,
    QueueTicketTable,
    ServiceTable,
    TenantTable,
    TicketHistoryTable,
)

from .errors import ConcurrentModificationError
from .models import (
    DeliveryOutcome,
    NotificationKind,
    NotificationRecord,
    Provider,
    ProviderStatus,
    ServiceOffering,
    Tenant,
    Ticket,
    TicketHistoryEntry,
)
from .state import ACTIVE_STATUSES, WAITING_STATUSES, BookingChannel, TicketStatus

_WAITING_VALUES = tuple(status.value for status in WAITING_STATUSES)
_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_STATUSES)


class TicketRepository:
    """Persistence helper for queue tickets, providers and their reference data.

    Command methods take the caller's :class:`AsyncSession` so a transition, its
    history row and the recalculated estimates commit together.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            yield session

    # reference data

    async def get_tenant(self, session: AsyncSession, tenant_id: str) -> Tenant | None:
        row = await session.get(TenantTable, tenant_id, populate_existing=True)
        if row is None:
            return None
        return Tenant(id=row.id, name=row.name, address=row.address)

    async def get_provider(self, session: AsyncSession, provider_id: str) -> Provider | None:
        row = await session.get(ProviderTable, provider_id, populate_existing=True)
        if row is None:
            return None
        return self._table_to_provider(row)

    async def get_service(self, session: AsyncSession, service_id: str) -> ServiceOffering | None:
        row = await session.get(ServiceTable, service_id, populate_existing=True)
        if row is None:
            return None
        return ServiceOffering(
            id=row.id,
            tenant_id=row.tenant_id,
            name=row.name,
            duration_minutes=row.duration_minutes,
            price=row.price,
        )

    async def claim_provider(
        self,
        session: AsyncSession,
        provider: Provider,
        *,
        status: ProviderStatus | None = None,
        served_increment: int = 0,
        at: datetime,
    ) -> Provider:
        """Bump the provider's version, serialising commands on one provider's queue."""

        values: dict[str, Any] = {
            "version": ProviderTable.version + 1,
            "updated_at": at,
        }
        if status is not None:
            values["status"] = status.value
        if served_increment:
            values["total_customers"] = ProviderTable.total_customers + served_increment

        result = await session.execute(
            update(ProviderTable)
            .where(ProviderTable.id == provider.id, ProviderTable.version == provider.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(f"Provider {provider.id} was modified concurrently")
        return replace(
            provider,
            status=status or provider.status,
            total_customers=provider.total_customers + served_increment,
            version=provider.version + 1,
        )

    # tickets

    async def get_ticket(self, session: AsyncSession, ticket_id: str) -> Ticket | None:
        row = await session.get(QueueTicketTable, ticket_id, populate_existing=True)
        if row is None:
            return None
        return self._table_to_ticket(row)

    async def next_position(self, session: AsyncSession, provider_id: str, service_day: date) -> int:
        result = await session.execute(
            select(func.max(QueueTicketTable.position)).where(
                QueueTicketTable.provider_id == provider_id,
                QueueTicketTable.service_day == service_day,
            )
        )
        current = result.scalar_one_or_none()
        return int(current or 0) + 1

    async def find_active_at(
        self, session: AsyncSession, provider_id: str, service_day: date, requested_time: str
    ) -> Ticket | None:
        result = await session.execute(
            select(QueueTicketTable)
            .where(
                QueueTicketTable.provider_id == provider_id,
                QueueTicketTable.service_day == service_day,
                QueueTicketTable.requested_time == requested_time,
                QueueTicketTable.status.in_(_ACTIVE_VALUES),
            )
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        return self._table_to_ticket(row) if row is not None else None

    async def count_tenant_tickets(self, session: AsyncSession, tenant_id: str, service_day: date) -> int:
        result = await session.execute(
            select(func.count()).select_from(QueueTicketTable).where(
                QueueTicketTable.tenant_id == tenant_id,
                QueueTicketTable.service_day == service_day,
            )
        )
        return int(result.scalar_one())

    async def insert_ticket(self, session: AsyncSession, ticket: Ticket) -> None:
        session.add(
            QueueTicketTable(
                id=ticket.id,
                tenant_id=ticket.tenant_id,
                provider_id=ticket.provider_id,
                service_id=ticket.service_id,
                customer_id=ticket.customer_id,
                customer_name=ticket.customer_name,
                customer_phone=ticket.customer_phone,
                queue_number=ticket.queue_number,
                position=ticket.position,
                channel=ticket.channel.value,
                status=ticket.status.value,
                service_day=ticket.service_day,
                requested_time=ticket.requested_time,
                estimated_start=ticket.estimated_start,
                estimated_duration=ticket.estimated_duration,
                estimated_end=ticket.estimated_end,
                status_changed_at=ticket.status_changed_at,
                version=ticket.version,
                created_at=ticket.created_at,
                updated_at=ticket.updated_at,
            )
        )
        try:
            await session.flush()
        except IntegrityError as exc:
            raise ConcurrentModificationError(
                f"Position {ticket.position} for provider {ticket.provider_id} on {ticket.service_day} is taken"
            ) from exc

    async def compare_and_swap_status(
        self,
        session: AsyncSession,
        ticket: Ticket,
        new_status: TicketStatus,
        *,
        at: datetime,
        changes: Mapping[str, Any] | None = None,
    ) -> Ticket:
        """Move ``ticket`` to ``new_status`` only if nobody changed it since it was read."""

        values: dict[str, Any] = dict(changes or {})
        values.update(status=new_status.value, status_changed_at=at, updated_at=at, version=ticket.version + 1)
        result = await session.execute(
            update(QueueTicketTable)
            .where(
                QueueTicketTable.id == ticket.id,
                QueueTicketTable.tenant_id == ticket.tenant_id,
                QueueTicketTable.status == ticket.status.value,
                QueueTicketTable.version == ticket.version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(f"Ticket {ticket.id} status update conflict")
        values["status"] = new_status
        return replace(ticket, **values)

    async def find_in_service(
        self,
        session: AsyncSession,
        provider_id: str,
        *,
        service_day: date | None = None,
        exclude_id: str | None = None,
    ) -> Ticket | None:
        statement = select(QueueTicketTable).where(
            QueueTicketTable.provider_id == provider_id,
            QueueTicketTable.status == TicketStatus.IN_SERVICE.value,
        )
        if service_day is not None:
            statement = statement.where(QueueTicketTable.service_day == service_day)
        if exclude_id is not None:
            statement = statement.where(QueueTicketTable.id != exclude_id)
        result = await session.execute(
            statement.order_by(QueueTicketTable.position.asc()).execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        return self._table_to_ticket(row) if row is not None else None

    async def list_waiting(self, session: AsyncSession, provider_id: str, service_day: date) -> list[Ticket]:
        result = await session.execute(
            select(QueueTicketTable)
            .where(
                QueueTicketTable.provider_id == provider_id,
                QueueTicketTable.service_day == service_day,
                QueueTicketTable.status.in_(_WAITING_VALUES),
            )
            .order_by(QueueTicketTable.position.asc())
            .execution_options(populate_existing=True)
        )
        return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def list_provider_day(
        self,
        session: AsyncSession,
        provider_id: str,
        service_day: date,
        *,
        status: TicketStatus | None = None,
    ) -> list[Ticket]:
        statement = select(QueueTicketTable).where(
            QueueTicketTable.provider_id == provider_id,
            QueueTicketTable.service_day == service_day,
        )
        if status is not None:
            statement = statement.where(QueueTicketTable.status == status.value)
        result = await session.execute(
            statement.order_by(QueueTicketTable.position.asc()).execution_options(populate_existing=True)
        )
        return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def update_estimates(self, session: AsyncSession, tickets: Sequence[Ticket], *, at: datetime) -> None:
        if not tickets:
            return
        # ORM bulk UPDATE by primary key: one executemany for the whole provider/day
        await session.execute(
            update(QueueTicketTable),
            [
                {
                    "id": ticket.id,
                    "estimated_start": ticket.estimated_start,
                    "estimated_duration": ticket.estimated_duration,
                    "estimated_end": ticket.estimated_end,
                    "updated_at": at,
                }
                for ticket in tickets
            ],
        )

    # reminder sweep queries; each runs in its own short read session

    async def find_waiting_starting_between(self, start: datetime, end: datetime) -> list[Ticket]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueTicketTable)
                .where(
                    QueueTicketTable.status.in_(_WAITING_VALUES),
                    QueueTicketTable.customer_phone.is_not(None),
                    QueueTicketTable.estimated_start >= start,
                    QueueTicketTable.estimated_start <= end,
                )
                .order_by(QueueTicketTable.estimated_start.asc())
            )
            return [self._table_to_ticket(row) for row in result.scalars().all()]

    async def list_active_for_day(self, service_day: date) -> list[Ticket]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueTicketTable)
                .where(
                    QueueTicketTable.service_day == service_day,
                    QueueTicketTable.status.in_(_ACTIVE_VALUES),
                )
                .order_by(QueueTicketTable.provider_id.asc(), QueueTicketTable.position.asc())
            )
            return [self._table_to_ticket(row) for row in result.scalars().all()]

    @staticmethod
    def _table_to_provider(row: ProviderTable) -> Provider:
        return Provider(
            id=row.id,
            tenant_id=row.tenant_id,
            name=row.name,
            status=ProviderStatus(row.status),
            total_customers=row.total_customers,
            version=row.version,
        )

    @staticmethod
    def _table_to_ticket(row: QueueTicketTable) -> Ticket:
        return Ticket(
            id=row.id,
            tenant_id=row.tenant_id,
            provider_id=row.provider_id,
            service_id=row.service_id,
            customer_id=row.customer_id,
            customer_name=row.customer_name,
            customer_phone=row.customer_phone,
            queue_number=row.queue_number,
            position=row.position,
            channel=BookingChannel(row.channel),
            status=TicketStatus(row.status),
            service_day=row.service_day,
            requested_time=row.requested_time,
            estimated_start=_optional_datetime(row.estimated_start),
            estimated_duration=row.estimated_duration,
            estimated_end=_optional_datetime(row.estimated_end),
            actual_start=_optional_datetime(row.actual_start),
            actual_end=_optional_datetime(row.actual_end),
            actual_duration=row.actual_duration,
            cancellation_reason=row.cancellation_reason,
            cancelled_by=row.cancelled_by,
            status_changed_at=_optional_datetime(row.status_changed_at),
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
            version=row.version,
        )


class HistoryLog:
    """Append-only ticket status trail."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        session: AsyncSession,
        *,
        ticket_id: str,
        status: TicketStatus,
        actor: str | None,
        note: str | None,
        at: datetime,
    ) -> TicketHistoryEntry:
        # commands on one ticket are serialised by the provider claim
        result = await session.execute(
            select(func.max(TicketHistoryTable.sequence)).where(TicketHistoryTable.ticket_id == ticket_id)
        )
        entry = TicketHistoryEntry(
            id=str(uuid.uuid4()),
            ticket_id=ticket_id,
            status=status,
            actor=actor,
            note=note,
            created_at=at,
            sequence=int(result.scalar_one_or_none() or 0) + 1,
        )
        session.add(
            TicketHistoryTable(
                id=entry.id,
                ticket_id=entry.ticket_id,
                sequence=entry.sequence,
                status=entry.status.value,
                actor=entry.actor,
                note=entry.note,
                created_at=entry.created_at,
            )
        )
        try:
            await session.flush()
        except IntegrityError as exc:
            raise ConcurrentModificationError(
                f"History sequence {entry.sequence} for ticket {ticket_id} is taken"
            ) from exc
        return entry

    async def list_for_ticket(self, ticket_id: str) -> list[TicketHistoryEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TicketHistoryTable)
                .where(TicketHistoryTable.ticket_id == ticket_id)
                .order_by(TicketHistoryTable.sequence.asc())
            )
            return [
                TicketHistoryEntry(
                    id=row.id,
                    ticket_id=row.ticket_id,
                    status=TicketStatus(row.status),
                    actor=row.actor,
                    note=row.note,
                    created_at=_ensure_datetime(row.created_at),
                    sequence=row.sequence,
                )
                for row in result.scalars().all()
            ]


class NotificationLog:
    """Delivery log doubling as the idempotency guard for outbound messages.

    A ``PENDING`` or ``SENT`` row is a claim on (ticket, kind), enforced by a
    partial unique index, so two overlapping sweeps cannot both send.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def has_sent(self, ticket_id: str, kind: NotificationKind) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(NotificationTable)
                .where(
                    NotificationTable.ticket_id == ticket_id,
                    NotificationTable.kind == kind.value,
                    NotificationTable.outcome == DeliveryOutcome.SENT.value,
                )
            )
            return int(result.scalar_one()) > 0

    async def failed_attempts(self, ticket_id: str, kind: NotificationKind) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(NotificationTable)
                .where(
                    NotificationTable.ticket_id == ticket_id,
                    NotificationTable.kind == kind.value,
                    NotificationTable.outcome == DeliveryOutcome.FAILED.value,
                )
            )
            return int(result.scalar_one())

    async def claim(
        self,
        *,
        ticket_id: str,
        kind: NotificationKind,
        recipient: str,
        message: str,
        at: datetime,
    ) -> str | None:
        """Insert a PENDING record; return its id, or ``None`` if already claimed or sent."""

        record_id = str(uuid.uuid4())
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(
                        NotificationTable(
                            id=record_id,
                            ticket_id=ticket_id,
                            kind=kind.value,
                            recipient=recipient,
                            message=message,
                            outcome=DeliveryOutcome.PENDING.value,
                            created_at=at,
                        )
                    )
        except IntegrityError:
            return None
        return record_id

    async def record(
        self,
        record_id: str,
        outcome: DeliveryOutcome,
        *,
        error_message: str | None = None,
        at: datetime,
    ) -> None:
        if outcome is DeliveryOutcome.PENDING:
            raise ValueError("A claim can only be resolved to SENT or FAILED")
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(NotificationTable)
                    .where(
                        NotificationTable.id == record_id,
                        NotificationTable.outcome == DeliveryOutcome.PENDING.value,
                    )
                    .values(outcome=outcome.value, error_message=error_message, created_at=at)
                    .execution_options(synchronize_session=False)
                )

    async def list_for_ticket(self, ticket_id: str) -> list[NotificationRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(NotificationTable)
                .where(NotificationTable.ticket_id == ticket_id)
                .order_by(NotificationTable.created_at.asc())
            )
            return [
                NotificationRecord(
                    id=row.id,
                    ticket_id=row.ticket_id,
                    kind=NotificationKind(row.kind),
                    recipient=row.recipient,
                    message=row.message,
                    outcome=DeliveryOutcome(row.outcome),
                    error_message=row.error_message,
                    created_at=_ensure_datetime(row.created_at),
                )
                for row in result.scalars().all()
            ]


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    raise TypeError("Expected datetime value from database")


def _optional_datetime(value: datetime | None) -> datetime | None:
    return None if value is None else _ensure_datetime(value)
