"""SQLModel table definitions for the queue data layer."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


def _uuid_str() -> str:
    """Generate a random UUID string."""

    return str(uuid.uuid4())


class TenantTable(SQLModel, table=True):
    """Barbershops owning providers, services and tickets."""

    __tablename__ = "tenants"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    name: str = Field(sa_column=Column(String(255), nullable=False))
    address: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class ProviderTable(SQLModel, table=True):
    """Barbers that tickets queue against."""

    __tablename__ = "providers"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    tenant_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    name: str = Field(sa_column=Column(String(255), nullable=False))
    status: str = Field(default="AVAILABLE", sa_column=Column(String(20), nullable=False))
    total_customers: int = Field(default=0, sa_column=Column(Integer, nullable=False))
    version: int = Field(default=1, sa_column=Column(Integer, nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class ServiceTable(SQLModel, table=True):
    """Bookable services with their nominal duration."""

    __tablename__ = "services"

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    tenant_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    name: str = Field(sa_column=Column(String(255), nullable=False))
    duration_minutes: int = Field(sa_column=Column(Integer, nullable=False))
    price: int = Field(default=0, sa_column=Column(Integer, nullable=False))


class QueueTicketTable(SQLModel, table=True):
    """Queue entries; one row per customer visit."""

    __tablename__ = "queue_tickets"
    __table_args__ = (
        UniqueConstraint("provider_id", "service_day", "position", name="uq_queue_tickets_provider_day_position"),
        Index("ix_queue_tickets_tenant_day", "tenant_id", "service_day"),
        Index("ix_queue_tickets_status_estimated_start", "status", "estimated_start"),
    )

    id: str = Field(primary_key=True, index=True)
    tenant_id: str = Field(sa_column=Column(String(36), ForeignKey("tenants.id"), nullable=False))
    provider_id: str = Field(sa_column=Column(String(36), ForeignKey("providers.id"), nullable=False))
    service_id: str = Field(sa_column=Column(String(36), ForeignKey("services.id"), nullable=False))
    customer_id: str | None = Field(default=None, sa_column=Column(String(36), nullable=True))
    customer_name: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    customer_phone: str | None = Field(default=None, sa_column=Column(String(32), nullable=True))
    queue_number: str = Field(sa_column=Column(String(16), nullable=False))
    position: int = Field(sa_column=Column(Integer, nullable=False))
    channel: str = Field(sa_column=Column(String(20), nullable=False))
    status: str = Field(sa_column=Column(String(20), nullable=False))
    service_day: date = Field(sa_column=Column(Date, nullable=False))
    requested_time: str | None = Field(default=None, sa_column=Column(String(5), nullable=True))
    estimated_start: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    estimated_duration: int = Field(sa_column=Column(Integer, nullable=False))
    estimated_end: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    actual_start: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    actual_end: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    actual_duration: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))
    cancellation_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    cancelled_by: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    status_changed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    version: int = Field(default=1, sa_column=Column(Integer, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketHistoryTable(SQLModel, table=True):
    """Append-only status trail for queue tickets."""

    __tablename__ = "ticket_history"
    __table_args__ = (UniqueConstraint("ticket_id", "sequence", name="uq_ticket_history_ticket_sequence"),)

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("queue_tickets.id"), nullable=False, index=True)
    )
    sequence: int = Field(sa_column=Column(Integer, nullable=False))
    status: str = Field(sa_column=Column(String(20), nullable=False))
    actor: str | None = Field(default=None, sa_column=Column(String(255), nullable=True))
    note: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


_CLAIMED_OUTCOMES = text("outcome IN ('PENDING', 'SENT')")


class NotificationTable(SQLModel, table=True):
    """Delivery log; a PENDING or SENT row is the claim for (ticket, kind)."""

    __tablename__ = "notifications"
    __table_args__ = (
        Index(
            "uq_notifications_ticket_kind_claimed",
            "ticket_id",
            "kind",
            unique=True,
            postgresql_where=_CLAIMED_OUTCOMES,
            sqlite_where=_CLAIMED_OUTCOMES,
        ),
    )

    id: str = Field(default_factory=_uuid_str, primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("queue_tickets.id"), nullable=False, index=True)
    )
    kind: str = Field(sa_column=Column(String(32), nullable=False))
    recipient: str = Field(sa_column=Column(String(64), nullable=False))
    message: str = Field(sa_column=Column(Text, nullable=False))
    outcome: str = Field(sa_column=Column(String(16), nullable=False))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
