from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Sequence

from .state import BookingChannel, TicketStatus


class ProviderStatus(str, Enum):
    """Operational status of a barber."""

    AVAILABLE = "AVAILABLE"
    BUSY = "BUSY"
    ON_BREAK = "ON_BREAK"
    OFFLINE = "OFFLINE"


class NotificationKind(str, Enum):
    """Named triggers for outbound customer messages."""

    BOOKING_CONFIRMATION = "BOOKING_CONFIRMATION"
    T_MINUS_30 = "T_MINUS_30"
    T_MINUS_15 = "T_MINUS_15"
    NEXT_IN_LINE = "NEXT_IN_LINE"
    YOUR_TURN = "YOUR_TURN"
    POST_SERVICE = "POST_SERVICE"


class DeliveryOutcome(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class ActorRole(str, Enum):
    ADMIN = "ADMIN"
    BARBER = "BARBER"
    CUSTOMER = "CUSTOMER"
    SYSTEM = "SYSTEM"
    SUPER_ADMIN = "SUPER_ADMIN"


@dataclass(slots=True, frozen=True)
class ActorContext:
    """Identity of the caller as resolved by the API layer."""

    role: ActorRole
    tenant_id: str
    provider_id: str | None = None
    user_id: str | None = None

    @property
    def reference(self) -> str:
        return self.user_id or f"{self.role.value.lower()}@{self.tenant_id}"


@dataclass(slots=True)
class Ticket:
    """A customer's place in one provider's queue for one visit."""

    id: str
    tenant_id: str
    provider_id: str
    service_id: str
    customer_id: str | None
    customer_name: str | None
    customer_phone: str | None
    queue_number: str
    position: int
    channel: BookingChannel
    status: TicketStatus
    service_day: date
    requested_time: str | None
    estimated_start: datetime | None
    estimated_duration: int
    estimated_end: datetime | None
    actual_start: datetime | None
    actual_end: datetime | None
    actual_duration: int | None
    cancellation_reason: str | None
    cancelled_by: str | None
    status_changed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    version: int = 1

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.estimated_duration)


@dataclass(slots=True)
class TicketHistoryEntry:
    """Append-only audit row written for every status a ticket enters."""

    id: str
    ticket_id: str
    status: TicketStatus
    actor: str | None
    note: str | None
    created_at: datetime
    sequence: int = 1


@dataclass(slots=True)
class NotificationRecord:
    """Outcome of one attempt to deliver a notification."""

    id: str
    ticket_id: str
    kind: NotificationKind
    recipient: str
    message: str
    outcome: DeliveryOutcome
    error_message: str | None
    created_at: datetime


@dataclass(slots=True)
class Provider:
    id: str
    tenant_id: str
    name: str
    status: ProviderStatus
    total_customers: int
    version: int = 1


@dataclass(slots=True)
class ServiceOffering:
    id: str
    tenant_id: str
    name: str
    duration_minutes: int
    price: int


@dataclass(slots=True)
class Tenant:
    id: str
    name: str
    address: str | None = None


@dataclass(slots=True)
class CreateTicketCommand:
    """Validated booking or walk-in request."""

    tenant_id: str
    provider_id: str
    service_id: str
    channel: BookingChannel
    service_day: date
    requested_time: str | None = None
    customer_id: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    initial_status: TicketStatus | None = None


@dataclass(slots=True)
class QueueView:
    """Customer facing view of one ticket and the queue ahead of it."""

    ticket: Ticket
    tickets_ahead: Sequence[Ticket] = field(default_factory=list)
    remaining_minutes: int = 0

    @property
    def position_in_queue(self) -> int:
        return len(self.tickets_ahead) + 1
