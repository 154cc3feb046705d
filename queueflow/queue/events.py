"""Domain events published after a queue command commits."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Protocol

from .models import Ticket
from .state import TicketStatus

logger = logging.getLogger(__name__)


class TicketEventType(str, Enum):
    CREATED = "ticket.created"
    UPDATED = "ticket.updated"
    STATUS_CHANGED = "ticket.status_changed"
    CANCELLED = "ticket.cancelled"


@dataclass(slots=True, frozen=True)
class TicketEvent:
    """Snapshot of a ticket change, addressed by tenant and provider for fan-out."""

    type: TicketEventType
    ticket: Ticket
    occurred_at: datetime
    from_status: TicketStatus | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def tenant_id(self) -> str:
        return self.ticket.tenant_id

    @property
    def provider_id(self) -> str:
        return self.ticket.provider_id


class EventSink(Protocol):
    async def publish(self, event: TicketEvent) -> None:
        ...


class InMemoryEventSink:
    """Collects events in order; used by tests and single-process hosts."""

    def __init__(self) -> None:
        self.events: list[TicketEvent] = []

    async def publish(self, event: TicketEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: TicketEventType) -> list[TicketEvent]:
        return [event for event in self.events if event.type == event_type]

    def clear(self) -> None:
        self.events.clear()


class LoggingEventSink:
    """Default sink when no live-update transport is wired."""

    async def publish(self, event: TicketEvent) -> None:
        logger.debug(
            "Event %s ticket=%s provider=%s status=%s",
            event.type.value,
            event.ticket.id,
            event.provider_id,
            event.ticket.status.value,
        )


async def publish_all(sink: EventSink, events: list[TicketEvent]) -> None:
    """Publish committed events; a failing sink never undoes the command."""

    for event in events:
        try:
            await sink.publish(event)
        except Exception:
            logger.exception("Event sink failed for %s on ticket %s", event.type.value, event.ticket.id)
