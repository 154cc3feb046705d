"""Queue ticket lifecycle, estimation and command handlers."""

from .errors import (
    ConcurrentModificationError,
    CrossTenantAccessError,
    DeliveryFailure,
    InvalidTransitionError,
    NotFoundError,
    ProviderBusyError,
    QueueError,
    SlotTakenError,
)
from .estimation import EstimationEngine
from .events import EventSink, InMemoryEventSink, LoggingEventSink, TicketEvent, TicketEventType
from .models import ActorContext, ActorRole, CreateTicketCommand, QueueView, Ticket, TicketHistoryEntry
from .repository import HistoryLog, NotificationLog, TicketRepository
from .service import QueueService
from .state import BookingChannel, TicketStateMachine, TicketStatus

__all__ = [
    "ActorContext",
    "ActorRole",
    "BookingChannel",
    "ConcurrentModificationError",
    "CreateTicketCommand",
    "CrossTenantAccessError",
    "DeliveryFailure",
    "EstimationEngine",
    "EventSink",
    "HistoryLog",
    "InMemoryEventSink",
    "InvalidTransitionError",
    "LoggingEventSink",
    "NotFoundError",
    "NotificationLog",
    "ProviderBusyError",
    "QueueError",
    "QueueService",
    "QueueView",
    "SlotTakenError",
    "Ticket",
    "TicketEvent",
    "TicketEventType",
    "TicketHistoryEntry",
    "TicketRepository",
    "TicketStateMachine",
    "TicketStatus",
]
