from __future__ import annotations

from enum import Enum

from .errors import InvalidTransitionError


class TicketStatus(str, Enum):
    """Supported states for a queue ticket's lifecycle."""

    BOOKED = "BOOKED"
    CHECKED_IN = "CHECKED_IN"
    IN_SERVICE = "IN_SERVICE"
    DONE = "DONE"
    CANCELED = "CANCELED"
    NO_SHOW = "NO_SHOW"


class BookingChannel(str, Enum):
    ONLINE = "ONLINE"
    WALK_IN = "WALK_IN"


WAITING_STATUSES: frozenset[TicketStatus] = frozenset({TicketStatus.BOOKED, TicketStatus.CHECKED_IN})
ACTIVE_STATUSES: frozenset[TicketStatus] = WAITING_STATUSES | {TicketStatus.IN_SERVICE}
TERMINAL_STATUSES: frozenset[TicketStatus] = frozenset(
    {TicketStatus.DONE, TicketStatus.CANCELED, TicketStatus.NO_SHOW}
)


class TicketStateMachine:
    """Validate queue ticket lifecycle transitions.

    The graph only moves forward; terminal statuses have no outgoing edges and a
    status never transitions to itself.
    """

    _TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
        TicketStatus.BOOKED: frozenset({TicketStatus.CHECKED_IN, TicketStatus.CANCELED, TicketStatus.NO_SHOW}),
        TicketStatus.CHECKED_IN: frozenset({TicketStatus.IN_SERVICE, TicketStatus.CANCELED, TicketStatus.NO_SHOW}),
        TicketStatus.IN_SERVICE: frozenset({TicketStatus.DONE}),
        TicketStatus.DONE: frozenset(),
        TicketStatus.CANCELED: frozenset(),
        TicketStatus.NO_SHOW: frozenset(),
    }

    _INITIAL_BY_CHANNEL: dict[BookingChannel, TicketStatus] = {
        BookingChannel.ONLINE: TicketStatus.BOOKED,
        BookingChannel.WALK_IN: TicketStatus.CHECKED_IN,
    }

    @classmethod
    def initial_status(cls, channel: BookingChannel, override: TicketStatus | None = None) -> TicketStatus:
        if override is None:
            return cls._INITIAL_BY_CHANNEL[channel]
        if override not in WAITING_STATUSES:
            raise InvalidTransitionError(None, override, message=f"Invalid initial ticket status: {override.value}")
        return override

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        return new in cls._TRANSITIONS.get(current, frozenset())

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> None:
        if not cls.can_transition(current, new):
            raise InvalidTransitionError(current, new)

    @classmethod
    def allowed_targets(cls, current: TicketStatus) -> frozenset[TicketStatus]:
        return cls._TRANSITIONS.get(current, frozenset())

    @staticmethod
    def is_terminal(status: TicketStatus) -> bool:
        return status in TERMINAL_STATUSES

    @staticmethod
    def is_waiting(status: TicketStatus) -> bool:
        return status in WAITING_STATUSES

    @staticmethod
    def is_active(status: TicketStatus) -> bool:
        return status in ACTIVE_STATUSES
