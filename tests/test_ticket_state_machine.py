import itertools

import pytest

from queueflow.queue.errors import InvalidTransitionError
from queueflow.queue.state import BookingChannel, TicketStateMachine, TicketStatus

ALLOWED = {
    (TicketStatus.BOOKED, TicketStatus.CHECKED_IN),
    (TicketStatus.BOOKED, TicketStatus.CANCELED),
    (TicketStatus.BOOKED, TicketStatus.NO_SHOW),
    (TicketStatus.CHECKED_IN, TicketStatus.IN_SERVICE),
    (TicketStatus.CHECKED_IN, TicketStatus.CANCELED),
    (TicketStatus.CHECKED_IN, TicketStatus.NO_SHOW),
    (TicketStatus.IN_SERVICE, TicketStatus.DONE),
}

DISALLOWED = sorted(
    (pair for pair in itertools.product(TicketStatus, repeat=2) if pair not in ALLOWED),
    key=lambda pair: (pair[0].value, pair[1].value),
)


def test_ticket_state_machine_allows_expected_transitions():
    for current, target in ALLOWED:
        assert TicketStateMachine.can_transition(current, target)
        TicketStateMachine.assert_transition(current, target)


@pytest.mark.parametrize(("current", "target"), DISALLOWED)
def test_ticket_state_machine_blocks_invalid_transitions(current, target):
    assert not TicketStateMachine.can_transition(current, target)
    with pytest.raises(InvalidTransitionError) as exc_info:
        TicketStateMachine.assert_transition(current, target)
    assert exc_info.value.current is current
    assert exc_info.value.target is target
    assert f"{current.value} -> {target.value}" in str(exc_info.value)


def test_terminal_statuses_have_no_outgoing_edges():
    for status in (TicketStatus.DONE, TicketStatus.CANCELED, TicketStatus.NO_SHOW):
        assert TicketStateMachine.is_terminal(status)
        assert TicketStateMachine.allowed_targets(status) == frozenset()


def test_status_predicates():
    assert TicketStateMachine.is_waiting(TicketStatus.BOOKED)
    assert TicketStateMachine.is_waiting(TicketStatus.CHECKED_IN)
    assert not TicketStateMachine.is_waiting(TicketStatus.IN_SERVICE)
    assert TicketStateMachine.is_active(TicketStatus.IN_SERVICE)
    assert not TicketStateMachine.is_active(TicketStatus.DONE)


def test_initial_status_follows_booking_channel():
    assert TicketStateMachine.initial_status(BookingChannel.ONLINE) is TicketStatus.BOOKED
    assert TicketStateMachine.initial_status(BookingChannel.WALK_IN) is TicketStatus.CHECKED_IN
    assert (
        TicketStateMachine.initial_status(BookingChannel.WALK_IN, TicketStatus.BOOKED) is TicketStatus.BOOKED
    )


def test_initial_status_rejects_non_waiting_override():
    with pytest.raises(InvalidTransitionError):
        TicketStateMachine.initial_status(BookingChannel.ONLINE, TicketStatus.IN_SERVICE)
