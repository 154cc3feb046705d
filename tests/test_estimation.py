from __future__ import annotations

import random
from datetime import timedelta

import pytest

from conftest import BARBER_A, BARBER_A2, NOW, SERVICE_DAY, SHAVE, make_command
from queueflow.queue.estimation import EstimationEngine, plan_estimates, seed_cursor
from queueflow.queue.models import Ticket
from queueflow.queue.state import BookingChannel, TicketStatus


def make_ticket(
    position: int,
    *,
    status: TicketStatus = TicketStatus.CHECKED_IN,
    duration: int = 30,
    actual_start=None,
    requested_time: str | None = None,
) -> Ticket:
    return Ticket(
        id=f"t-{position}",
        tenant_id="shop-a",
        provider_id="barber-a",
        service_id="haircut",
        customer_id=None,
        customer_name=None,
        customer_phone=None,
        queue_number=f"A{position:03d}",
        position=position,
        channel=BookingChannel.WALK_IN,
        status=status,
        service_day=SERVICE_DAY,
        requested_time=requested_time,
        estimated_start=None,
        estimated_duration=duration,
        estimated_end=None,
        actual_start=actual_start,
        actual_end=None,
        actual_duration=None,
        cancellation_reason=None,
        cancelled_by=None,
        status_changed_at=NOW,
        created_at=NOW,
        updated_at=NOW,
    )


def test_three_tickets_are_laid_end_to_end_with_buffer():
    waiting = [make_ticket(1), make_ticket(2), make_ticket(3)]

    estimates = plan_estimates(None, waiting, NOW, buffer=timedelta(minutes=5))

    assert [(e.estimated_start, e.estimated_end) for e in estimates] == [
        (NOW, NOW + timedelta(minutes=30)),
        (NOW + timedelta(minutes=35), NOW + timedelta(minutes=65)),
        (NOW + timedelta(minutes=70), NOW + timedelta(minutes=100)),
    ]


def test_position_order_wins_over_input_order_and_requested_time():
    waiting = [
        make_ticket(position, duration=duration, requested_time=f"{18 - position:02d}:00")
        for position, duration in zip(range(1, 9), (30, 15, 45, 20, 30, 10, 60, 25))
    ]
    shuffled = waiting[:]
    random.Random(7).shuffle(shuffled)

    estimates = plan_estimates(None, shuffled, NOW, buffer=timedelta(minutes=5))

    assert [e.ticket_id for e in estimates] == [ticket.id for ticket in waiting]
    for previous, current in zip(estimates, estimates[1:]):
        assert current.estimated_start >= previous.estimated_end
    for estimate in estimates:
        assert estimate.estimated_end - estimate.estimated_start == timedelta(minutes=estimate.estimated_duration)


def test_in_service_ticket_seeds_cursor_with_full_duration():
    started = NOW - timedelta(minutes=10)
    in_service = make_ticket(1, status=TicketStatus.IN_SERVICE, duration=30, actual_start=started)

    estimates = plan_estimates(in_service, [make_ticket(2)], NOW, buffer=timedelta(minutes=5))

    assert estimates[0].estimated_start == started + timedelta(minutes=30)


def test_overrunning_in_service_ticket_still_seeds_from_its_estimate():
    started = NOW - timedelta(minutes=50)
    in_service = make_ticket(1, status=TicketStatus.IN_SERVICE, duration=30, actual_start=started)

    assert seed_cursor(in_service, NOW) == NOW - timedelta(minutes=20)


def test_in_service_without_actual_start_falls_back_to_now():
    in_service = make_ticket(1, status=TicketStatus.IN_SERVICE)

    assert seed_cursor(in_service, NOW) == NOW


def test_terminal_tickets_are_not_scheduled():
    waiting = [make_ticket(1, status=TicketStatus.CANCELED), make_ticket(2), make_ticket(3, status=TicketStatus.DONE)]

    estimates = plan_estimates(None, waiting, NOW)

    assert [e.ticket_id for e in estimates] == ["t-2"]
    assert estimates[0].estimated_start == NOW


def test_empty_waiting_list_plans_nothing():
    assert plan_estimates(None, [], NOW) == []


def test_negative_buffer_is_rejected(repository):
    with pytest.raises(ValueError):
        EstimationEngine(repository, buffer_minutes=-1)


@pytest.mark.asyncio
async def test_recalculate_is_idempotent(service, repository, estimator, admin):
    for _ in range(3):
        await service.create_ticket(make_command(), admin)

    async with repository.transaction() as session:
        changed = await estimator.recalculate(session, BARBER_A, SERVICE_DAY, NOW)
    assert changed == []

    async with repository.read_session() as session:
        before = await repository.list_waiting(session, BARBER_A, SERVICE_DAY)
    async with repository.transaction() as session:
        again = await estimator.recalculate(session, BARBER_A, SERVICE_DAY, NOW)
    async with repository.read_session() as session:
        after = await repository.list_waiting(session, BARBER_A, SERVICE_DAY)

    assert again == []
    assert [(t.estimated_start, t.estimated_end) for t in before] == [
        (t.estimated_start, t.estimated_end) for t in after
    ]


@pytest.mark.asyncio
async def test_recalculate_returns_only_changed_tickets(service, repository, estimator, admin):
    for _ in range(2):
        await service.create_ticket(make_command(), admin)

    later = NOW + timedelta(minutes=10)
    async with repository.transaction() as session:
        changed = await estimator.recalculate(session, BARBER_A, SERVICE_DAY, later)

    assert [ticket.position for ticket in changed] == [1, 2]
    assert changed[0].estimated_start == later
    assert changed[1].estimated_start == later + timedelta(minutes=35)


@pytest.mark.asyncio
async def test_recalculate_with_no_waiting_tickets_writes_nothing(repository, estimator):
    async with repository.transaction() as session:
        assert await estimator.recalculate(session, BARBER_A, SERVICE_DAY, NOW) == []


@pytest.mark.asyncio
async def test_recalculation_stays_within_one_provider(service, repository, admin, clock):
    await service.create_ticket(make_command(provider_id=BARBER_A2), admin)
    clock.advance(minutes=15)
    await service.create_ticket(make_command(provider_id=BARBER_A, service_id=SHAVE), admin)

    async with repository.read_session() as session:
        other = await repository.list_waiting(session, BARBER_A2, SERVICE_DAY)
        mine = await repository.list_waiting(session, BARBER_A, SERVICE_DAY)

    assert other[0].estimated_start == NOW
    assert other[0].updated_at == NOW
    assert mine[0].estimated_start == NOW + timedelta(minutes=15)
    assert mine[0].estimated_end == NOW + timedelta(minutes=30)
