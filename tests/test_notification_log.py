from __future__ import annotations

from datetime import timedelta, timezone

import pytest

from conftest import NOW, make_command
from queueflow.notifications.notifier import DispatchResult, Notifier
from queueflow.notifications.sender import DeliveryResult
from queueflow.notifications.templates import MessageContext, render
from queueflow.queue.models import DeliveryOutcome, NotificationKind


@pytest.mark.asyncio
async def test_claim_is_exclusive_until_it_fails(service, notification_log, admin):
    ticket = await service.create_ticket(make_command(), admin)

    first = await notification_log.claim(
        ticket_id=ticket.id, kind=NotificationKind.T_MINUS_30, recipient="0812", message="hi", at=NOW
    )
    second = await notification_log.claim(
        ticket_id=ticket.id, kind=NotificationKind.T_MINUS_30, recipient="0812", message="hi", at=NOW
    )
    assert first is not None
    assert second is None

    await notification_log.record(first, DeliveryOutcome.FAILED, error_message="timeout", at=NOW)
    assert await notification_log.failed_attempts(ticket.id, NotificationKind.T_MINUS_30) == 1
    assert not await notification_log.has_sent(ticket.id, NotificationKind.T_MINUS_30)

    retry = await notification_log.claim(
        ticket_id=ticket.id,
        kind=NotificationKind.T_MINUS_30,
        recipient="0812",
        message="hi",
        at=NOW + timedelta(minutes=1),
    )
    assert retry is not None
    await notification_log.record(retry, DeliveryOutcome.SENT, at=NOW + timedelta(minutes=1))
    assert await notification_log.has_sent(ticket.id, NotificationKind.T_MINUS_30)

    after_sent = await notification_log.claim(
        ticket_id=ticket.id,
        kind=NotificationKind.T_MINUS_30,
        recipient="0812",
        message="hi",
        at=NOW + timedelta(minutes=2),
    )
    assert after_sent is None


@pytest.mark.asyncio
async def test_claims_are_per_kind(service, notification_log, admin):
    ticket = await service.create_ticket(make_command(), admin)

    t30 = await notification_log.claim(
        ticket_id=ticket.id, kind=NotificationKind.T_MINUS_30, recipient="0812", message="a", at=NOW
    )
    t15 = await notification_log.claim(
        ticket_id=ticket.id, kind=NotificationKind.T_MINUS_15, recipient="0812", message="b", at=NOW
    )

    assert t30 is not None and t15 is not None


@pytest.mark.asyncio
async def test_claim_cannot_be_resolved_to_pending(notification_log):
    with pytest.raises(ValueError):
        await notification_log.record("any", DeliveryOutcome.PENDING, at=NOW)


@pytest.mark.asyncio
async def test_notifier_skips_tickets_without_phone(service, notifier: Notifier, admin, sender):
    ticket = await service.create_ticket(make_command(phone=None), admin)

    assert await notifier.notify(ticket, NotificationKind.T_MINUS_30) is DispatchResult.NO_RECIPIENT
    assert sender.sent == []


@pytest.mark.asyncio
async def test_notifier_reports_claims_held_elsewhere(service, notifier: Notifier, notification_log, admin, sender):
    ticket = await service.create_ticket(make_command(), admin)
    await notification_log.claim(
        ticket_id=ticket.id, kind=NotificationKind.NEXT_IN_LINE, recipient="0812", message="x", at=NOW
    )

    assert await notifier.notify(ticket, NotificationKind.NEXT_IN_LINE) is DispatchResult.CLAIMED_ELSEWHERE
    assert sender.sent == []


@pytest.mark.asyncio
async def test_notifier_records_undelivered_result_as_failed(
    repository, notification_log, clock, metrics, service, admin
):
    class RefusingSender:
        async def send(self, recipient, text):
            return DeliveryResult(delivered=False, detail="disabled")

    notifier = Notifier(
        repository,
        notification_log,
        RefusingSender(),
        clock,
        timezone=timezone.utc,
        frontend_url="https://queue.example.com",
        metrics=metrics,
    )
    ticket = await service.create_ticket(make_command(), admin)

    assert await notifier.notify(ticket, NotificationKind.YOUR_TURN) is DispatchResult.FAILED
    records = await notification_log.list_for_ticket(ticket.id)
    assert records[0].outcome is DeliveryOutcome.FAILED
    assert records[0].error_message == "disabled"
    assert metrics.counter("reminders_failed_total").value(labels={"kind": "YOUR_TURN"}) == 1


@pytest.mark.asyncio
async def test_booking_confirmation_renders_shop_details(service, admin):
    ticket = await service.create_ticket(make_command(), admin)
    context = MessageContext(
        ticket=ticket,
        shop_name="Barber Keren",
        shop_address="Jl. Merdeka 1",
        provider_name="Budi",
        service_name="Haircut",
        service_price=50000,
        frontend_url="https://queue.example.com/",
        timezone=timezone(timedelta(hours=7)),
    )

    text = render(NotificationKind.BOOKING_CONFIRMATION, context)

    assert "*A001*" in text
    assert "Estimated start: 16:00" in text
    assert "Rp 50.000" in text
    assert f"https://queue.example.com/tracking/{ticket.id}" in text
