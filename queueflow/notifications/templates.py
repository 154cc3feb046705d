"""Message templates for customer notifications."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Callable

from queueflow.queue.models import NotificationKind, Ticket


@dataclass(slots=True, frozen=True)
class MessageContext:
    """Everything a template may reference, resolved before rendering."""

    ticket: Ticket
    shop_name: str
    shop_address: str | None
    provider_name: str
    service_name: str
    service_price: int
    frontend_url: str
    timezone: tzinfo

    @property
    def tracking_url(self) -> str:
        return f"{self.frontend_url.rstrip('/')}/tracking/{self.ticket.id}"

    @property
    def review_url(self) -> str:
        return f"{self.frontend_url.rstrip('/')}/review/{self.ticket.id}"

    @property
    def estimated_time(self) -> str:
        return _format_time(self.ticket.estimated_start, self.timezone)

    @property
    def customer(self) -> str:
        return self.ticket.customer_name or "there"


def _format_time(moment: datetime | None, tz: tzinfo) -> str:
    if moment is None:
        return "-"
    return moment.astimezone(tz).strftime("%H:%M")


def _format_price(amount: int) -> str:
    return f"{amount:,}".replace(",", ".")


def _booking_confirmation(ctx: MessageContext) -> str:
    return "\n".join(
        [
            f"[{ctx.shop_name}]",
            "Booking confirmed!",
            "",
            f"Hi {ctx.customer}, your queue number is *{ctx.ticket.queue_number}*.",
            f"Barber: {ctx.provider_name}",
            f"Date: {ctx.ticket.service_day.strftime('%d/%m/%Y')}",
            f"Estimated start: {ctx.estimated_time}",
            f"Service: {ctx.service_name} (Rp {_format_price(ctx.service_price)})",
            "",
            f"Track your queue live: {ctx.tracking_url}",
        ]
    )


def _t_minus_30(ctx: MessageContext) -> str:
    return "\n".join(
        [
            f"[{ctx.shop_name}]",
            "Time to get ready!",
            "",
            f"Your turn is about *30 minutes* away (number {ctx.ticket.queue_number}).",
            f"Estimated start: {ctx.estimated_time}",
            f"Location: {ctx.shop_address or ctx.shop_name}",
            "",
            f"Track: {ctx.tracking_url}",
        ]
    )


def _t_minus_15(ctx: MessageContext) -> str:
    return "\n".join(
        [
            f"[{ctx.shop_name}]",
            "Please head over now!",
            "",
            f"Your turn is about *15 minutes* away (number {ctx.ticket.queue_number}).",
            "Arriving more than 15 minutes late may forfeit your place.",
            "",
            f"Track: {ctx.tracking_url}",
        ]
    )


def _next_in_line(ctx: MessageContext) -> str:
    return "\n".join(
        [
            f"[{ctx.shop_name}]",
            "You're next!",
            "",
            f"Number: {ctx.ticket.queue_number}",
            "The customer before you is almost done. Please make sure you are at the shop.",
        ]
    )


def _your_turn(ctx: MessageContext) -> str:
    return "\n".join(
        [
            f"[{ctx.shop_name}]",
            "It's your turn now!",
            "",
            f"Please head to {ctx.provider_name}'s chair.",
            f"Queue number: {ctx.ticket.queue_number}",
        ]
    )


def _post_service(ctx: MessageContext) -> str:
    return "\n".join(
        [
            f"[{ctx.shop_name}]",
            "Thank you for visiting!",
            "",
            f"Total: Rp {_format_price(ctx.service_price)}",
            f"Barber: {ctx.provider_name}",
            "",
            f"How did we do? Rate us: {ctx.review_url}",
        ]
    )


TEMPLATES: dict[NotificationKind, Callable[[MessageContext], str]] = {
    NotificationKind.BOOKING_CONFIRMATION: _booking_confirmation,
    NotificationKind.T_MINUS_30: _t_minus_30,
    NotificationKind.T_MINUS_15: _t_minus_15,
    NotificationKind.NEXT_IN_LINE: _next_in_line,
    NotificationKind.YOUR_TURN: _your_turn,
    NotificationKind.POST_SERVICE: _post_service,
}


def render(kind: NotificationKind, ctx: MessageContext) -> str:
    try:
        template = TEMPLATES[kind]
    except KeyError as exc:
        raise ValueError(f"Unknown notification template: {kind}") from exc
    return template(ctx)
