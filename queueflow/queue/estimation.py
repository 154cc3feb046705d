"""Per-provider estimated-time-of-service recalculation.

Queue order is the ticket ``position`` alone. The requested time-of-day a
customer picked is informational and never lets a ticket overtake another.

Seeding rule: when the provider has a ticket in service, the cursor is that
ticket's ``actual_start`` plus its full ``estimated_duration``. Elapsed time is
ignored, so an overrunning haircut keeps the seed where the
estimate put it until the ticket is completed. Without an in-service ticket the
cursor is "now", so a provider's waiting queue is never scheduled in the past.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Sequence

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from queueflow.metrics import MetricsRegistry, register_default_metrics

from .models import Ticket
from .repository import TicketRepository
from .state import TicketStateMachine

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True, frozen=True)
class Estimate:
    ticket_id: str
    estimated_start: datetime
    estimated_duration: int
    estimated_end: datetime


def seed_cursor(in_service: Ticket | None, now: datetime) -> datetime:
    """Return the moment the first waiting ticket can start."""

    if in_service is not None and in_service.actual_start is not None:
        return in_service.actual_start + in_service.duration
    return now


def plan_estimates(
    in_service: Ticket | None,
    waiting: Sequence[Ticket],
    now: datetime,
    *,
    buffer: timedelta = timedelta(0),
) -> list[Estimate]:
    """Walk the waiting tickets once in position order and lay them end to end.

    The buffer separates consecutive waiting tickets; the first one starts
    exactly at the cursor.
    """

    ordered = sorted(
        (ticket for ticket in waiting if TicketStateMachine.is_waiting(ticket.status)),
        key=lambda ticket: ticket.position,
    )
    cursor = seed_cursor(in_service, now)
    estimates: list[Estimate] = []
    for index, ticket in enumerate(ordered):
        start = cursor if index == 0 else cursor + buffer
        end = start + ticket.duration
        estimates.append(
            Estimate(
                ticket_id=ticket.id,
                estimated_start=start,
                estimated_duration=ticket.estimated_duration,
                estimated_end=end,
            )
        )
        cursor = end
    return estimates


class EstimationEngine:
    """Recompute and persist estimates for one provider on one service day."""

    def __init__(
        self,
        repository: TicketRepository,
        *,
        buffer_minutes: int = 5,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if buffer_minutes < 0:
            raise ValueError("buffer_minutes must not be negative")
        self._repository = repository
        self._buffer = timedelta(minutes=buffer_minutes)
        self._metrics = register_default_metrics(metrics)

    @property
    def buffer(self) -> timedelta:
        return self._buffer

    def plan(self, in_service: Ticket | None, waiting: Sequence[Ticket], now: datetime) -> list[Estimate]:
        return plan_estimates(in_service, waiting, now, buffer=self._buffer)

    async def recalculate(
        self,
        session: AsyncSession,
        provider_id: str,
        service_day: date,
        now: datetime,
    ) -> list[Ticket]:
        """Recalculate inside the caller's transaction and return the tickets that changed."""

        with tracer.start_as_current_span("queue.recalculate") as span, self._metrics.time_distribution(
            "queue_recalculation_duration_seconds"
        ):
            span.set_attribute("queue.provider_id", provider_id)
            span.set_attribute("queue.service_day", service_day.isoformat())

            in_service = await self._repository.find_in_service(session, provider_id, service_day=service_day)
            waiting = await self._repository.list_waiting(session, provider_id, service_day)
            if not waiting:
                logger.debug("No waiting tickets for provider %s on %s", provider_id, service_day)
                return []

            by_id = {ticket.id: ticket for ticket in waiting}
            changed: list[Ticket] = []
            for estimate in self.plan(in_service, waiting, now):
                current = by_id[estimate.ticket_id]
                if (
                    current.estimated_start == estimate.estimated_start
                    and current.estimated_end == estimate.estimated_end
                    and current.estimated_duration == estimate.estimated_duration
                ):
                    continue
                changed.append(
                    replace(
                        current,
                        estimated_start=estimate.estimated_start,
                        estimated_duration=estimate.estimated_duration,
                        estimated_end=estimate.estimated_end,
                        updated_at=now,
                    )
                )

            await self._repository.update_estimates(session, changed, at=now)
            span.set_attribute("queue.changed_tickets", len(changed))
            logger.debug(
                "Recalculated provider %s on %s: %d waiting, %d changed%s",
                provider_id,
                service_day,
                len(waiting),
                len(changed),
                "" if in_service is None else f", seeded by {in_service.queue_number}",
            )
            return changed
