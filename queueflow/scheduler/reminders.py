"""Time-window reminder sweep.

A sweep holds no state of its own. Overlapping sweeps are safe because every
send is preceded by a claim in the notification log.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from itertools import groupby
from typing import Iterable

from opentelemetry import trace

from queueflow.core.clock import Clock, service_day_for
from queueflow.metrics import MetricsRegistry, register_default_metrics
from queueflow.notifications.notifier import DispatchResult, Notifier
from queueflow.queue.models import NotificationKind, Ticket
from queueflow.queue.repository import TicketRepository
from queueflow.queue.state import TicketStateMachine, TicketStatus

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class SweepReport:
    """Per-kind dispatch outcomes of one sweep."""

    now: datetime
    outcomes: dict[NotificationKind, Counter[DispatchResult]] = field(default_factory=dict)

    def add(self, kind: NotificationKind, result: DispatchResult) -> None:
        self.outcomes.setdefault(kind, Counter())[result] += 1

    def count(self, kind: NotificationKind, result: DispatchResult | None = None) -> int:
        counter = self.outcomes.get(kind, Counter())
        if result is None:
            return sum(counter.values())
        return counter[result]

    @property
    def sent(self) -> int:
        return sum(counter[DispatchResult.SENT] for counter in self.outcomes.values())

    @property
    def failed(self) -> int:
        return sum(counter[DispatchResult.FAILED] for counter in self.outcomes.values())


def next_in_line(tickets: Iterable[Ticket]) -> list[Ticket]:
    """Pick, per provider, the waiting ticket that will be served after the current head.

    The head is the provider's ``IN_SERVICE`` ticket, or the lowest-position
    waiting ticket when nobody is in the chair.
    """

    selected: list[Ticket] = []
    ordered = sorted(tickets, key=lambda ticket: (ticket.provider_id, ticket.position))
    for _, group in groupby(ordered, key=lambda ticket: ticket.provider_id):
        queue = list(group)
        waiting = [ticket for ticket in queue if TicketStateMachine.is_waiting(ticket.status)]
        in_service = any(ticket.status is TicketStatus.IN_SERVICE for ticket in queue)
        index = 0 if in_service else 1
        if len(waiting) > index:
            selected.append(waiting[index])
    return selected


class ReminderScheduler:
    def __init__(
        self,
        repository: TicketRepository,
        notifier: Notifier,
        clock: Clock,
        *,
        timezone: tzinfo = timezone.utc,
        t30_lead_minutes: int = 30,
        t15_lead_minutes: int = 15,
        window_minutes: int = 1,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._repository = repository
        self._notifier = notifier
        self._clock = clock
        self._timezone = timezone
        self._leads = (
            (NotificationKind.T_MINUS_30, timedelta(minutes=t30_lead_minutes)),
            (NotificationKind.T_MINUS_15, timedelta(minutes=t15_lead_minutes)),
        )
        self._window = timedelta(minutes=window_minutes)
        self._metrics = register_default_metrics(metrics)

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        current = (now or self._clock.now()).astimezone(timezone.utc)
        report = SweepReport(now=current)
        with tracer.start_as_current_span("reminders.sweep"), self._metrics.time_distribution(
            "reminder_sweep_duration_seconds"
        ):
            for kind, lead in self._leads:
                target = current + lead
                due = await self._repository.find_waiting_starting_between(target - self._window, target)
                for ticket in due:
                    report.add(kind, await self._dispatch(ticket, kind))

            today = service_day_for(current, self._timezone)
            active = await self._repository.list_active_for_day(today)
            for ticket in next_in_line(active):
                if ticket.customer_phone:
                    result = await self._dispatch(ticket, NotificationKind.NEXT_IN_LINE)
                    report.add(NotificationKind.NEXT_IN_LINE, result)

        self._metrics.counter("reminder_sweeps_total").inc()
        if report.sent or report.failed:
            logger.info("Reminder sweep at %s: %d sent, %d failed", current.isoformat(), report.sent, report.failed)
        return report

    async def _dispatch(self, ticket: Ticket, kind: NotificationKind) -> DispatchResult:
        try:
            return await self._notifier.notify(ticket, kind)
        except Exception:
            logger.exception("Reminder %s for ticket %s could not be dispatched", kind.value, ticket.id)
            return DispatchResult.FAILED
