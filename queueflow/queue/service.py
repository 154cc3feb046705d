from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession

from queueflow.core.clock import Clock
from queueflow.metrics import MetricsRegistry, register_default_metrics

from .errors import (
    ConcurrentModificationError,
    CrossTenantAccessError,
    InvalidTransitionError,
    NotFoundError,
    ProviderBusyError,
    SlotTakenError,
)
from .estimation import EstimationEngine
from .events import EventSink, LoggingEventSink, TicketEvent, TicketEventType, publish_all
from .models import (
    ActorContext,
    CreateTicketCommand,
    NotificationKind,
    Provider,
    ProviderStatus,
    QueueView,
    Ticket,
    TicketHistoryEntry,
)
from .repository import HistoryLog, TicketRepository
from .state import ACTIVE_STATUSES, TicketStateMachine, TicketStatus

if TYPE_CHECKING:
    from queueflow.notifications.notifier import Notifier

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("queueflow.security")
tracer = trace.get_tracer(__name__)

_TRANSITION_MESSAGES: dict[TicketStatus, NotificationKind] = {
    TicketStatus.IN_SERVICE: NotificationKind.YOUR_TURN,
    TicketStatus.DONE: NotificationKind.POST_SERVICE,
}


@dataclass(slots=True)
class _CommandOutcome:
    """What a committed command hands to the post-commit dispatch step."""

    ticket: Ticket
    events: list[TicketEvent] = field(default_factory=list)
    messages: list[tuple[Ticket, NotificationKind]] = field(default_factory=list)


class QueueService:
    """Command handlers for queue tickets.

    Every command runs in one database transaction: validate, compare-and-swap
    the ticket and its provider, append history and recalculate the provider's
    day. Events and customer messages go out only after the commit.
    """

    def __init__(
        self,
        repository: TicketRepository,
        history: HistoryLog,
        estimator: EstimationEngine,
        clock: Clock,
        *,
        events: EventSink | None = None,
        notifier: Notifier | None = None,
        retry_attempts: int = 1,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if retry_attempts < 0:
            raise ValueError("retry_attempts must not be negative")
        self.repository = repository
        self.history = history
        self.estimator = estimator
        self._clock = clock
        self._events = events or LoggingEventSink()
        self._notifier = notifier
        self._retry_attempts = retry_attempts
        self._metrics = register_default_metrics(metrics)

    async def ensure_schema(self) -> None:
        await self.repository.ensure_schema()

    # commands

    async def create_ticket(self, command: CreateTicketCommand, actor: ActorContext) -> Ticket:
        self._authorize(actor, command.tenant_id, f"tenant {command.tenant_id}")
        if command.requested_time is not None:
            command = replace(command, requested_time=_normalize_time(command.requested_time))
        initial = TicketStateMachine.initial_status(command.channel, command.initial_status)

        async def run() -> _CommandOutcome:
            async with self.repository.transaction() as session:
                return await self._create(session, command, initial, actor)

        with tracer.start_as_current_span("queue.create_ticket") as span:
            span.set_attribute("queue.tenant_id", command.tenant_id)
            span.set_attribute("queue.provider_id", command.provider_id)
            outcome = await self._with_retry("create_ticket", run)
            span.set_attribute("queue.ticket_id", outcome.ticket.id)

        self._count("queue_tickets_created_total", channel=command.channel.value)
        logger.info(
            "Created ticket %s (%s) for provider %s via %s",
            outcome.ticket.id,
            outcome.ticket.queue_number,
            command.provider_id,
            command.channel.value,
        )
        await self._dispatch(outcome)
        return outcome.ticket

    async def transition(
        self,
        ticket_id: str,
        target: TicketStatus,
        actor: ActorContext,
        note: str | None = None,
        *,
        reason: str | None = None,
    ) -> Ticket:
        """Move a ticket along the lifecycle graph."""

        async def run() -> _CommandOutcome:
            async with self.repository.transaction() as session:
                return await self._transition(session, ticket_id, target, actor, note, reason)

        with tracer.start_as_current_span("queue.transition") as span:
            span.set_attribute("queue.ticket_id", ticket_id)
            span.set_attribute("queue.target_status", target.value)
            outcome = await self._with_retry("transition", run)

        self._count("queue_transitions_total", status=target.value)
        logger.info(
            "Ticket %s (%s) moved to %s by %s",
            outcome.ticket.id,
            outcome.ticket.queue_number,
            target.value,
            actor.reference,
        )
        await self._dispatch(outcome)
        return outcome.ticket

    async def check_in(self, ticket_id: str, actor: ActorContext, note: str | None = None) -> Ticket:
        return await self.transition(ticket_id, TicketStatus.CHECKED_IN, actor, note or "Customer checked in")

    async def start_service(self, ticket_id: str, actor: ActorContext, note: str | None = None) -> Ticket:
        return await self.transition(ticket_id, TicketStatus.IN_SERVICE, actor, note or "Service started")

    async def complete_service(self, ticket_id: str, actor: ActorContext, note: str | None = None) -> Ticket:
        return await self.transition(ticket_id, TicketStatus.DONE, actor, note or "Service completed")

    async def mark_no_show(
        self,
        ticket_id: str,
        actor: ActorContext,
        reason: str | None = None,
        note: str | None = None,
    ) -> Ticket:
        return await self.transition(
            ticket_id,
            TicketStatus.NO_SHOW,
            actor,
            note or reason or "Customer no show",
            reason=reason,
        )

    async def cancel_ticket(self, ticket_id: str, actor: ActorContext, reason: str | None = None) -> Ticket:
        return await self.transition(ticket_id, TicketStatus.CANCELED, actor, reason, reason=reason)

    # queries

    async def get_ticket(self, ticket_id: str, actor: ActorContext) -> Ticket:
        async with self.repository.read_session() as session:
            ticket = await self._load_ticket(session, ticket_id)
        self._authorize(actor, ticket.tenant_id, f"ticket {ticket_id}")
        return ticket

    async def get_history(self, ticket_id: str, actor: ActorContext) -> list[TicketHistoryEntry]:
        await self.get_ticket(ticket_id, actor)
        return await self.history.list_for_ticket(ticket_id)

    async def get_provider_queue_snapshot(
        self, provider_id: str, service_day: date, actor: ActorContext
    ) -> list[Ticket]:
        async with self.repository.read_session() as session:
            provider = await self.repository.get_provider(session, provider_id)
            if provider is None:
                raise NotFoundError(f"Provider {provider_id} not found")
            self._authorize(actor, provider.tenant_id, f"provider {provider_id}")
            return await self.repository.list_provider_day(session, provider_id, service_day)

    async def get_customer_queue_view(self, ticket_id: str, actor: ActorContext) -> QueueView:
        async with self.repository.read_session() as session:
            ticket = await self._load_ticket(session, ticket_id)
            self._authorize(actor, ticket.tenant_id, f"ticket {ticket_id}")
            day = await self.repository.list_provider_day(session, ticket.provider_id, ticket.service_day)

        if not TicketStateMachine.is_active(ticket.status):
            return QueueView(ticket=ticket)
        ahead = [
            other
            for other in day
            if other.id != ticket.id and other.position < ticket.position and other.status in ACTIVE_STATUSES
        ]
        remaining = 0
        if ticket.estimated_start is not None:
            delta = ticket.estimated_start - self._now()
            remaining = max(0, _round_minutes(delta.total_seconds()))
        return QueueView(ticket=ticket, tickets_ahead=ahead, remaining_minutes=remaining)

    # command bodies, each runs inside one transaction

    async def _create(
        self,
        session: AsyncSession,
        command: CreateTicketCommand,
        initial: TicketStatus,
        actor: ActorContext,
    ) -> _CommandOutcome:
        now = self._now()
        provider = await self.repository.get_provider(session, command.provider_id)
        if provider is None or provider.tenant_id != command.tenant_id:
            raise NotFoundError(f"Provider {command.provider_id} not found")
        service = await self.repository.get_service(session, command.service_id)
        if service is None or service.tenant_id != command.tenant_id:
            raise NotFoundError(f"Service {command.service_id} not found")

        await self.repository.claim_provider(session, provider, at=now)
        if command.requested_time is not None:
            taken = await self.repository.find_active_at(
                session, provider.id, command.service_day, command.requested_time
            )
            if taken is not None:
                self._reject("slot_taken")
                raise SlotTakenError(
                    f"Provider {provider.name} already has {taken.queue_number} at {command.requested_time}"
                )
        position = await self.repository.next_position(session, provider.id, command.service_day)
        daily_count = await self.repository.count_tenant_tickets(session, command.tenant_id, command.service_day)

        ticket = Ticket(
            id=str(uuid.uuid4()),
            tenant_id=command.tenant_id,
            provider_id=provider.id,
            service_id=service.id,
            customer_id=command.customer_id,
            customer_name=command.customer_name,
            customer_phone=command.customer_phone,
            queue_number=f"A{daily_count + 1:03d}",
            position=position,
            channel=command.channel,
            status=initial,
            service_day=command.service_day,
            requested_time=command.requested_time,
            estimated_start=None,
            estimated_duration=service.duration_minutes,
            estimated_end=None,
            actual_start=None,
            actual_end=None,
            actual_duration=None,
            cancellation_reason=None,
            cancelled_by=None,
            status_changed_at=now,
            created_at=now,
            updated_at=now,
        )
        await self.repository.insert_ticket(session, ticket)
        await self.history.append(
            session,
            ticket_id=ticket.id,
            status=initial,
            actor=actor.reference,
            note=f"Queue created via {command.channel.value}",
            at=now,
        )
        changed = await self.estimator.recalculate(session, provider.id, command.service_day, now)
        ticket = next((item for item in changed if item.id == ticket.id), ticket)

        events = [TicketEvent(TicketEventType.CREATED, ticket, now, metadata={"actor": actor.reference})]
        events.extend(TicketEvent(TicketEventType.UPDATED, item, now) for item in changed)
        return _CommandOutcome(ticket, events, [(ticket, NotificationKind.BOOKING_CONFIRMATION)])

    async def _transition(
        self,
        session: AsyncSession,
        ticket_id: str,
        target: TicketStatus,
        actor: ActorContext,
        note: str | None,
        reason: str | None,
    ) -> _CommandOutcome:
        now = self._now()
        ticket = await self._load_ticket(session, ticket_id)
        self._authorize(actor, ticket.tenant_id, f"ticket {ticket_id}")
        try:
            TicketStateMachine.assert_transition(ticket.status, target)
        except InvalidTransitionError:
            self._reject("invalid_transition")
            raise

        provider = await self.repository.get_provider(session, ticket.provider_id)
        if provider is None:
            raise NotFoundError(f"Provider {ticket.provider_id} not found")

        changes: dict[str, Any] = {}
        provider_status: ProviderStatus | None = None
        served = 0
        if target is TicketStatus.IN_SERVICE:
            busy = await self.repository.find_in_service(session, provider.id, exclude_id=ticket.id)
            if busy is not None:
                self._reject("provider_busy")
                raise ProviderBusyError(
                    f"Provider {provider.name} is still serving {busy.queue_number}; complete it first"
                )
            changes["actual_start"] = now
            provider_status = ProviderStatus.BUSY
        elif target is TicketStatus.DONE:
            started = ticket.actual_start or now
            changes["actual_end"] = now
            changes["actual_duration"] = max(1, _round_minutes((now - started).total_seconds()))
            provider_status = ProviderStatus.AVAILABLE
            served = 1
        elif target in (TicketStatus.CANCELED, TicketStatus.NO_SHOW):
            changes["cancellation_reason"] = reason
            changes["cancelled_by"] = actor.reference
            provider_status = await self._release_status(session, provider, ticket)

        await self.repository.claim_provider(
            session, provider, status=provider_status, served_increment=served, at=now
        )
        updated = await self.repository.compare_and_swap_status(session, ticket, target, at=now, changes=changes)
        await self.history.append(
            session,
            ticket_id=ticket.id,
            status=target,
            actor=actor.reference,
            note=note,
            at=now,
        )
        changed = await self.estimator.recalculate(session, ticket.provider_id, ticket.service_day, now)

        event_type = TicketEventType.CANCELLED if target is TicketStatus.CANCELED else TicketEventType.STATUS_CHANGED
        events = [
            TicketEvent(event_type, updated, now, from_status=ticket.status, metadata={"actor": actor.reference})
        ]
        events.extend(TicketEvent(TicketEventType.UPDATED, item, now) for item in changed)
        messages = [(updated, _TRANSITION_MESSAGES[target])] if target in _TRANSITION_MESSAGES else []
        return _CommandOutcome(updated, events, messages)

    async def _release_status(
        self, session: AsyncSession, provider: Provider, ticket: Ticket
    ) -> ProviderStatus | None:
        if provider.status is not ProviderStatus.BUSY:
            return None
        remaining = await self.repository.find_in_service(session, provider.id, exclude_id=ticket.id)
        return ProviderStatus.AVAILABLE if remaining is None else None

    # helpers

    async def _with_retry(self, name: str, operation: Callable[[], Awaitable[_CommandOutcome]]) -> _CommandOutcome:
        attempt = 0
        while True:
            try:
                return await operation()
            except ConcurrentModificationError as exc:
                if attempt >= self._retry_attempts:
                    self._reject("conflict")
                    raise
                attempt += 1
                logger.info("Retrying %s after concurrent modification (%s)", name, exc)

    async def _dispatch(self, outcome: _CommandOutcome) -> None:
        await publish_all(self._events, outcome.events)
        if self._notifier is None:
            return
        for ticket, kind in outcome.messages:
            try:
                await self._notifier.notify(ticket, kind)
            except Exception:
                logger.exception("Failed to send %s for ticket %s", kind.value, ticket.id)

    async def _load_ticket(self, session: AsyncSession, ticket_id: str) -> Ticket:
        ticket = await self.repository.get_ticket(session, ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    def _authorize(self, actor: ActorContext, tenant_id: str, resource: str) -> None:
        if actor.tenant_id == tenant_id:
            return
        security_logger.warning(
            "Cross-tenant access denied: actor=%s role=%s tenant=%s resource=%s owner=%s",
            actor.reference,
            actor.role.value,
            actor.tenant_id,
            resource,
            tenant_id,
        )
        self._reject("cross_tenant")
        raise CrossTenantAccessError(actor.tenant_id, tenant_id, resource)

    def _reject(self, reason: str) -> None:
        self._count("queue_transition_rejections_total", reason=reason)

    def _count(self, name: str, **labels: str) -> None:
        try:
            self._metrics.counter(name).inc(labels=labels)
        except (TypeError, ValueError):
            logger.exception("Failed to record metric %s", name)

    def _now(self) -> datetime:
        return self._clock.now().astimezone(timezone.utc)


def _round_minutes(seconds: float) -> int:
    """Whole minutes, halves rounded up (150s -> 3)."""

    return math.floor(seconds / 60 + 0.5)


def _normalize_time(value: str) -> str:
    try:
        return datetime.strptime(value.strip(), "%H:%M").strftime("%H:%M")
    except ValueError as exc:
        raise ValueError(f"requested_time must be HH:MM, got {value!r}") from exc
