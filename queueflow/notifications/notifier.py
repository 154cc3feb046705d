"""Claim, render, send and record a single customer notification.

Both the reminder sweep and the transition-triggered messages go through
:class:`Notifier`, so every (ticket, kind) pair is delivered at most once.

Retry policy: only a ``SENT`` record suppresses a kind for good. A ``FAILED``
record leaves the pair open for the next attempt until
``max_delivery_attempts`` failures have been recorded.
"""

from __future__ import annotations

import logging
from datetime import tzinfo
from enum import Enum

from queueflow.core.clock import Clock
from queueflow.metrics import MetricsRegistry, register_default_metrics
from queueflow.queue.errors import DeliveryFailure
from queueflow.queue.models import DeliveryOutcome, NotificationKind, Ticket
from queueflow.queue.repository import NotificationLog, TicketRepository

from .sender import MessageSender
from .templates import MessageContext, render

logger = logging.getLogger(__name__)


class DispatchResult(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    NO_RECIPIENT = "no_recipient"
    ALREADY_SENT = "already_sent"
    CLAIMED_ELSEWHERE = "claimed_elsewhere"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


class Notifier:
    def __init__(
        self,
        repository: TicketRepository,
        log: NotificationLog,
        sender: MessageSender,
        clock: Clock,
        *,
        timezone: tzinfo,
        frontend_url: str,
        max_delivery_attempts: int = 3,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if max_delivery_attempts < 1:
            raise ValueError("max_delivery_attempts must be at least 1")
        self._repository = repository
        self._log = log
        self._sender = sender
        self._clock = clock
        self._timezone = timezone
        self._frontend_url = frontend_url
        self._max_attempts = max_delivery_attempts
        self._metrics = register_default_metrics(metrics)

    async def notify(self, ticket: Ticket, kind: NotificationKind) -> DispatchResult:
        if not ticket.customer_phone:
            return DispatchResult.NO_RECIPIENT
        if await self._log.has_sent(ticket.id, kind):
            return DispatchResult.ALREADY_SENT
        if await self._log.failed_attempts(ticket.id, kind) >= self._max_attempts:
            logger.debug("Giving up on %s for ticket %s after %d failures", kind.value, ticket.id, self._max_attempts)
            return DispatchResult.ATTEMPTS_EXHAUSTED

        message = render(kind, await self._build_context(ticket))
        claim_id = await self._log.claim(
            ticket_id=ticket.id,
            kind=kind,
            recipient=ticket.customer_phone,
            message=message,
            at=self._clock.now(),
        )
        if claim_id is None:
            return DispatchResult.CLAIMED_ELSEWHERE

        outcome, error = await self._deliver(ticket, kind, message)
        await self._log.record(claim_id, outcome, error_message=error, at=self._clock.now())

        if outcome is DeliveryOutcome.SENT:
            self._metrics.counter("reminders_sent_total").inc(labels={"kind": kind.value})
            return DispatchResult.SENT
        self._metrics.counter("reminders_failed_total").inc(labels={"kind": kind.value})
        return DispatchResult.FAILED

    async def _deliver(
        self, ticket: Ticket, kind: NotificationKind, message: str
    ) -> tuple[DeliveryOutcome, str | None]:
        recipient = ticket.customer_phone or ""
        try:
            result = await self._sender.send(recipient, message)
        except DeliveryFailure as exc:
            logger.warning("Delivery of %s for ticket %s failed: %s", kind.value, ticket.id, exc)
            return DeliveryOutcome.FAILED, str(exc)
        except Exception as exc:
            logger.exception("Unexpected sender error for %s on ticket %s", kind.value, ticket.id)
            return DeliveryOutcome.FAILED, str(exc) or exc.__class__.__name__

        if not result.delivered:
            logger.info("Message %s for ticket %s not delivered: %s", kind.value, ticket.id, result.detail)
            return DeliveryOutcome.FAILED, result.detail
        logger.info("Sent %s to ticket %s (%s)", kind.value, ticket.id, ticket.queue_number)
        return DeliveryOutcome.SENT, None

    async def _build_context(self, ticket: Ticket) -> MessageContext:
        async with self._repository.read_session() as session:
            tenant = await self._repository.get_tenant(session, ticket.tenant_id)
            provider = await self._repository.get_provider(session, ticket.provider_id)
            service = await self._repository.get_service(session, ticket.service_id)
        return MessageContext(
            ticket=ticket,
            shop_name=tenant.name if tenant else "Barbershop",
            shop_address=tenant.address if tenant else None,
            provider_name=provider.name if provider else "your barber",
            service_name=service.name if service else "Service",
            service_price=service.price if service else 0,
            frontend_url=self._frontend_url,
            timezone=self._timezone,
        )
