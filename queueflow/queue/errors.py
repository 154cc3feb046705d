"""Error taxonomy for queue commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import TicketStatus


class QueueError(RuntimeError):
    """Base error for queue engine issues."""


class InvalidTransitionError(QueueError):
    """Raised when a status change is not part of the ticket lifecycle graph."""

    def __init__(
        self,
        current: "TicketStatus | None",
        target: "TicketStatus",
        *,
        message: str | None = None,
    ) -> None:
        self.current = current
        self.target = target
        if message is None:
            source = current.value if current is not None else "<none>"
            message = f"Invalid ticket status transition: {source} -> {target.value}"
        super().__init__(message)


class NotFoundError(QueueError):
    """Raised when a ticket, provider or service could not be located."""


class CrossTenantAccessError(QueueError):
    """Raised when an actor touches data owned by another tenant."""

    def __init__(self, actor_tenant_id: str, resource_tenant_id: str, resource: str) -> None:
        self.actor_tenant_id = actor_tenant_id
        self.resource_tenant_id = resource_tenant_id
        self.resource = resource
        super().__init__(f"Tenant {actor_tenant_id} may not access {resource}")


class ConcurrentModificationError(QueueError):
    """Raised when an optimistic concurrency check fails; the command may be retried once."""


class ProviderBusyError(QueueError):
    """Raised when a provider already has a ticket in service."""


class DeliveryFailure(QueueError):
    """Raised by message senders when the outbound gateway rejects a message."""


class SlotTakenError(QueueError):
    """Raised when a provider already has an active ticket at the requested time."""
