"""Database models and utilities."""

from .models import (
    NotificationTable,
    ProviderTable,
    QueueTicketTable,
    ServiceTable,
    TenantTable,
    TicketHistoryTable,
)

__all__ = [
    "NotificationTable",
    "ProviderTable",
    "QueueTicketTable",
    "ServiceTable",
    "TenantTable",
    "TicketHistoryTable",
]
