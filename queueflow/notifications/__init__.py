"""Customer messaging: templates, gateways and the at-most-once notifier."""

from .notifier import DispatchResult, Notifier
from .sender import DeliveryResult, DisabledSender, MessageSender, WhatsAppSender
from .templates import MessageContext, render

__all__ = [
    "DeliveryResult",
    "DisabledSender",
    "DispatchResult",
    "MessageContext",
    "MessageSender",
    "Notifier",
    "WhatsAppSender",
    "render",
]
