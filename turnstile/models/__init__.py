from turnstile.models.user import User, UserRole
from turnstile.models.event import Event
from turnstile.models.order import OrderStatus, PaymentOrder
from turnstile.models.ticket import Ticket, TicketStatus
from turnstile.models.refund import (
    Refund, RefundStatus, RefundStatusEntry, RefundWebhookEvent
)

__all__ = [
    "User", "UserRole", "Event", "OrderStatus", "PaymentOrder", "Ticket", "TicketStatus",
    "Refund", "RefundStatus", "RefundStatusEntry", "RefundWebhookEvent"
]
