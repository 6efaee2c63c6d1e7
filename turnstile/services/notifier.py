"""
Fire-and-forget notifications.

Callers in the core wrap every call in try/except; nothing a notifier does may
fail a purchase, a refund or a webhook.
"""
import logging
from abc import ABC, abstractmethod

from fastapi import BackgroundTasks

from turnstile.models.event import Event
from turnstile.models.refund import Refund, RefundStatus
from turnstile.models.ticket import Ticket
from turnstile.models.user import User
from turnstile.services.email import EmailService

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    def send_ticket_purchased(self, user: User, tickets: list[Ticket], event: Event) -> None: ...

    @abstractmethod
    def send_refund_status_changed(self, user: User, ticket: Ticket, refund: Refund) -> None: ...


class NullNotifier(Notifier):
    def send_ticket_purchased(self, user: User, tickets: list[Ticket], event: Event) -> None:
        pass

    def send_refund_status_changed(self, user: User, ticket: Ticket, refund: Refund) -> None:
        pass


class BackgroundNotifier(Notifier):
    """Queues emails on the request's BackgroundTasks; they run after the response."""

    def __init__(self, background_tasks: BackgroundTasks):
        self.background_tasks = background_tasks

    def send_ticket_purchased(self, user: User, tickets: list[Ticket], event: Event) -> None:
        self.background_tasks.add_task(
            EmailService.send_ticket_purchased,
            user.email,
            user.name,
            event.name,
            [ticket.code for ticket in tickets],
            sum(ticket.price for ticket in tickets)
        )

    def send_refund_status_changed(self, user: User, ticket: Ticket, refund: Refund) -> None:
        if refund.status == RefundStatus.PROCESSING:
            self.background_tasks.add_task(
                EmailService.send_refund_initiated,
                user.email, user.name, refund.reference, refund.refund_amount
            )
        elif refund.status == RefundStatus.PROCESSED:
            self.background_tasks.add_task(
                EmailService.send_refund_completed,
                user.email, user.name, refund.reference, refund.refund_amount
            )
        elif refund.status == RefundStatus.FAILED:
            self.background_tasks.add_task(
                EmailService.send_refund_failed,
                user.email, user.name, refund.reference, refund.failure_reason or "Refund failed"
            )
        else:
            logger.debug(f"No email for refund {refund.reference} in status {refund.status.value}")
