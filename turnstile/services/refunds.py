"""
Refund orchestration.

A refund moves pending -> processing -> processed | failed, or to cancelled by
an administrator. Two writers drive it: the user's request (initiate) and the
gateway's webhooks (handle_webhook), which may arrive late, early or more
than once. Every status write is a conditional UPDATE on the expected prior
status and appends exactly one history row in the same transaction.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from turnstile.config import get_settings
from turnstile.helpers import to_minor_units, utcnow
from turnstile.models.refund import (
    TERMINAL_REFUND_STATUSES, Refund, RefundStatus, RefundStatusEntry, RefundWebhookEvent
)
from turnstile.models.ticket import Ticket, TicketStatus
from turnstile.models.user import User, UserRole
from turnstile.services.errors import (
    DuplicateRefund, GatewayRejected, GatewayTimeout, PermissionDenied,
    RefundIneligible, RefundNotFound, TicketCancelled, TicketNotFound
)
from turnstile.services.gateway import PaymentGateway, WebhookEvent
from turnstile.services.notifier import Notifier, NullNotifier

settings = get_settings()
logger = logging.getLogger(__name__)

GATEWAY_TIMEOUT_REASON = GatewayTimeout().message
INTERRUPTED_REASON = "initiation interrupted"
# Failures where the gateway's answer was never seen; a later webhook decides them
AMBIGUOUS_FAILURE_REASONS = (GATEWAY_TIMEOUT_REASON, INTERRUPTED_REASON)
REFUND_VIEWER_ROLES = (UserRole.MANAGER, UserRole.ADMIN)


class RefundOrchestrator:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        notifier: Optional[Notifier] = None,
        processing_fee: Optional[float] = None,
        minimum_refund_amount: Optional[float] = None,
        refund_cutoff_days: Optional[int] = None
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or NullNotifier()
        self.processing_fee = (
            settings.processing_fee if processing_fee is None else processing_fee
        )
        self.minimum_refund_amount = (
            settings.minimum_refund_amount if minimum_refund_amount is None
            else minimum_refund_amount
        )
        self.refund_cutoff_days = (
            settings.refund_cutoff_days if refund_cutoff_days is None else refund_cutoff_days
        )

    def refund_amount_for(self, original_amount: float) -> float:
        return max(self.minimum_refund_amount, original_amount - self.processing_fee)

    # Path A

    def initiate(
        self,
        ticket_id: int,
        user_id: int,
        reason: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Refund:
        """
        Cancel a ticket for money back.

        The refund row is committed as pending before the gateway is called.
        A gateway rejection or timeout does not raise: the refund is returned
        in failed status with the reason recorded, and the ticket stays active.
        """
        ticket = self.db.get(Ticket, ticket_id)
        if ticket is None:
            raise TicketNotFound("Ticket not found")
        if ticket.user_id != user_id:
            raise PermissionDenied("You can only cancel your own tickets")
        if self.db.query(Refund.id).filter(Refund.ticket_id == ticket_id).first() is not None:
            raise DuplicateRefund()
        self._check_eligible(ticket)

        now = utcnow()
        refund = Refund(
            ticket_id=ticket.id,
            user_id=user_id,
            charge_ref=ticket.charge_ref,
            order_ref=ticket.order_ref,
            original_amount=ticket.price,
            processing_fee=self.processing_fee,
            refund_amount=self.refund_amount_for(ticket.price),
            status=RefundStatus.PENDING,
            reason=reason,
            requested_by="user",
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=now,
            updated_at=now
        )
        self.db.add(refund)
        try:
            self.db.flush()
            self._record(refund.id, RefundStatus.PENDING, "Refund requested")
            self.db.commit()
        except IntegrityError:
            # The unique ticket_id decides concurrent requests that both passed the pre-check
            self.db.rollback()
            logger.warning(f"Duplicate refund request for ticket {ticket_id} rejected by storage")
            raise DuplicateRefund()

        logger.info(f"Refund {refund.reference} created for ticket {ticket_id}")

        try:
            result = self.gateway.initiate_refund(
                refund.charge_ref,
                to_minor_units(refund.refund_amount),
                {
                    "refund_reference": refund.reference,
                    "ticket_code": ticket.code,
                    "reason": reason
                }
            )
        except (GatewayRejected, GatewayTimeout) as e:
            self._transition(
                refund.id,
                RefundStatus.FAILED,
                Refund.status == RefundStatus.PENDING,
                note=f"Gateway refused: {e.message}",
                failure_reason=e.message
            )
            self.db.commit()
            self.db.refresh(refund)
            logger.warning(f"Refund {refund.reference} failed at initiation: {e.message}")
            self._notify(refund)
            return refund

        moved = self._transition(
            refund.id,
            RefundStatus.PROCESSING,
            or_(
                Refund.status == RefundStatus.PENDING,
                # Swept as interrupted while the gateway was still answering
                and_(
                    Refund.status == RefundStatus.FAILED,
                    Refund.failure_reason.in_(AMBIGUOUS_FAILURE_REASONS)
                )
            ),
            note=f"Gateway refund {result.id} created",
            gateway_refund_id=result.id
        )
        if not moved:
            # A webhook matched by reference got here first; keep its status
            self.db.query(Refund).filter(
                Refund.id == refund.id,
                Refund.gateway_refund_id.is_(None)
            ).update({Refund.gateway_refund_id: result.id}, synchronize_session=False)
        self.db.commit()
        self.db.refresh(refund)

        if refund.status in (RefundStatus.PROCESSING, RefundStatus.PROCESSED):
            self._cancel_ticket(refund.ticket_id, reason)

        logger.info(f"Refund {refund.reference} is {refund.status.value} (gateway id {result.id})")
        self._notify(refund)
        return refund

    def _check_eligible(self, ticket: Ticket) -> None:
        if ticket.status == TicketStatus.USED:
            raise RefundIneligible("Cannot cancel a ticket that has already been used")
        if ticket.status == TicketStatus.CANCELLED:
            raise TicketCancelled("Ticket is already cancelled")
        if not ticket.charge_ref:
            raise RefundIneligible("This ticket was not paid online and cannot be refunded")

        if self.refund_cutoff_days > 0 and ticket.event is not None:
            days_left = (ticket.event.date - utcnow().date()).days
            if days_left < self.refund_cutoff_days:
                raise RefundIneligible(
                    f"Refunds close {self.refund_cutoff_days} days before the event"
                )

    # Path B

    def handle_webhook(self, event: WebhookEvent) -> Optional[Refund]:
        """
        Apply a verified gateway event. Returns the matched refund, or None when
        the event does not belong to a refund this system knows.

        Never raises for unmatched, duplicate or informational events.
        """
        refund = self._match(event)
        if refund is None:
            logger.warning(
                f"Dropping unmatched webhook {event.event_type} {event.event_id} "
                f"(gateway refund {event.gateway_refund_id})"
            )
            return None

        self.db.add(RefundWebhookEvent(
            refund_id=refund.id,
            event_type=event.event_type,
            gateway_event_id=event.event_id,
            payload=event.payload,
            received_at=utcnow()
        ))
        try:
            self.db.flush()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"Duplicate webhook {event.event_id} for refund {refund.reference} ignored")
            return refund

        target = event.target_status
        moved = False
        if target == RefundStatus.PROCESSED:
            moved = self._transition(
                refund.id,
                RefundStatus.PROCESSED,
                or_(
                    Refund.status.in_([RefundStatus.PENDING, RefundStatus.PROCESSING]),
                    # An ambiguous failure is overruled by the gateway's own word
                    and_(
                        Refund.status == RefundStatus.FAILED,
                        Refund.failure_reason.in_(AMBIGUOUS_FAILURE_REASONS)
                    )
                ),
                note=f"Gateway reported {event.event_type}",
                gateway_refund_id=event.gateway_refund_id
            )
        elif target == RefundStatus.FAILED:
            moved = self._transition(
                refund.id,
                RefundStatus.FAILED,
                Refund.status.in_([RefundStatus.PENDING, RefundStatus.PROCESSING]),
                note=f"Gateway reported {event.event_type}",
                failure_reason=event.error_description or "Refund failed at gateway",
                gateway_refund_id=event.gateway_refund_id
            )
        self.db.commit()
        self.db.refresh(refund)

        if target is None:
            logger.info(f"Webhook {event.event_type} logged for refund {refund.reference}")
            return refund
        if not moved:
            logger.info(
                f"Webhook {event.event_type} left refund {refund.reference} "
                f"in {refund.status.value}"
            )
            return refund

        logger.info(f"Refund {refund.reference} moved to {refund.status.value} by webhook")
        if refund.status == RefundStatus.PROCESSED:
            self._cancel_ticket(refund.ticket_id, refund.reason)
        self._notify(refund)
        return refund

    def _match(self, event: WebhookEvent) -> Optional[Refund]:
        refund = None
        if event.gateway_refund_id:
            refund = self.db.query(Refund).filter(
                Refund.gateway_refund_id == event.gateway_refund_id
            ).first()
        if refund is None and event.local_refund_reference:
            refund = self.db.query(Refund).filter(
                Refund.reference == event.local_refund_reference
            ).first()
        return refund

    # Administration

    def cancel(self, reference: str, note: Optional[str] = None) -> Refund:
        refund = self.get_by_reference(reference)
        moved = self._transition(
            refund.id,
            RefundStatus.CANCELLED,
            Refund.status.notin_(TERMINAL_REFUND_STATUSES),
            note=note or "Cancelled by administrator"
        )
        self.db.commit()
        self.db.refresh(refund)
        if not moved:
            raise RefundIneligible(f"Refund is already {refund.status.value}")

        logger.info(f"Refund {refund.reference} cancelled by administrator")
        return refund

    def sweep_stale_pending(self, older_than_minutes: Optional[int] = None) -> int:
        """
        Fail refunds left pending by a crash between the local insert and the
        gateway call. The gateway is never contacted here; its answer may
        still arrive, so a processed webhook overrules these failures.
        """
        minutes = settings.stale_refund_minutes if older_than_minutes is None else older_than_minutes
        cutoff = utcnow() - timedelta(minutes=minutes)
        stale_ids = [
            refund_id for (refund_id,) in self.db.query(Refund.id).filter(
                Refund.status == RefundStatus.PENDING,
                Refund.created_at < cutoff
            )
        ]

        swept = 0
        for refund_id in stale_ids:
            moved = self._transition(
                refund_id,
                RefundStatus.FAILED,
                Refund.status == RefundStatus.PENDING,
                note=INTERRUPTED_REASON,
                failure_reason=INTERRUPTED_REASON
            )
            self.db.commit()
            if moved:
                swept += 1
                self._notify(self.db.get(Refund, refund_id))

        if swept:
            logger.warning(f"Swept {swept} stale pending refund(s)")
        return swept

    # Queries

    def get_by_reference(self, reference: str) -> Refund:
        refund = self.db.query(Refund).filter(Refund.reference == reference).first()
        if refund is None:
            raise RefundNotFound()
        return refund

    def get_for_user(self, reference: str, user: User) -> Refund:
        refund = self.get_by_reference(reference)
        if refund.user_id != user.id and user.role not in REFUND_VIEWER_ROLES:
            raise RefundNotFound()
        return refund

    def list_for_user(self, user_id: int) -> list[Refund]:
        return self.db.query(Refund).filter(
            Refund.user_id == user_id
        ).order_by(Refund.created_at.desc(), Refund.id.desc()).all()

    # Internals

    def _transition(
        self,
        refund_id: int,
        target: RefundStatus,
        expected,
        note: str,
        failure_reason: Optional[str] = None,
        gateway_refund_id: Optional[str] = None
    ) -> bool:
        """
        Move the refund to `target` if `expected` holds, and log it.
        Leaves the transaction open for the caller to commit.
        """
        now = utcnow()
        values = {Refund.status: target, Refund.updated_at: now}
        if target in (RefundStatus.PROCESSING, RefundStatus.PROCESSED):
            values[Refund.failure_reason] = None
        if target == RefundStatus.PROCESSED:
            values[Refund.processed_at] = func.coalesce(Refund.processed_at, now)
        if failure_reason is not None:
            values[Refund.failure_reason] = failure_reason
        if gateway_refund_id:
            values[Refund.gateway_refund_id] = func.coalesce(
                Refund.gateway_refund_id, gateway_refund_id
            )

        updated = self.db.query(Refund).filter(
            Refund.id == refund_id,
            expected
        ).update(values, synchronize_session=False)
        if updated == 0:
            return False

        self._record(refund_id, target, note)
        return True

    def _record(self, refund_id: int, status: RefundStatus, note: str) -> None:
        self.db.add(RefundStatusEntry(
            refund_id=refund_id,
            status=status,
            note=note[:500],
            created_at=utcnow()
        ))
        self.db.flush()

    def _cancel_ticket(self, ticket_id: int, reason: Optional[str]) -> None:
        now = utcnow()
        updated = self.db.query(Ticket).filter(
            Ticket.id == ticket_id,
            Ticket.status == TicketStatus.ACTIVE
        ).update(
            {
                Ticket.status: TicketStatus.CANCELLED,
                Ticket.cancelled_at: now,
                Ticket.cancellation_reason: (reason or "Refunded")[:500]
            },
            synchronize_session=False
        )
        self.db.commit()

        if updated:
            logger.info(f"Ticket {ticket_id} cancelled for refund")
            return
        status = self.db.query(Ticket.status).filter(Ticket.id == ticket_id).scalar()
        if status != TicketStatus.CANCELLED:
            logger.warning(f"Ticket {ticket_id} is {status.value if status else 'missing'}, left as is after refund")

    def _notify(self, refund: Refund) -> None:
        try:
            self.notifier.send_refund_status_changed(refund.user, refund.ticket, refund)
        except Exception:
            logger.exception(f"Failed to send refund notification for {refund.reference}")
