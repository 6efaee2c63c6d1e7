"""
Checkout and payment-backed purchase.

A purchase is two calls. checkout() records a PaymentOrder and opens a charge
at the gateway; the buyer pays on the client side. complete() reads the charge
back from the gateway and issues tickets only when it has succeeded for the
order's exact amount. The charge reference on a ticket therefore always comes
from the gateway, never from the client.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from turnstile.config import get_settings
from turnstile.helpers import to_minor_units, utcnow
from turnstile.models.order import OrderStatus, PaymentOrder
from turnstile.models.ticket import Ticket
from turnstile.services.errors import (
    GatewayRejected, GatewayTimeout, InsufficientInventory, OrderNotFound, PaymentNotVerified
)
from turnstile.services.events import EventService
from turnstile.services.gateway import GatewayPayment, PaymentGateway
from turnstile.services.issuance import IssuanceManager
from turnstile.services.notifier import Notifier, NullNotifier

settings = get_settings()
logger = logging.getLogger(__name__)


class OrderService:
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        notifier: Optional[Notifier] = None,
        currency: Optional[str] = None
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or NullNotifier()
        self.currency = (currency or settings.currency).lower()

    def checkout(
        self,
        user_id: int,
        quantity: int,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> tuple[PaymentOrder, GatewayPayment]:
        """
        Price the order and open a gateway charge for it. Inventory is only
        checked here; it is reserved when the paid order is completed.
        """
        event = EventService(self.db).current()
        if event.remaining < quantity:
            raise InsufficientInventory(quantity, event.remaining)

        order = PaymentOrder(
            user_id=user_id,
            event_id=event.id,
            quantity=quantity,
            unit_price=event.price_for(quantity),
            total_amount=event.total_for(quantity),
            status=OrderStatus.INITIATED,
            ip_address=ip_address,
            user_agent=user_agent
        )
        self.db.add(order)
        self.db.commit()
        self.db.refresh(order)

        try:
            payment = self.gateway.create_payment(
                to_minor_units(order.total_amount),
                {
                    "order_reference": order.reference,
                    "user_id": user_id,
                    "quantity": quantity
                }
            )
        except (GatewayRejected, GatewayTimeout) as e:
            order.status = OrderStatus.FAILED
            order.failure_reason = e.message[:500]
            self.db.commit()
            logger.warning(f"Checkout {order.reference} failed at the gateway: {e.message}")
            raise

        order.charge_ref = payment.id
        self.db.commit()
        self.db.refresh(order)

        logger.info(f"Checkout {order.reference} opened charge {payment.id} for user {user_id}")
        return order, payment

    def complete(self, reference: str, user_id: int) -> list[Ticket]:
        """
        Issue the tickets of a paid order. Safe to call again: a completed
        order returns the tickets it already has.
        """
        order = self.get_for_user(reference, user_id)
        if order.status == OrderStatus.COMPLETED:
            return self._tickets_for(order)
        if order.status == OrderStatus.FAILED:
            raise PaymentNotVerified(f"Order failed: {order.failure_reason or 'payment not taken'}")
        if not order.charge_ref:
            raise PaymentNotVerified("No payment was started for this order")

        payment = self.gateway.retrieve_payment(order.charge_ref)
        problem = self._verification_problem(order, payment)
        if problem:
            logger.warning(f"Order {order.reference} not completed: {problem}")
            raise PaymentNotVerified(problem)

        # One winner per order; the charge is then spent
        claimed = self.db.query(PaymentOrder).filter(
            PaymentOrder.id == order.id,
            PaymentOrder.status == OrderStatus.INITIATED
        ).update(
            {PaymentOrder.status: OrderStatus.COMPLETED, PaymentOrder.completed_at: utcnow()},
            synchronize_session=False
        )
        self.db.commit()
        if not claimed:
            self.db.refresh(order)
            tickets = self._tickets_for(order)
            if order.status == OrderStatus.COMPLETED and tickets:
                return tickets
            raise PaymentNotVerified("Order is already being completed")

        try:
            tickets = IssuanceManager(self.db, notifier=self.notifier).issue(
                event_id=order.event_id,
                user_id=order.user_id,
                quantity=order.quantity,
                unit_price=order.unit_price,
                charge_ref=order.charge_ref,
                order_ref=order.reference
            )
        except Exception:
            # Paid but not issued: reopen so completing can be retried
            self.db.query(PaymentOrder).filter(
                PaymentOrder.id == order.id,
                PaymentOrder.status == OrderStatus.COMPLETED
            ).update(
                {PaymentOrder.status: OrderStatus.INITIATED, PaymentOrder.completed_at: None},
                synchronize_session=False
            )
            self.db.commit()
            logger.error(f"Order {order.reference} is paid but issuance failed, reopened")
            raise

        logger.info(f"Order {order.reference} completed with {len(tickets)} ticket(s)")
        return tickets

    def get_for_user(self, reference: str, user_id: int) -> PaymentOrder:
        order = self.db.query(PaymentOrder).filter(PaymentOrder.reference == reference).first()
        if order is None or order.user_id != user_id:
            raise OrderNotFound()
        return order

    def _verification_problem(self, order: PaymentOrder, payment: GatewayPayment) -> Optional[str]:
        if payment.id != order.charge_ref:
            return "Payment does not belong to this order"
        if payment.metadata.get("order_reference") != order.reference:
            return "Payment does not belong to this order"
        if not payment.succeeded:
            return f"Payment is {payment.status}"
        if payment.amount != to_minor_units(order.total_amount):
            return "Payment amount does not match the order"
        if (payment.currency or "").lower() != self.currency:
            return "Payment currency does not match the order"
        return None

    def _tickets_for(self, order: PaymentOrder) -> list[Ticket]:
        return self.db.query(Ticket).filter(
            Ticket.order_ref == order.reference
        ).order_by(Ticket.id).all()
