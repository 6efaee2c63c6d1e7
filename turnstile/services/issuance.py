import logging
from typing import Optional

from sqlalchemy.orm import Session

from turnstile.models.event import Event
from turnstile.models.ticket import Ticket, TicketStatus
from turnstile.models.user import User
from turnstile.services.codes import CodeGenerator
from turnstile.services.inventory import InventoryLedger
from turnstile.services.notifier import Notifier, NullNotifier

logger = logging.getLogger(__name__)


class IssuanceManager:
    """Mints tickets against the inventory ledger."""

    def __init__(
        self,
        db: Session,
        code_generator: Optional[CodeGenerator] = None,
        notifier: Optional[Notifier] = None,
        max_code_attempts: Optional[int] = None
    ):
        self.db = db
        self.ledger = InventoryLedger(db)
        self.codes = code_generator or CodeGenerator()
        self.notifier = notifier or NullNotifier()
        self.max_code_attempts = max_code_attempts

    def issue(
        self,
        event_id: int,
        user_id: int,
        quantity: int,
        unit_price: float,
        charge_ref: Optional[str] = None,
        order_ref: Optional[str] = None,
        purchase_method: str = "online"
    ) -> list[Ticket]:
        """
        Reserve inventory, then persist one active ticket per unit.

        Either every requested ticket exists afterwards or the reservation is
        released again. Raises InsufficientInventory before anything is written.
        CodeGenerationExhausted and storage errors at commit are re-raised after
        compensating.
        """
        reservation = self.ledger.reserve(event_id, quantity)

        try:
            codes = self._mint_codes(quantity)
            tickets = [
                Ticket(
                    code=code,
                    event_id=event_id,
                    user_id=user_id,
                    price=unit_price,
                    status=TicketStatus.ACTIVE,
                    charge_ref=charge_ref,
                    order_ref=order_ref,
                    purchase_method=purchase_method
                )
                for code in codes
            ]
            self.db.add_all(tickets)
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.ledger.release(reservation)
            logger.warning(f"Issuance of {quantity} ticket(s) for user {user_id} rolled back")
            raise

        self.ledger.commit(reservation)
        for ticket in tickets:
            self.db.refresh(ticket)

        logger.info(f"Issued {quantity} ticket(s) for event {event_id} to user {user_id}")
        self._notify_purchase(user_id, tickets, event_id)
        return tickets

    def _mint_codes(self, quantity: int) -> list[str]:
        minted: list[str] = []

        def is_taken(code: str) -> bool:
            if code in minted:
                return True
            return self.db.query(Ticket.id).filter(Ticket.code == code).first() is not None

        for _ in range(quantity):
            minted.append(self.codes.generate_unique(is_taken, self.max_code_attempts))
        return minted

    def _notify_purchase(self, user_id: int, tickets: list[Ticket], event_id: int) -> None:
        try:
            user = self.db.get(User, user_id)
            event = self.db.get(Event, event_id)
            if user and event:
                self.notifier.send_ticket_purchased(user, tickets, event)
        except Exception:
            logger.exception(f"Failed to send purchase notification to user {user_id}")
