"""
Inventory ledger for the event.

The remaining count only moves through single conditional UPDATE statements,
so concurrent purchases cannot oversell and compensations cannot overfill.
"""
import enum
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from turnstile.models.event import Event
from turnstile.services.errors import EventNotFound, InsufficientInventory

logger = logging.getLogger(__name__)


class ReservationState(str, enum.Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class Reservation:
    event_id: int
    quantity: int
    state: ReservationState = ReservationState.RESERVED


class InventoryLedger:
    def __init__(self, db: Session):
        self.db = db

    def reserve(self, event_id: int, quantity: int) -> Reservation:
        """
        Atomically take `quantity` units, conditioned on remaining >= quantity.
        Nothing is written when the condition fails.
        """
        if quantity < 1:
            raise ValueError("Quantity must be at least 1")

        updated = self.db.query(Event).filter(
            Event.id == event_id,
            Event.remaining >= quantity
        ).update(
            {Event.remaining: Event.remaining - quantity},
            synchronize_session=False
        )
        self.db.commit()

        if updated == 0:
            remaining = self.db.query(Event.remaining).filter(Event.id == event_id).scalar()
            if remaining is None:
                raise EventNotFound()
            logger.info(f"Reservation of {quantity} refused for event {event_id}, {remaining} left")
            raise InsufficientInventory(quantity, remaining)

        return Reservation(event_id=event_id, quantity=quantity)

    def commit(self, reservation: Reservation) -> Reservation:
        if reservation.state != ReservationState.RESERVED:
            raise ValueError(f"Cannot commit a {reservation.state.value} reservation")
        reservation.state = ReservationState.COMMITTED
        return reservation

    def release(self, reservation: Reservation) -> Reservation:
        """Compensating action: give the reserved units back."""
        if reservation.state != ReservationState.RESERVED:
            raise ValueError(f"Cannot release a {reservation.state.value} reservation")

        updated = self.db.query(Event).filter(
            Event.id == reservation.event_id,
            Event.remaining + reservation.quantity <= Event.total_capacity
        ).update(
            {Event.remaining: Event.remaining + reservation.quantity},
            synchronize_session=False
        )
        self.db.commit()

        if updated == 0:
            logger.error(
                f"Release of {reservation.quantity} for event {reservation.event_id} "
                f"would exceed capacity, ledger left unchanged"
            )
        else:
            logger.warning(f"Released {reservation.quantity} units for event {reservation.event_id}")

        reservation.state = ReservationState.ROLLED_BACK
        return reservation

    def remaining(self, event_id: int) -> int:
        remaining = self.db.query(Event.remaining).filter(Event.id == event_id).scalar()
        if remaining is None:
            raise EventNotFound()
        return remaining
