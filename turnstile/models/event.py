from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, ForeignKey, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from turnstile.database import Base


class Event(Base):
    """The single ticketed event.

    `remaining` is the inventory ledger. It is written only through the
    conditional updates in InventoryLedger, never by attribute assignment.
    """
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint(
            "remaining >= 0 AND remaining <= total_capacity",
            name="ck_events_remaining_bounds"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    # Always 1; the unique index backs the one-event-only rule
    singleton = Column(Integer, nullable=False, default=1, unique=True)
    name = Column(String(100), nullable=False)
    description = Column(String(1000), nullable=True)
    venue = Column(String(200), nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    unit_price = Column(Float, nullable=False)
    group_price = Column(Float, nullable=True)
    group_threshold = Column(Integer, nullable=False, default=6)
    total_capacity = Column(Integer, nullable=False)
    remaining = Column(Integer, nullable=False)
    created_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    created_by = relationship("User")
    tickets = relationship("Ticket", back_populates="event")

    def price_for(self, quantity: int) -> float:
        if self.group_price is not None and quantity >= self.group_threshold:
            return self.group_price
        return self.unit_price

    def total_for(self, quantity: int) -> float:
        return self.price_for(quantity) * quantity

    @property
    def sold(self) -> int:
        return self.total_capacity - self.remaining

    @property
    def is_sold_out(self) -> bool:
        return self.remaining <= 0

    @property
    def ends_next_day(self) -> bool:
        # HH:MM strings compare in clock order
        return self.end_time < self.start_time
