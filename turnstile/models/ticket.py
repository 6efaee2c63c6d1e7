from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from turnstile.database import Base
import enum


class TicketStatus(str, enum.Enum):
    ACTIVE = "active"
    USED = "used"
    CANCELLED = "cancelled"


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, index=True, nullable=False)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    price = Column(Float, nullable=False)
    status = Column(Enum(TicketStatus), nullable=False, default=TicketStatus.ACTIVE)

    # Set once, together with status=used
    entry_time = Column(DateTime, nullable=True)
    scanned_at = Column(DateTime, nullable=True)
    scanned_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(500), nullable=True)

    charge_ref = Column(String(255), nullable=True)
    order_ref = Column(String(255), nullable=True)
    purchase_method = Column(String(20), nullable=False, default="online")
    created_at = Column(DateTime, server_default=func.now())

    event = relationship("Event", back_populates="tickets")
    user = relationship("User", back_populates="tickets", foreign_keys=[user_id])
    scanned_by = relationship("User", foreign_keys=[scanned_by_id])
    refund = relationship("Refund", back_populates="ticket", uselist=False)
