import enum
import secrets
import string
import time

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, ForeignKey, Enum, JSON, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from turnstile.database import Base


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_REFUND_STATUSES = {
    RefundStatus.PROCESSED,
    RefundStatus.FAILED,
    RefundStatus.CANCELLED,
}


def generate_refund_reference() -> str:
    suffix = "".join(
        secrets.choice(string.ascii_uppercase + string.digits) for _ in range(9)
    )
    return f"REF-{int(time.time() * 1000)}-{suffix}"


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(40), unique=True, nullable=False, default=generate_refund_reference)
    # At most one refund per ticket
    ticket_id = Column(Integer, ForeignKey("tickets.id"), unique=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    charge_ref = Column(String(255), nullable=False)
    order_ref = Column(String(255), nullable=True)
    original_amount = Column(Float, nullable=False)
    processing_fee = Column(Float, nullable=False)
    refund_amount = Column(Float, nullable=False)

    gateway_refund_id = Column(String(255), unique=True, index=True, nullable=True)
    status = Column(Enum(RefundStatus), nullable=False, default=RefundStatus.PENDING)
    reason = Column(String(500), nullable=False)
    failure_reason = Column(String(500), nullable=True)
    processed_at = Column(DateTime, nullable=True)

    requested_by = Column(String(20), nullable=False, default="user")
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    ticket = relationship("Ticket", back_populates="refund")
    user = relationship("User", back_populates="refunds")
    status_history = relationship(
        "RefundStatusEntry",
        back_populates="refund",
        order_by="RefundStatusEntry.id"
    )
    webhook_events = relationship(
        "RefundWebhookEvent",
        back_populates="refund",
        order_by="RefundWebhookEvent.id"
    )


class RefundStatusEntry(Base):
    """Append-only status log. One row per status write."""
    __tablename__ = "refund_status_history"

    id = Column(Integer, primary_key=True, index=True)
    refund_id = Column(Integer, ForeignKey("refunds.id"), nullable=False, index=True)
    status = Column(Enum(RefundStatus), nullable=False)
    note = Column(String(500), nullable=False, default="")
    created_at = Column(DateTime, nullable=False)

    refund = relationship("Refund", back_populates="status_history")


class RefundWebhookEvent(Base):
    """Append-only raw webhook log, deduplicated on the gateway event id."""
    __tablename__ = "refund_webhook_events"
    __table_args__ = (
        UniqueConstraint("refund_id", "gateway_event_id", name="uq_refund_webhook_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    refund_id = Column(Integer, ForeignKey("refunds.id"), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    gateway_event_id = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime, nullable=False)

    refund = relationship("Refund", back_populates="webhook_events")
