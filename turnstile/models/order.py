from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from turnstile.database import Base
import enum
import secrets
import string
import time


class OrderStatus(str, enum.Enum):
    INITIATED = "initiated"
    COMPLETED = "completed"
    FAILED = "failed"


def generate_order_reference() -> str:
    suffix = "".join(
        secrets.choice(string.ascii_uppercase + string.digits) for _ in range(8)
    )
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


class PaymentOrder(Base):
    """A checkout. Tickets are issued against it once the gateway confirms payment."""
    __tablename__ = "payment_orders"

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(40), unique=True, nullable=False, default=generate_order_reference)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    event_id = Column(Integer, ForeignKey("events.id"), nullable=False)

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Float, nullable=False)
    total_amount = Column(Float, nullable=False)

    # One gateway charge backs at most one order
    charge_ref = Column(String(255), unique=True, nullable=True)
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.INITIATED)
    failure_reason = Column(String(500), nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)

    user = relationship("User")
    event = relationship("Event")
