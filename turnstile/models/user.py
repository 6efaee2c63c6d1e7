from sqlalchemy import Column, Integer, String, DateTime, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from turnstile.database import Base
import enum


class UserRole(str, enum.Enum):
    GUEST = "guest"
    QRCHECKER = "qrchecker"
    MANAGER = "manager"
    ADMIN = "admin"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(100), nullable=False)
    hashed_password = Column(String(255), nullable=False)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.GUEST)
    created_at = Column(DateTime, server_default=func.now())

    tickets = relationship("Ticket", back_populates="user", foreign_keys="Ticket.user_id")
    refunds = relationship("Refund", back_populates="user")
