from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from typing import Optional

from turnstile.models.order import OrderStatus
from turnstile.models.ticket import TicketStatus


class TicketCheckout(BaseModel):
    quantity: int = Field(default=1, ge=1, le=50)


class TicketPurchase(BaseModel):
    order_ref: str = Field(min_length=1, max_length=40)


class OrderResponse(BaseModel):
    reference: str
    quantity: int
    unit_price: float
    total_amount: float
    status: OrderStatus
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CheckoutResponse(BaseModel):
    order: OrderResponse
    client_secret: Optional[str]


class ManualIssue(BaseModel):
    email: EmailStr
    quantity: int = Field(default=1, ge=1, le=50)
    price: Optional[float] = Field(default=None, ge=0)


class TicketScan(BaseModel):
    # Oversized or malformed codes are rejected by the format check
    code: str


class HolderInfo(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class TicketResponse(BaseModel):
    id: int
    code: str
    event_id: int
    user_id: int
    price: float
    status: TicketStatus
    purchase_method: str
    entry_time: Optional[datetime]
    scanned_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ScanResult(BaseModel):
    ticket: TicketResponse
    holder: HolderInfo
    admitted: bool
