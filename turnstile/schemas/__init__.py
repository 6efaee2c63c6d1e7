from turnstile.schemas.user import UserCreate, UserLogin, UserResponse, Token
from turnstile.schemas.event import EventCreate, EventResponse
from turnstile.schemas.ticket import (
    TicketCheckout, TicketPurchase, OrderResponse, CheckoutResponse,
    ManualIssue, TicketScan, TicketResponse, ScanResult
)
from turnstile.schemas.refund import RefundCreate, RefundCancel, RefundResponse

__all__ = [
    "UserCreate", "UserLogin", "UserResponse", "Token",
    "EventCreate", "EventResponse",
    "TicketCheckout", "TicketPurchase", "OrderResponse", "CheckoutResponse",
    "ManualIssue", "TicketScan", "TicketResponse", "ScanResult",
    "RefundCreate", "RefundCancel", "RefundResponse"
]
