"""Domain errors for ticket issuance, check-in and refunds."""
from datetime import datetime
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    CODE_GENERATION_EXHAUSTED = "CODE_GENERATION_EXHAUSTED"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    INVALID_TICKET_CODE = "INVALID_TICKET_CODE"
    ALREADY_USED = "ALREADY_USED"
    TICKET_CANCELLED = "TICKET_CANCELLED"
    DUPLICATE_REFUND = "DUPLICATE_REFUND"
    REFUND_INELIGIBLE = "REFUND_INELIGIBLE"
    REFUND_NOT_FOUND = "REFUND_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    PAYMENT_NOT_VERIFIED = "PAYMENT_NOT_VERIFIED"
    GATEWAY_REJECTED = "GATEWAY_REJECTED"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    EVENT_ALREADY_EXISTS = "EVENT_ALREADY_EXISTS"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    UNAUTHENTICATED = "UNAUTHENTICATED"


class TicketingError(Exception):
    """Base error with a code and a user-safe message."""

    code: ErrorCode

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class InsufficientInventory(TicketingError):
    code = ErrorCode.INSUFFICIENT_INVENTORY

    def __init__(self, requested: int, remaining: Optional[int] = None):
        if remaining is None:
            message = "Not enough tickets available"
        elif remaining == 0:
            message = "Sold out"
        else:
            message = f"Only {remaining} tickets available"
        super().__init__(message, {"requested": requested, "remaining": remaining})
        self.requested = requested
        self.remaining = remaining


class CodeGenerationExhausted(TicketingError):
    code = ErrorCode.CODE_GENERATION_EXHAUSTED

    def __init__(self, attempts: int):
        super().__init__(
            f"Failed to generate a unique ticket code after {attempts} attempts",
            {"attempts": attempts}
        )
        self.attempts = attempts


class TicketNotFound(TicketingError):
    code = ErrorCode.TICKET_NOT_FOUND

    def __init__(self, message: str = "Not a valid ticket"):
        super().__init__(message)


class InvalidTicketCode(TicketingError):
    code = ErrorCode.INVALID_TICKET_CODE

    def __init__(self):
        super().__init__("Not a valid ticket code")


class AlreadyUsed(TicketingError):
    code = ErrorCode.ALREADY_USED

    def __init__(self, scanned_at: Optional[datetime]):
        super().__init__(
            "This ticket has already been used",
            {"scanned_at": scanned_at.isoformat() if scanned_at else None}
        )
        self.scanned_at = scanned_at


class TicketCancelled(TicketingError):
    code = ErrorCode.TICKET_CANCELLED

    def __init__(self, message: str = "This ticket has been cancelled"):
        super().__init__(message)


class DuplicateRefund(TicketingError):
    code = ErrorCode.DUPLICATE_REFUND

    def __init__(self):
        super().__init__("Refund request already exists for this ticket")


class RefundIneligible(TicketingError):
    code = ErrorCode.REFUND_INELIGIBLE


class RefundNotFound(TicketingError):
    code = ErrorCode.REFUND_NOT_FOUND

    def __init__(self):
        super().__init__("Refund not found")


class GatewayRejected(TicketingError):
    code = ErrorCode.GATEWAY_REJECTED


class GatewayTimeout(TicketingError):
    code = ErrorCode.GATEWAY_TIMEOUT

    def __init__(self, message: str = "gateway timeout"):
        super().__init__(message)


class SignatureInvalid(TicketingError):
    code = ErrorCode.SIGNATURE_INVALID

    def __init__(self):
        super().__init__("Invalid signature")


class EventAlreadyExists(TicketingError):
    code = ErrorCode.EVENT_ALREADY_EXISTS

    def __init__(self):
        super().__init__("Only one event can exist in the system")


class EventNotFound(TicketingError):
    code = ErrorCode.EVENT_NOT_FOUND

    def __init__(self):
        super().__init__("Event not found")


class PermissionDenied(TicketingError):
    code = ErrorCode.PERMISSION_DENIED

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message)


class Unauthenticated(TicketingError):
    code = ErrorCode.UNAUTHENTICATED

    def __init__(self):
        super().__init__("Not authenticated")


class OrderNotFound(TicketingError):
    code = ErrorCode.ORDER_NOT_FOUND

    def __init__(self):
        super().__init__("Order not found")


class PaymentNotVerified(TicketingError):
    code = ErrorCode.PAYMENT_NOT_VERIFIED
