from turnstile.services.auth import AuthService
from turnstile.services.checkin import CheckInStateMachine
from turnstile.services.codes import CodeGenerator
from turnstile.services.email import EmailService
from turnstile.services.events import EventService
from turnstile.services.inventory import InventoryLedger
from turnstile.services.issuance import IssuanceManager
from turnstile.services.orders import OrderService
from turnstile.services.refunds import RefundOrchestrator

__all__ = [
    "AuthService", "CheckInStateMachine", "CodeGenerator", "EmailService",
    "EventService", "InventoryLedger", "IssuanceManager", "OrderService",
    "RefundOrchestrator"
]
