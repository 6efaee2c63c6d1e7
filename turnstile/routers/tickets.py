from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from slowapi import Limiter
from slowapi.util import get_remote_address

from turnstile.config import get_settings
from turnstile.database import get_db
from turnstile.dependencies import get_gateway, get_notifier
from turnstile.services.auth import AuthService, get_current_user, require_roles
from turnstile.services.checkin import CHECK_IN_ROLES, CheckInStateMachine
from turnstile.services.errors import TicketNotFound
from turnstile.services.events import EventService
from turnstile.services.gateway import PaymentGateway
from turnstile.services.issuance import IssuanceManager
from turnstile.services.notifier import Notifier
from turnstile.services.orders import OrderService
from turnstile.schemas.ticket import (
    CheckoutResponse, HolderInfo, ManualIssue, OrderResponse, ScanResult,
    TicketCheckout, TicketPurchase, TicketResponse, TicketScan
)
from turnstile.models.ticket import Ticket
from turnstile.models.user import User, UserRole

settings = get_settings()
router = APIRouter(prefix="/tickets", tags=["tickets"])
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

STAFF_ROLES = (UserRole.MANAGER, UserRole.ADMIN)


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def checkout(
    request: Request,
    checkout_data: TicketCheckout,
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db)
):
    """Open a payment for the current event. Tickets are issued by /purchase once it is paid."""
    order, payment = OrderService(db, gateway).checkout(
        user_id=user.id,
        quantity=checkout_data.quantity,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )
    return CheckoutResponse(
        order=OrderResponse.model_validate(order),
        client_secret=payment.client_secret
    )


@router.post("/purchase", response_model=list[TicketResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def purchase_tickets(
    request: Request,
    purchase: TicketPurchase,
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db)
):
    """Issue the tickets of an order whose payment the gateway confirms."""
    return OrderService(db, gateway, notifier).complete(purchase.order_ref, user.id)


@router.post("/issue", response_model=list[TicketResponse], status_code=status.HTTP_201_CREATED)
def issue_tickets(
    issue: ManualIssue,
    staff: User = Depends(require_roles(*STAFF_ROLES)),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db)
):
    holder = AuthService.get_user_by_email(db, issue.email)
    if not holder:
        raise HTTPException(status_code=404, detail="User not found")

    event = EventService(db).current()
    price = issue.price if issue.price is not None else event.price_for(issue.quantity)
    return IssuanceManager(db, notifier=notifier).issue(
        event_id=event.id,
        user_id=holder.id,
        quantity=issue.quantity,
        unit_price=price,
        purchase_method="manual"
    )


@router.get("/mine", response_model=list[TicketResponse])
def my_tickets(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return db.query(Ticket).filter(
        Ticket.user_id == user.id
    ).order_by(Ticket.created_at.desc(), Ticket.id.desc()).all()


@router.post("/verify", response_model=ScanResult)
def verify_ticket(
    scan: TicketScan,
    agent: User = Depends(require_roles(*CHECK_IN_ROLES)),
    db: Session = Depends(get_db)
):
    ticket = CheckInStateMachine(db).inspect(scan.code)
    return ScanResult(
        ticket=TicketResponse.model_validate(ticket),
        holder=HolderInfo.model_validate(ticket.user),
        admitted=False
    )


@router.post("/check-in", response_model=ScanResult)
@limiter.limit("120/minute")
def check_in(
    request: Request,
    scan: TicketScan,
    agent: User = Depends(require_roles(*CHECK_IN_ROLES)),
    db: Session = Depends(get_db)
):
    ticket = CheckInStateMachine(db).check_in(scan.code, agent.id)
    return ScanResult(
        ticket=TicketResponse.model_validate(ticket),
        holder=HolderInfo.model_validate(ticket.user),
        admitted=True
    )


@router.get("/{ticket_id}", response_model=TicketResponse)
def get_ticket(
    ticket_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    ticket = db.get(Ticket, ticket_id)
    if ticket is None or (ticket.user_id != user.id and user.role not in STAFF_ROLES):
        raise TicketNotFound("Ticket not found")
    return ticket
