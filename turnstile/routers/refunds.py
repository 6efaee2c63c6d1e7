import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from turnstile.config import get_settings
from turnstile.database import get_db
from turnstile.dependencies import get_gateway, get_notifier
from turnstile.services.auth import get_current_user, require_roles
from turnstile.services.errors import SignatureInvalid
from turnstile.services.gateway import PaymentGateway, parse_webhook_event
from turnstile.services.notifier import Notifier
from turnstile.services.refunds import RefundOrchestrator
from turnstile.services.signature import verify
from turnstile.schemas.refund import RefundCancel, RefundCreate, RefundResponse
from turnstile.models.user import User, UserRole

settings = get_settings()
logger = logging.getLogger(__name__)
router = APIRouter(prefix="/refunds", tags=["refunds"])

SIGNATURE_HEADERS = ("x-gateway-signature", "stripe-signature")


@router.post("", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
def request_refund(
    request: Request,
    refund_data: RefundCreate,
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db)
):
    """Cancel one of the caller's tickets and refund it. A gateway failure still returns 201."""
    return RefundOrchestrator(db, gateway, notifier).initiate(
        ticket_id=refund_data.ticket_id,
        user_id=user.id,
        reason=refund_data.reason,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )


@router.get("/mine", response_model=list[RefundResponse])
def my_refunds(
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db)
):
    return RefundOrchestrator(db, gateway).list_for_user(user.id)


@router.post("/webhook")
async def refund_webhook(
    request: Request,
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
    db: Session = Depends(get_db)
):
    # Verify against the bytes as received, before any parsing
    payload = await request.body()
    signature = next(
        (request.headers[name] for name in SIGNATURE_HEADERS if name in request.headers),
        None
    )
    if not verify(
        payload,
        signature,
        settings.webhook_secret,
        tolerance=settings.webhook_tolerance_seconds
    ):
        logger.warning("Rejected refund webhook with invalid signature")
        raise SignatureInvalid()

    try:
        event = parse_webhook_event(payload, request.headers)
    except ValueError as e:
        logger.warning(f"Ignoring signed refund webhook: {e}")
        return {"status": "ignored"}

    # Anything other than a bad signature is acknowledged so the gateway stops retrying
    try:
        RefundOrchestrator(db, gateway, notifier).handle_webhook(event)
    except Exception:
        db.rollback()
        logger.exception(f"Error handling refund webhook {event.event_id}")
        return {"status": "error"}

    return {"status": "success"}


@router.get("/{reference}", response_model=RefundResponse)
def get_refund(
    reference: str,
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db)
):
    return RefundOrchestrator(db, gateway).get_for_user(reference, user)


@router.post("/{reference}/cancel", response_model=RefundResponse)
def cancel_refund(
    reference: str,
    cancel_data: RefundCancel,
    admin: User = Depends(require_roles(UserRole.ADMIN)),
    gateway: PaymentGateway = Depends(get_gateway),
    db: Session = Depends(get_db)
):
    return RefundOrchestrator(db, gateway).cancel(reference, cancel_data.note)
