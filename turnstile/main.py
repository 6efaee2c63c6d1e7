from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from turnstile.database import init_db
from turnstile.config import get_settings
from turnstile.services.errors import ErrorCode, TicketingError
from turnstile.services.scheduler import init_scheduler, shutdown_scheduler
from turnstile.middleware.security import setup_security_middleware
from turnstile.routers import (
    auth_router,
    events_router,
    tickets_router,
    refunds_router
)

settings = get_settings()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)

# Rate limiter setup
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

ERROR_STATUS = {
    ErrorCode.INSUFFICIENT_INVENTORY: 409,
    ErrorCode.CODE_GENERATION_EXHAUSTED: 500,
    ErrorCode.TICKET_NOT_FOUND: 404,
    ErrorCode.INVALID_TICKET_CODE: 400,
    ErrorCode.ALREADY_USED: 409,
    ErrorCode.TICKET_CANCELLED: 409,
    ErrorCode.DUPLICATE_REFUND: 409,
    ErrorCode.REFUND_INELIGIBLE: 400,
    ErrorCode.REFUND_NOT_FOUND: 404,
    ErrorCode.ORDER_NOT_FOUND: 404,
    ErrorCode.PAYMENT_NOT_VERIFIED: 402,
    ErrorCode.GATEWAY_REJECTED: 502,
    ErrorCode.GATEWAY_TIMEOUT: 502,
    ErrorCode.SIGNATURE_INVALID: 400,
    ErrorCode.EVENT_ALREADY_EXISTS: 409,
    ErrorCode.EVENT_NOT_FOUND: 404,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.UNAUTHENTICATED: 401,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    init_scheduler()
    yield
    shutdown_scheduler()


app = FastAPI(
    title="Turnstile",
    description="Ticket issuance, gate check-in and refunds for a single event",
    version="1.0.0",
    lifespan=lifespan
)

# Add rate limiter to app state
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Setup security middleware (security headers, trusted hosts)
setup_security_middleware(app, allowed_hosts=settings.allowed_hosts)

app.include_router(auth_router)
app.include_router(events_router)
app.include_router(tickets_router)
app.include_router(refunds_router)


@app.exception_handler(TicketingError)
async def ticketing_error_handler(request: Request, exc: TicketingError):
    status_code = ERROR_STATUS.get(exc.code, 400)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code.value, "message": exc.message, "details": exc.details},
        headers=headers
    )


@app.get("/health")
async def health():
    return {"status": "ok"}
