from turnstile.routers.auth import router as auth_router
from turnstile.routers.events import router as events_router
from turnstile.routers.tickets import router as tickets_router
from turnstile.routers.refunds import router as refunds_router

__all__ = [
    "auth_router",
    "events_router",
    "tickets_router",
    "refunds_router"
]
