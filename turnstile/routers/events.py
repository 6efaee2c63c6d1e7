from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from turnstile.database import get_db
from turnstile.services.auth import require_roles
from turnstile.services.events import EventService
from turnstile.schemas.event import EventCreate, EventResponse
from turnstile.models.user import User, UserRole

router = APIRouter(prefix="/events", tags=["events"])


@router.post("", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
def create_event(
    event_data: EventCreate,
    admin: User = Depends(require_roles(UserRole.ADMIN)),
    db: Session = Depends(get_db)
):
    return EventService(db).create(
        name=event_data.name,
        description=event_data.description,
        venue=event_data.venue,
        event_date=event_data.date,
        start_time=event_data.start_time,
        end_time=event_data.end_time,
        unit_price=event_data.unit_price,
        group_price=event_data.group_price,
        group_threshold=event_data.group_threshold,
        total_capacity=event_data.total_capacity,
        created_by_id=admin.id
    )


@router.get("/current", response_model=EventResponse)
def current_event(db: Session = Depends(get_db)):
    return EventService(db).current()
