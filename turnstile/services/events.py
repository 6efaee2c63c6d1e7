import logging
from datetime import date
from typing import Optional

from sqlalchemy import insert, literal, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from turnstile.models.event import Event
from turnstile.services.errors import EventAlreadyExists, EventNotFound

logger = logging.getLogger(__name__)


class EventService:
    """The system sells tickets for exactly one event."""

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        name: str,
        venue: str,
        event_date: date,
        start_time: str,
        end_time: str,
        unit_price: float,
        total_capacity: int,
        description: Optional[str] = None,
        group_price: Optional[float] = None,
        group_threshold: int = 6,
        created_by_id: Optional[int] = None
    ) -> Event:
        """
        Insert the event only if no event exists yet.

        The guard is part of the INSERT itself, and the unique singleton
        column catches two creators that both saw an empty table.
        """
        values = {
            "singleton": 1,
            "name": name,
            "description": description,
            "venue": venue,
            "date": event_date,
            "start_time": start_time,
            "end_time": end_time,
            "unit_price": unit_price,
            "group_price": group_price,
            "group_threshold": group_threshold,
            "total_capacity": total_capacity,
            "remaining": total_capacity,
            "created_by_id": created_by_id,
        }
        columns = Event.__table__.c
        guarded = select(
            *[literal(value, columns[key].type) for key, value in values.items()]
        ).where(~select(Event.id).exists())

        try:
            result = self.db.execute(insert(Event).from_select(list(values), guarded))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning("Concurrent event creation lost the singleton race")
            raise EventAlreadyExists()

        if result.rowcount == 0:
            raise EventAlreadyExists()

        event = self.current()
        logger.info(f"Created event {event.id} '{event.name}' with {event.total_capacity} tickets")
        return event

    def current(self) -> Event:
        event = self.db.query(Event).order_by(Event.id).first()
        if event is None:
            raise EventNotFound()
        return event
