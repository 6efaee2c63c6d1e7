import re
from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import date, datetime
from typing import Optional

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class EventCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    venue: str = Field(min_length=1, max_length=200)
    date: date
    start_time: str
    end_time: str
    unit_price: float = Field(ge=0)
    group_price: Optional[float] = Field(default=None, ge=0)
    group_threshold: int = Field(default=6, ge=2)
    total_capacity: int = Field(ge=1)

    @field_validator("start_time", "end_time")
    @classmethod
    def check_time(cls, value: str) -> str:
        if not TIME_PATTERN.match(value):
            raise ValueError("Time must be in HH:MM format")
        return value

    @model_validator(mode="after")
    def check_window(self):
        # An end time earlier than the start means the event runs past midnight
        if self.end_time == self.start_time:
            raise ValueError("End time must differ from start time")
        return self


class EventResponse(BaseModel):
    id: int
    name: str
    description: Optional[str]
    venue: str
    date: date
    start_time: str
    end_time: str
    unit_price: float
    group_price: Optional[float]
    group_threshold: int
    total_capacity: int
    remaining: int
    sold: int
    is_sold_out: bool
    ends_next_day: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
