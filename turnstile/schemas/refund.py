from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional

from turnstile.models.refund import RefundStatus


class RefundCreate(BaseModel):
    ticket_id: int
    reason: str = Field(min_length=1, max_length=500)


class RefundCancel(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


class StatusEntryResponse(BaseModel):
    status: RefundStatus
    note: str
    created_at: datetime

    class Config:
        from_attributes = True


class RefundResponse(BaseModel):
    id: int
    reference: str
    ticket_id: int
    user_id: int
    original_amount: float
    processing_fee: float
    refund_amount: float
    status: RefundStatus
    reason: str
    failure_reason: Optional[str]
    gateway_refund_id: Optional[str]
    processed_at: Optional[datetime]
    created_at: Optional[datetime] = None
    status_history: list[StatusEntryResponse] = []

    class Config:
        from_attributes = True
