from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, field_validator, model_validator


def _assume_utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SlotWindow(BaseModel):
    """Start/end pair for a slot produced by an external generator."""

    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        return _assume_utc(v)

    @model_validator(mode="after")
    def validate_window(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AvailableSlotQuery(BaseModel):
    start: datetime
    end: datetime
    inclusive_end: bool = True

    @field_validator("start", "end")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        return _assume_utc(v)

    @model_validator(mode="after")
    def validate_range(self):
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class Slot(BaseModel):
    id: UUID
    start_time: datetime
    end_time: datetime
    booked: bool
    holder_id: Optional[UUID] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SlotSummary(BaseModel):
    id: UUID
    start_time: datetime
    end_time: datetime

    class Config:
        from_attributes = True
