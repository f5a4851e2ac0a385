from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator

from .models import BookingStatus


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize an incoming datetime to naive UTC.

    Aware values are converted to UTC first; naive values are assumed
    to already be UTC.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class BookingBase(BaseModel):
    """
    Base schema for booking time and resource information.

    Shared fields used across booking create and read operations.
    """
    resource_id: int = Field(..., ge=1)
    start_time: datetime = Field(...)
    end_time: datetime = Field(...)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, value):
        return to_naive_utc(value)


class BookingCreate(BookingBase):
    """
    Schema for creating a new booking.

    Inherits resource_id, start_time, and end_time from BookingBase.
    """
    purpose: str = Field(default="", max_length=500)


class BookingUpdate(BaseModel):
    """
    Schema for rescheduling or editing an existing booking.

    All fields are optional; only provided values will be applied.
    """
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    purpose: Optional[str] = Field(default=None, max_length=500)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_times(cls, value):
        return to_naive_utc(value)


class BookingStatusUpdate(BaseModel):
    """Schema for a lifecycle transition."""
    status: BookingStatus


class BookingRead(BookingBase):
    """
    Schema returned when reading booking information.

    Extends BookingBase with identifiers, status, purpose and timestamps.
    """
    id: int
    user_id: int
    status: BookingStatus
    purpose: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BusySlot(BaseModel):
    """One occupied interval in a resource schedule."""
    start_time: datetime
    end_time: datetime
    status: BookingStatus

    model_config = ConfigDict(from_attributes=True)


class ConflictRead(BaseModel):
    id: int
    start_time: datetime
    end_time: datetime
    status: BookingStatus

    model_config = ConfigDict(from_attributes=True)


class AvailabilityRead(BaseModel):
    resource_id: int
    available: bool
    conflicts: List[ConflictRead]


class ScheduleRead(BaseModel):
    resource_id: int
    window_start: datetime
    window_end: datetime
    slots: List[BusySlot]


class ResourceUsage(BaseModel):
    resource_id: int
    total_bookings: int
    completed_bookings: int


class BookingReport(BaseModel):
    """
    Aggregate booking report for administrators.

    ``by_status`` maps every booking status to its count, including zeros.
    """
    total: int
    by_status: Dict[str, int]
    resources: List[ResourceUsage]
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
