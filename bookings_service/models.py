from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, Column, DateTime, Enum, Index, Integer, Text

from .database import Base


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the storage convention for bookings."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BookingStatus(str, PyEnum):
    """
    Enumeration of possible booking statuses.

    Values
    ------
    pending
        Booking has been requested and holds the slot until reviewed.
    confirmed
        Booking was approved by staff and holds the resource.
    cancelled
        Booking was withdrawn and no longer blocks the resource.
    completed
        Booking took place; terminal.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Statuses that hold a resource's time slot.
ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class Booking(Base):
    """
    SQLAlchemy model representing a resource booking.

    Attributes
    ----------
    id : int
        Primary key.
    user_id : int
        Identifier of the requester who owns the booking.
    resource_id : int
        Identifier of the booked resource.
    start_time : datetime
        Start of the reserved interval (inclusive, naive UTC).
    end_time : datetime
        End of the reserved interval (exclusive, naive UTC).
    status : BookingStatus
        Current lifecycle status.
    purpose : str
        Free-text reason given by the requester.
    created_at : datetime
        Timestamp when the booking was created.
    updated_at : datetime
        Timestamp of the last modification.
    """
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_bookings_interval"),
        Index("ix_bookings_resource_window", "resource_id", "start_time", "end_time"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    resource_id = Column(Integer, index=True, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING)
    purpose = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, resource={self.resource_id}, "
            f"{self.start_time}..{self.end_time}, status={self.status})>"
        )
