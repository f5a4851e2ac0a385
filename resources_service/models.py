from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, Column, DateTime, Enum, Integer, String, Text

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ResourceStatus(str, PyEnum):
    """
    Operational status of a resource.

    Values
    ------
    available
        Resource can be booked.
    maintenance
        Temporarily out of service for repair or servicing.
    unavailable
        Withdrawn from booking.
    """
    AVAILABLE = "available"
    MAINTENANCE = "maintenance"
    UNAVAILABLE = "unavailable"


class Resource(Base):
    """
    SQLAlchemy model representing a bookable college resource.

    Attributes
    ----------
    id : int
        Primary key.
    name : str
        Human-readable name (e.g. 'Physics Lab 2', 'Laptop Cart A').
    type : str
        Category such as 'room', 'lab', 'equipment'.
    description : str
        Optional free-text description.
    location : str
        Physical location (building, floor, etc.).
    capacity : int
        Number of identical units or seats, at least 1.
    available_count : int
        Units currently in service, between 0 and capacity.
    status : ResourceStatus
        Operational status; only 'available' resources accept bookings.
    created_at : datetime
        Timestamp recording when the resource was created.
    updated_at : datetime
        Timestamp of the last modification.
    """
    __tablename__ = "resources"
    __table_args__ = (
        CheckConstraint("capacity >= 1", name="ck_resources_capacity"),
        CheckConstraint(
            "available_count >= 0 AND available_count <= capacity",
            name="ck_resources_available_count",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    type = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    capacity = Column(Integer, nullable=False, default=1)
    available_count = Column(Integer, nullable=False, default=1)
    # stored by value so other services can read the column as plain text
    status = Column(
        Enum(ResourceStatus, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=ResourceStatus.AVAILABLE,
    )
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
