from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Optional


class AvailabilityError(Exception):
    """Base class for errors raised by the availability engine."""

    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ResourceNotFound(AvailabilityError):
    status_code = 404

    def __init__(self, resource_id: int):
        super().__init__("Resource not found")
        self.resource_id = resource_id


class InvalidInterval(AvailabilityError):
    status_code = 400


class ResourceUnavailable(AvailabilityError):
    """The resource is in maintenance, unavailable, or has no free units."""

    status_code = 400


@dataclass(frozen=True)
class ConflictingBooking:
    """Detached copy of an overlapping booking, safe to use after rollback."""
    id: int
    resource_id: int
    start_time: datetime
    end_time: datetime
    status: Any

    @classmethod
    def from_booking(cls, booking) -> "ConflictingBooking":
        return cls(
            id=booking.id,
            resource_id=booking.resource_id,
            start_time=booking.start_time,
            end_time=booking.end_time,
            status=booking.status,
        )


class BookingConflict(AvailabilityError):
    """
    One or more active bookings overlap the requested interval.

    Attributes
    ----------
    conflicts : list of ConflictingBooking
        The overlapping bookings, ascending by start time.
    """

    status_code = 409

    def __init__(self, conflicts: List, detail: Optional[str] = None):
        super().__init__(detail or "Time slot conflicts with existing booking")
        self.conflicts = [ConflictingBooking.from_booking(b) for b in conflicts]


class InvalidTransition(AvailabilityError):
    status_code = 409

    def __init__(self, current, target, detail: Optional[str] = None):
        super().__init__(
            detail or f"Cannot change booking status from {current.value} to {target.value}"
        )
        self.current = current
        self.target = target


class ConcurrencyTimeout(AvailabilityError):
    status_code = 503

    def __init__(self, resource_id: int, timeout: float):
        super().__init__(
            f"Resource {resource_id} is busy, could not acquire lock within {timeout:g}s"
        )
        self.resource_id = resource_id
        self.timeout = timeout
