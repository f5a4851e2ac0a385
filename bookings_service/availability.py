# bookings_service/availability.py
"""
Availability engine: conflict detection and the booking lifecycle.

The engine keeps, per resource, the set of active (pending or confirmed)
bookings free of overlapping intervals. Every write that can change that
set runs its conflict check and its commit while holding a lock scoped to
the resource, so concurrent writers on the same resource are serialized.
Reads take no lock.
"""
import logging
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy.orm import Session

from . import models
from .errors import (
    BookingConflict,
    InvalidInterval,
    InvalidTransition,
    ResourceNotFound,
    ResourceUnavailable,
)
from .resource_store import ResourceInfo

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0

S = models.BookingStatus

# Lifecycle state machine. Cancelled and completed are terminal.
TRANSITIONS: Dict[S, FrozenSet[S]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.CANCELLED, S.COMPLETED}),
    S.CANCELLED: frozenset(),
    S.COMPLETED: frozenset(),
}


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """
    Return True if the half-open intervals [start_a, end_a) and
    [start_b, end_b) share any instant.

    Touching endpoints (``end_a == start_b``) do not overlap.
    """
    return start_a < end_b and start_b < end_a


def can_transition(current: S, target: S) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_interval(start: datetime, end: datetime) -> None:
    """
    Validate that a booking time range is well-formed.

    Raises
    ------
    InvalidInterval
        If end is not strictly after start.
    """
    if end <= start:
        raise InvalidInterval("end_time must be after start_time")


def ensure_future(start: datetime, now: Optional[datetime] = None) -> None:
    """
    Validate that a booking starts in the future.

    Raises
    ------
    InvalidInterval
        If start is not strictly after ``now`` (defaults to the current UTC time).
    """
    if start <= (now or models.utcnow()):
        raise InvalidInterval("Booking start time must be in the future")


def ensure_bookable(resource: ResourceInfo) -> None:
    """
    Check the capacity side of bookability, independent of time conflicts.

    A resource accepts new bookings only while its status is 'available'
    and it has at least one free unit.

    Raises
    ------
    ResourceUnavailable
        If the resource is not in 'available' status or is fully booked.
    """
    if resource.status != "available":
        raise ResourceUnavailable("Resource is not available for booking")
    if resource.available_count <= 0:
        raise ResourceUnavailable("Resource is fully booked")


class AvailabilityEngine:
    """
    Decide whether intervals may be booked and apply booking writes atomically.

    Parameters
    ----------
    resources
        Resource store with a ``get(db, resource_id)`` method returning a
        :class:`ResourceInfo` or None.
    locks
        Lock strategy with a ``hold(db, resource_id, timeout)`` context manager.
    lock_timeout : float
        Upper bound, in seconds, on the wait for a resource lock.
    """

    def __init__(self, resources, locks, lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS):
        self.resources = resources
        self.locks = locks
        self.lock_timeout = lock_timeout

    # ---------- Reads ----------

    def get_resource(self, db: Session, resource_id: int) -> ResourceInfo:
        resource = self.resources.get(db, resource_id)
        if resource is None:
            raise ResourceNotFound(resource_id)
        return resource

    def _active_overlapping(
        self,
        db: Session,
        resource_id: int,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[int] = None,
    ):
        Booking = models.Booking
        q = (
            db.query(Booking)
            .filter(Booking.resource_id == resource_id)
            .filter(Booking.status.in_(models.ACTIVE_STATUSES))
            .filter(Booking.start_time < end)
            .filter(Booking.end_time > start)
        )
        if exclude_booking_id is not None:
            q = q.filter(Booking.id != exclude_booking_id)
        return q.order_by(Booking.start_time.asc(), Booking.id.asc())

    def check_conflicts(
        self,
        db: Session,
        resource_id: int,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[int] = None,
    ) -> List[models.Booking]:
        """
        List the active bookings of a resource that overlap [start, end).

        Parameters
        ----------
        db : Session
            Database session.
        resource_id : int
            Resource to check; must exist.
        start, end : datetime
            Candidate interval, naive UTC.
        exclude_booking_id : Optional[int]
            Booking to ignore, used when re-checking a booking being edited.

        Returns
        -------
        List[Booking]
            Conflicting bookings ascending by start; empty if the interval is free.

        Raises
        ------
        InvalidInterval
            If end <= start.
        ResourceNotFound
            If the resource does not exist.
        """
        ensure_interval(start, end)
        self.get_resource(db, resource_id)
        return self._active_overlapping(db, resource_id, start, end, exclude_booking_id).all()

    def get_availability(
        self,
        db: Session,
        resource_id: int,
        window_start: datetime,
        window_end: datetime,
    ) -> List[models.Booking]:
        """
        Return the active bookings intersecting a window, ascending by start.

        Adjacent or touching slots are returned as-is, without merging.
        """
        ensure_interval(window_start, window_end)
        self.get_resource(db, resource_id)
        return self._active_overlapping(db, resource_id, window_start, window_end).all()

    # ---------- Writes ----------

    def _raise_if_conflicts(self, db, resource_id, start, end, exclude_booking_id=None):
        conflicts = self._active_overlapping(db, resource_id, start, end, exclude_booking_id).all()
        if conflicts:
            logger.info(
                "Rejected interval %s..%s on resource %s: %d conflict(s)",
                start, end, resource_id, len(conflicts),
            )
            raise BookingConflict(conflicts)

    def create_booking(
        self,
        db: Session,
        resource_id: int,
        user_id: int,
        start: datetime,
        end: datetime,
        purpose: str = "",
    ) -> models.Booking:
        """
        Reserve [start, end) on a resource as a new pending booking.

        The conflict check and the insert happen under the resource lock and
        in the same transaction.

        Raises
        ------
        InvalidInterval, ResourceNotFound, BookingConflict, ConcurrencyTimeout
        """
        ensure_interval(start, end)
        self.get_resource(db, resource_id)

        with self.locks.hold(db, resource_id, self.lock_timeout):
            try:
                self._raise_if_conflicts(db, resource_id, start, end)
                booking = models.Booking(
                    user_id=user_id,
                    resource_id=resource_id,
                    start_time=start,
                    end_time=end,
                    purpose=purpose or "",
                    status=S.PENDING,
                )
                db.add(booking)
                db.commit()
            except Exception:
                db.rollback()
                raise

        db.refresh(booking)
        logger.info(
            "Created booking %s on resource %s for user %s (%s..%s)",
            booking.id, resource_id, user_id, start, end,
        )
        return booking

    def reschedule(
        self,
        db: Session,
        booking: models.Booking,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        purpose: Optional[str] = None,
    ) -> models.Booking:
        """
        Move an active booking to a new interval and/or change its purpose.

        Missing bounds fall back to the booking's current ones. When the
        interval changes, conflicts are re-checked excluding the booking
        itself before the new interval is committed.

        Raises
        ------
        InvalidInterval, InvalidTransition, BookingConflict, ConcurrencyTimeout
        """
        if start is not None and end is not None:
            ensure_interval(start, end)

        with self.locks.hold(db, booking.resource_id, self.lock_timeout):
            try:
                # merge against the committed row, not the caller's copy
                db.refresh(booking)
                new_start = start if start is not None else booking.start_time
                new_end = end if end is not None else booking.end_time
                ensure_interval(new_start, new_end)

                moved = (new_start, new_end) != (booking.start_time, booking.end_time)
                if moved:
                    if not booking.is_active:
                        raise InvalidTransition(
                            booking.status, booking.status,
                            detail=f"Cannot reschedule a {booking.status.value} booking",
                        )
                    self._raise_if_conflicts(
                        db, booking.resource_id, new_start, new_end, exclude_booking_id=booking.id
                    )
                    booking.start_time = new_start
                    booking.end_time = new_end
                if purpose is not None:
                    booking.purpose = purpose
                db.add(booking)
                db.commit()
            except Exception:
                db.rollback()
                raise

        db.refresh(booking)
        return booking

    def transition(self, db: Session, booking: models.Booking, new_status: S) -> models.Booking:
        """
        Apply a lifecycle transition without re-checking conflicts.

        Runs under the resource lock so that a cancellation is never
        interleaved with a concurrent conflict check on the same resource.

        Raises
        ------
        InvalidTransition
            If ``new_status`` is not reachable from the current status.
        ConcurrencyTimeout
            If the resource lock could not be acquired in time.
        """
        with self.locks.hold(db, booking.resource_id, self.lock_timeout):
            try:
                db.refresh(booking)
                current = booking.status
                if not can_transition(current, new_status):
                    raise InvalidTransition(current, new_status)
                booking.status = new_status
                db.add(booking)
                db.commit()
            except Exception:
                db.rollback()
                raise

        db.refresh(booking)
        logger.info("Booking %s: %s -> %s", booking.id, current.value, new_status.value)
        return booking

    def cancel(self, db: Session, booking: models.Booking) -> models.Booking:
        return self.transition(db, booking, S.CANCELLED)

    def delete_booking(self, db: Session, booking: models.Booking) -> None:
        """Remove a booking record entirely, under the resource lock."""
        booking_id, resource_id = booking.id, booking.resource_id
        with self.locks.hold(db, resource_id, self.lock_timeout):
            try:
                db.delete(booking)
                db.commit()
            except Exception:
                db.rollback()
                raise
        logger.info("Deleted booking %s on resource %s", booking_id, resource_id)
