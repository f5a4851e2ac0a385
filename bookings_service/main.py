import logging
import os
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, status, Request, APIRouter
from fastapi.responses import JSONResponse

from sqlalchemy import case, func
from sqlalchemy.orm import Session
from .rate_limiter import booking_rate_limiter

from common.cache import bump_schedule_version, get_cached_json, get_schedule_version, schedule_key, set_cached_json


from . import models, schemas
from .auth import STAFF_ROLES, get_current_user_claims, require_roles
from .availability import AvailabilityEngine, ensure_bookable, ensure_future, ensure_interval
from .database import DATABASE_URL, Base, engine, get_db
from .errors import AvailabilityError, BookingConflict
from .locks import make_resource_locks
from .resource_store import SqlResourceStore

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

LOCK_BACKEND = os.getenv("LOCK_BACKEND")
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
REDIS_URL = os.getenv("REDIS_URL")
SCHEDULE_CACHE_TTL_SECONDS = 30

# Create tables
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Bookings Service", version="1.0.0")
router_v1 = APIRouter(prefix="/api/v1")

SERVICE_NAME = "bookings"

app.state.availability = AvailabilityEngine(
    resources=SqlResourceStore(),
    locks=make_resource_locks(LOCK_BACKEND, DATABASE_URL, REDIS_URL),
    lock_timeout=LOCK_TIMEOUT_SECONDS,
)


def get_availability_engine(request: Request) -> AvailabilityEngine:
    """FastAPI dependency returning the engine built at startup."""
    return request.app.state.availability


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "service": SERVICE_NAME,
            "path": request.url.path,
            "method": request.method,
            "status_code": exc.status_code,
            "detail": exc.detail,
        },
    )


@app.exception_handler(AvailabilityError)
async def availability_exception_handler(request: Request, exc: AvailabilityError):
    content = {
        "service": SERVICE_NAME,
        "path": request.url.path,
        "method": request.method,
        "status_code": exc.status_code,
        "detail": exc.detail,
    }
    if isinstance(exc, BookingConflict):
        content["conflicts"] = [
            schemas.ConflictRead.model_validate(b).model_dump(mode="json")
            for b in exc.conflicts
        ]
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "service": SERVICE_NAME,
            "path": request.url.path,
            "method": request.method,
            "status_code": 500,
            "detail": "Internal server error",
        },
    )


@app.get("/")
def root():
    """
    Health-check endpoint for the Bookings service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": "bookings", "status": "running"}


staff_only = require_roles(*STAFF_ROLES)

availability_roles = require_roles(
    "admin",
    "staff",
    "faculty",
    "student",
    "service_account",  # used by the Resources service for status checks
)

# Roles that cannot own bookings
NON_BOOKING_ROLES = ("service_account",)


def get_booking_or_404(db: Session, booking_id: int) -> models.Booking:
    booking = db.query(models.Booking).filter(models.Booking.id == booking_id).first()
    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Booking not found",
        )
    return booking


def ensure_can_manage(booking: models.Booking, claims: Dict, action: str) -> None:
    """
    Allow staff roles on any booking and the requester on their own.

    Raises
    ------
    HTTPException
        403 if the caller is neither staff nor the booking owner.
    """
    if claims["role"] in STAFF_ROLES or booking.user_id == claims["user_id"]:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=f"Not allowed to {action} this booking",
    )


def invalidate_schedule(resource_id: int) -> None:
    bump_schedule_version(resource_id)


# ---------- Check resource availability ----------


@router_v1.get("/bookings/availability", response_model=schemas.AvailabilityRead)
def check_availability(
    resource_id: int = Query(..., ge=1),
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    db: Session = Depends(get_db),
    availability: AvailabilityEngine = Depends(get_availability_engine),
    _: Dict = Depends(availability_roles),
):
    """
    Check whether a resource is free during a given time range.

    Parameters
    ----------
    resource_id : int
        Resource to check.
    start_time : datetime
        Start of the desired interval (ISO 8601).
    end_time : datetime
        End of the desired interval (ISO 8601).

    Returns
    -------
    dict
        JSON object with:
        - 'resource_id' : int
        - 'available' : bool
        - 'conflicts' : list of overlapping active bookings

    Raises
    ------
    InvalidInterval
        If the time range is invalid (HTTP 400).
    ResourceNotFound
        If the resource does not exist (HTTP 404).
    """
    conflicts = availability.check_conflicts(
        db,
        resource_id,
        schemas.to_naive_utc(start_time),
        schemas.to_naive_utc(end_time),
    )
    return {
        "resource_id": resource_id,
        "available": not conflicts,
        "conflicts": [schemas.ConflictRead.model_validate(b) for b in conflicts],
    }


@router_v1.get("/bookings/resources/{resource_id}/schedule", response_model=schemas.ScheduleRead)
def resource_schedule(
    resource_id: int,
    window_start: datetime = Query(...),
    window_end: datetime = Query(...),
    db: Session = Depends(get_db),
    availability: AvailabilityEngine = Depends(get_availability_engine),
    _: Dict = Depends(availability_roles),
):
    """
    List the busy slots of a resource inside a window, ascending by start.

    Slots are not merged; touching bookings are reported separately.
    Results are cached per window until the next booking write on the resource.
    """
    window_start = schemas.to_naive_utc(window_start)
    window_end = schemas.to_naive_utc(window_end)
    ensure_interval(window_start, window_end)

    # version is read before the query so a concurrent write orphans this entry
    version = get_schedule_version(resource_id)
    cache_key = schedule_key(resource_id, version, window_start, window_end)
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    slots = availability.get_availability(db, resource_id, window_start, window_end)
    data = schemas.ScheduleRead(
        resource_id=resource_id,
        window_start=window_start,
        window_end=window_end,
        slots=[schemas.BusySlot.model_validate(s) for s in slots],
    ).model_dump(mode="json")
    set_cached_json(cache_key, data, ttl_seconds=SCHEDULE_CACHE_TTL_SECONDS)
    return data


# ---------- Create booking ----------


@router_v1.post(
    "/bookings",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(booking_rate_limiter)],
)
def create_booking(
    booking_in: schemas.BookingCreate,
    db: Session = Depends(get_db),
    availability: AvailabilityEngine = Depends(get_availability_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Request a booking for the authenticated user.

    Behavior
    --------
    - Validates the time range and that it starts in the future.
    - Rejects resources that are not available or have no free units.
    - Rejects intervals overlapping pending or confirmed bookings (HTTP 409,
      with the conflicting bookings listed).
    - New bookings start in 'pending' status.

    Returns
    -------
    BookingRead
        The newly created booking.
    """
    if claims["role"] in NON_BOOKING_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This role cannot create bookings",
        )

    ensure_interval(booking_in.start_time, booking_in.end_time)
    ensure_future(booking_in.start_time)

    resource = availability.get_resource(db, booking_in.resource_id)
    ensure_bookable(resource)

    booking = availability.create_booking(
        db,
        resource_id=booking_in.resource_id,
        user_id=claims["user_id"],
        start=booking_in.start_time,
        end=booking_in.end_time,
        purpose=booking_in.purpose,
    )
    invalidate_schedule(booking.resource_id)
    return booking


# ---------- My bookings (current user) ----------


@router_v1.get("/bookings/me", response_model=List[schemas.BookingRead])
def list_my_bookings(
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    List bookings that belong to the authenticated user, newest start first.
    """
    return (
        db.query(models.Booking)
        .filter(models.Booking.user_id == claims["user_id"])
        .order_by(models.Booking.start_time.desc())
        .all()
    )


# ---------- Admin / staff: list all bookings ----------


@router_v1.get("/bookings", response_model=List[schemas.BookingRead])
def list_all_bookings(
    resource_id: Optional[int] = Query(default=None, ge=1),
    user_id: Optional[int] = Query(default=None, ge=1),
    status_filter: Optional[models.BookingStatus] = Query(default=None, alias="status"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    _: Dict = Depends(staff_only),
):
    """
    Admin/Staff: view all bookings with optional filters.

    Parameters
    ----------
    resource_id : Optional[int]
        Only bookings of this resource.
    user_id : Optional[int]
        Only bookings of this requester.
    status : Optional[BookingStatus]
        Only bookings in this status.
    start_date : Optional[datetime]
        Only bookings starting at or after this instant.
    end_date : Optional[datetime]
        Only bookings ending at or before this instant.

    Returns
    -------
    List[BookingRead]
        Matching bookings ordered by start_time ascending.
    """
    q = db.query(models.Booking)

    if resource_id is not None:
        q = q.filter(models.Booking.resource_id == resource_id)

    if user_id is not None:
        q = q.filter(models.Booking.user_id == user_id)

    if status_filter is not None:
        q = q.filter(models.Booking.status == status_filter)

    if start_date is not None:
        q = q.filter(models.Booking.start_time >= schemas.to_naive_utc(start_date))

    if end_date is not None:
        q = q.filter(models.Booking.end_time <= schemas.to_naive_utc(end_date))

    return q.order_by(models.Booking.start_time.asc()).all()


@router_v1.get("/bookings/{booking_id}", response_model=schemas.BookingRead)
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    claims: Dict = Depends(get_current_user_claims),
):
    """Fetch one booking; visible to its owner and to staff roles."""
    booking = get_booking_or_404(db, booking_id)
    ensure_can_manage(booking, claims, "view")
    return booking


# ---------- Update booking (time/purpose) ----------


@router_v1.put(
    "/bookings/{booking_id}",
    response_model=schemas.BookingRead,
    dependencies=[Depends(booking_rate_limiter)],
)
def update_booking(
    booking_id: int,
    update_data: schemas.BookingUpdate,
    db: Session = Depends(get_db),
    availability: AvailabilityEngine = Depends(get_availability_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Reschedule a booking or change its purpose.

    Access
    ------
    - Owner of the booking.
    - Admin and staff for any booking.

    Behavior
    --------
    - Applies only the fields provided in BookingUpdate.
    - Re-validates the final time range; a new start must lie in the future.
    - Re-checks conflicts against other active bookings, ignoring this one.

    Raises
    ------
    HTTPException
        If the booking is not found or the caller is not allowed.
    InvalidInterval, BookingConflict, InvalidTransition
        Mapped to HTTP 400, 409 and 409.
    """
    booking = get_booking_or_404(db, booking_id)
    ensure_can_manage(booking, claims, "update")

    if update_data.start_time is not None and update_data.start_time != booking.start_time:
        ensure_future(update_data.start_time)

    booking = availability.reschedule(
        db,
        booking,
        start=update_data.start_time,
        end=update_data.end_time,
        purpose=update_data.purpose,
    )
    invalidate_schedule(booking.resource_id)
    return booking


# ---------- Status transitions ----------


@router_v1.patch(
    "/bookings/{booking_id}/status",
    response_model=schemas.BookingRead,
    dependencies=[Depends(booking_rate_limiter)],
)
def update_booking_status(
    booking_id: int,
    status_in: schemas.BookingStatusUpdate,
    db: Session = Depends(get_db),
    availability: AvailabilityEngine = Depends(get_availability_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Move a booking through its lifecycle.

    Access
    ------
    - Admin and staff: any legal transition.
    - Owner: cancellation only.

    Raises
    ------
    HTTPException
        403 if the caller may not apply this transition, 404 if the booking
        does not exist.
    InvalidTransition
        If the transition is not allowed from the current status (HTTP 409).
    """
    booking = get_booking_or_404(db, booking_id)

    is_staff = claims["role"] in STAFF_ROLES
    is_owner_cancel = (
        booking.user_id == claims["user_id"]
        and status_in.status == models.BookingStatus.CANCELLED
    )
    if not (is_staff or is_owner_cancel):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to change the status of this booking",
        )

    booking = availability.transition(db, booking, status_in.status)
    invalidate_schedule(booking.resource_id)
    return booking


# ---------- Delete booking (hard) ----------


@router_v1.delete(
    "/bookings/{booking_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(booking_rate_limiter)],
)
def delete_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    availability: AvailabilityEngine = Depends(get_availability_engine),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Permanently delete a booking. Owner, admin, or staff only.
    """
    booking = get_booking_or_404(db, booking_id)
    ensure_can_manage(booking, claims, "delete")

    resource_id = booking.resource_id
    availability.delete_booking(db, booking)
    invalidate_schedule(resource_id)
    return


# ---------- Admin report ----------


@router_v1.get("/admin/reports/bookings", response_model=schemas.BookingReport)
def booking_report(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    _: Dict = Depends(staff_only),
):
    """
    Summarize bookings by status and by resource.

    Parameters
    ----------
    start_date, end_date : Optional[datetime]
        Restrict to bookings created within this window (inclusive).

    Returns
    -------
    BookingReport
        Totals per status (zeros included) and per-resource booking counts,
        busiest resource first.
    """
    Booking = models.Booking
    filters = []
    if start_date is not None:
        filters.append(Booking.created_at >= schemas.to_naive_utc(start_date))
    if end_date is not None:
        filters.append(Booking.created_at <= schemas.to_naive_utc(end_date))

    by_status = {s.value: 0 for s in models.BookingStatus}
    status_rows = (
        db.query(Booking.status, func.count(Booking.id))
        .filter(*filters)
        .group_by(Booking.status)
        .all()
    )
    for booking_status, count in status_rows:
        by_status[booking_status.value] = count

    completed = func.sum(case((Booking.status == models.BookingStatus.COMPLETED, 1), else_=0))
    resource_rows = (
        db.query(Booking.resource_id, func.count(Booking.id), completed)
        .filter(*filters)
        .group_by(Booking.resource_id)
        .order_by(func.count(Booking.id).desc(), Booking.resource_id.asc())
        .all()
    )

    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "resources": [
            {
                "resource_id": resource_id,
                "total_bookings": total,
                "completed_bookings": int(done or 0),
            }
            for resource_id, total, done in resource_rows
        ],
        "start_date": start_date,
        "end_date": end_date,
    }


app.include_router(router_v1)
