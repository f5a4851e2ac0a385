import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, status, Request, APIRouter
from fastapi.responses import JSONResponse

from .circuit_breaker import bookings_circuit_breaker

from sqlalchemy.orm import Session

from common.cache import get_cached_json, set_cached_json, delete_prefix


from . import models, schemas
from .auth import make_service_account_token, require_roles
from .database import Base, engine, get_db

import httpx

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Resources Service", version="1.0.0")

router_v1 = APIRouter(prefix="/api/v1")

SERVICE_NAME = "resources"

BOOKINGS_SERVICE_URL = os.getenv(
    "BOOKINGS_SERVICE_URL",
    "http://bookings_service:8002",  # Docker internal URL
)

# How far ahead deletion looks for bookings still holding the resource
DELETE_GUARD_HORIZON = timedelta(days=3650)


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
    Health-check endpoint for the Resources service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": "resources", "status": "running"}


admin_or_staff = require_roles("admin", "staff")
admin_only = require_roles("admin")


def invalidate_resource_cache(resource_id: Optional[int] = None) -> None:
    delete_prefix("resources:")
    if resource_id is not None:
        delete_prefix(f"resource:{resource_id}")


def get_resource_or_404(db: Session, resource_id: int) -> models.Resource:
    resource = db.query(models.Resource).filter(models.Resource.id == resource_id).first()
    if not resource:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Resource not found")
    return resource


def call_bookings_service(path: str, params: Dict[str, Any]) -> Dict[str, Any]:
    """
    GET a Bookings service endpoint as the service account.

    Calls go through the bookings circuit breaker.

    Raises
    ------
    HTTPException
        503 while the circuit is open, 502 if the service cannot be reached
        or answers with a non-200 status.
    """
    if not bookings_circuit_breaker.allow_request():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Bookings service temporarily unavailable (circuit open)",
        )

    headers = {"Authorization": f"Bearer {make_service_account_token()}"}
    try:
        resp = httpx.get(
            f"{BOOKINGS_SERVICE_URL}{path}",
            params=params,
            headers=headers,
            timeout=5.0,
        )
    except httpx.RequestError:
        bookings_circuit_breaker.record_failure()
        logger.warning("Bookings service unreachable at %s", BOOKINGS_SERVICE_URL)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to contact bookings service",
        )

    if resp.status_code != 200:
        bookings_circuit_breaker.record_failure()
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Bookings service returned an error",
        )

    bookings_circuit_breaker.record_success()
    return resp.json()


# ---------- Create resource ----------


@router_v1.post("/resources", response_model=schemas.ResourceRead, status_code=status.HTTP_201_CREATED)
def create_resource(
    resource_in: schemas.ResourceCreate,
    db: Session = Depends(get_db),
    _: dict = Depends(admin_or_staff),
):
    """
    Create a new bookable resource.

    Access
    ------
    - Allowed roles: admin, staff.

    Behavior
    --------
    - capacity defaults to 1, available_count defaults to capacity.
    - New resources start in 'available' status.

    Returns
    -------
    ResourceRead
        The created resource.
    """
    resource = models.Resource(
        name=resource_in.name,
        type=resource_in.type,
        description=resource_in.description,
        location=resource_in.location,
        capacity=resource_in.capacity,
        available_count=resource_in.available_count,
        status=models.ResourceStatus.AVAILABLE,
    )
    db.add(resource)
    db.commit()
    db.refresh(resource)
    invalidate_resource_cache()
    logger.info("Created resource %s (%s)", resource.id, resource.name)
    return resource


# ---------- List / search resources ----------


@router_v1.get("/resources", response_model=List[schemas.ResourceRead])
def list_resources(
    type: Optional[str] = None,
    location: Optional[str] = None,
    status_filter: Optional[models.ResourceStatus] = Query(default=None, alias="status"),
    available: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    """
    List resources with optional filters, ordered by name.

    Parameters
    ----------
    type : Optional[str]
        Exact resource type.
    location : Optional[str]
        Substring to match in the location field (case-insensitive).
    status : Optional[ResourceStatus]
        Only resources in this status.
    available : Optional[bool]
        If true, only resources with at least one free unit.

    Returns
    -------
    List[ResourceRead]
        Matching resources.
    """
    cacheable = type is None and not location and status_filter is None and available is None
    cache_key = "resources:all"

    if cacheable:
        cached = get_cached_json(cache_key)
        if cached is not None:
            return cached

    query = db.query(models.Resource)

    if type:
        query = query.filter(models.Resource.type == type)

    if location:
        query = query.filter(models.Resource.location.ilike(f"%{location}%"))

    if status_filter is not None:
        query = query.filter(models.Resource.status == status_filter)

    if available:
        query = query.filter(models.Resource.available_count > 0)

    resources = query.order_by(models.Resource.name.asc()).all()

    if cacheable:
        data = [schemas.ResourceRead.model_validate(r).model_dump(mode="json") for r in resources]
        set_cached_json(cache_key, data, ttl_seconds=60)
        return data

    return resources


@router_v1.get("/resources/types", response_model=List[str])
def list_resource_types(db: Session = Depends(get_db)):
    """Distinct resource types, alphabetically."""
    rows = db.query(models.Resource.type).distinct().order_by(models.Resource.type).all()
    return [row[0] for row in rows]


@router_v1.get("/resources/locations", response_model=List[str])
def list_resource_locations(db: Session = Depends(get_db)):
    """Distinct non-empty resource locations, alphabetically."""
    rows = (
        db.query(models.Resource.location)
        .filter(models.Resource.location.isnot(None))
        .distinct()
        .order_by(models.Resource.location)
        .all()
    )
    return [row[0] for row in rows]


@router_v1.get("/resources/{resource_id}", response_model=schemas.ResourceRead)
def get_resource(resource_id: int, db: Session = Depends(get_db)):
    """
    Retrieve a single resource by its ID.

    Raises
    ------
    HTTPException
        If the resource does not exist.
    """
    cache_key = f"resource:{resource_id}"
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached
    resource = get_resource_or_404(db, resource_id)
    data = schemas.ResourceRead.model_validate(resource).model_dump(mode="json")
    set_cached_json(cache_key, data, ttl_seconds=300)
    return resource


# ---------- Update / delete resources ----------


@router_v1.put("/resources/{resource_id}", response_model=schemas.ResourceRead)
def update_resource(
    resource_id: int,
    update_data: schemas.ResourceUpdate,
    db: Session = Depends(get_db),
    _: dict = Depends(admin_or_staff),
):
    """
    Update an existing resource.

    Access
    ------
    - Allowed roles: admin, staff.

    Behavior
    --------
    - Applies only provided fields.
    - The resulting available_count must not exceed the resulting capacity.

    Raises
    ------
    HTTPException
        404 if the resource is not found, 400 if no fields were given or the
        counters would become inconsistent.
    """
    resource = get_resource_or_404(db, resource_id)

    changes = update_data.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No fields to update",
        )

    new_capacity = changes.get("capacity", resource.capacity)
    new_available = changes.get("available_count", resource.available_count)
    if new_capacity is None or new_available is None or new_available > new_capacity:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="available_count cannot exceed capacity",
        )

    for field, value in changes.items():
        if value is None and field in ("name", "type", "status"):
            continue
        setattr(resource, field, value)

    db.add(resource)
    db.commit()
    db.refresh(resource)
    invalidate_resource_cache(resource.id)
    return resource


@router_v1.patch("/resources/{resource_id}/availability", response_model=schemas.ResourceRead)
def adjust_available_count(
    resource_id: int,
    change: int = Query(...),
    db: Session = Depends(get_db),
    _: dict = Depends(admin_or_staff),
):
    """
    Shift available_count by ``change`` units, clamped to [0, capacity].

    Booking writes never call this; it is the manual lever for taking units
    in and out of service.
    """
    if change == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Valid change amount is required",
        )
    resource = get_resource_or_404(db, resource_id)
    resource.available_count = max(0, min(resource.capacity, resource.available_count + change))
    db.add(resource)
    db.commit()
    db.refresh(resource)
    invalidate_resource_cache(resource.id)
    return resource


@router_v1.delete("/resources/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_resource(
    resource_id: int,
    db: Session = Depends(get_db),
    _: dict = Depends(admin_only),
):
    """
    Delete a resource that no longer has active bookings.

    Access
    ------
    - Allowed roles: admin.

    Behavior
    --------
    - Asks the Bookings service for pending or confirmed bookings from now on;
      refuses the deletion if any exist.

    Raises
    ------
    HTTPException
        404 if the resource is missing, 400 if it still has active bookings,
        502/503 if the Bookings service cannot be consulted.
    """
    resource = get_resource_or_404(db, resource_id)

    now = models.utcnow()
    schedule = call_bookings_service(
        f"/api/v1/bookings/resources/{resource.id}/schedule",
        {
            "window_start": now.isoformat(),
            "window_end": (now + DELETE_GUARD_HORIZON).isoformat(),
        },
    )
    if schedule.get("slots"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot delete resource with active bookings",
        )

    db.delete(resource)
    db.commit()
    invalidate_resource_cache(resource_id)
    logger.info("Deleted resource %s", resource_id)
    return


# ---------- Resource status ----------


@router_v1.get("/resources/{resource_id}/status")
def resource_status(
    resource_id: int,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """
    Report the status of a resource, optionally for a time range.

    Behavior
    --------
    - If the resource is missing -> HTTP 404.
    - If the resource is in maintenance or unavailable -> that status.
    - If no time range is provided:
        * status = "available" (structural availability only).
    - If start_time and end_time are provided:
        * Validates that end_time > start_time.
        * Calls Bookings service `/bookings/availability`.
        * Returns:
            - "available" if the resource is free in that interval.
            - "booked" if an active booking overlaps that interval.
    """
    resource = get_resource_or_404(db, resource_id)

    if resource.status != models.ResourceStatus.AVAILABLE:
        return {"resource_id": resource.id, "status": resource.status.value}

    if start_time is None or end_time is None:
        return {"resource_id": resource.id, "status": "available"}

    start_time = schemas.to_naive_utc(start_time)
    end_time = schemas.to_naive_utc(end_time)

    if end_time <= start_time:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end_time must be after start_time",
        )

    data = call_bookings_service(
        "/api/v1/bookings/availability",
        {
            "resource_id": resource.id,
            "start_time": start_time.isoformat(),
            "end_time": end_time.isoformat(),
        },
    )
    status_str = "available" if data.get("available") else "booked"

    return {"resource_id": resource.id, "status": status_str}

app.include_router(router_v1)
