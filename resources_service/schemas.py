from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, model_validator

from .models import ResourceStatus


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ResourceBase(BaseModel):
    """
    Base schema for resource information.

    Shared fields used when creating and reading resources.
    """
    name: str = Field(..., min_length=1, max_length=255)
    type: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None)
    location: Optional[str] = Field(default=None, max_length=255)
    capacity: int = Field(default=1, ge=1)


class ResourceCreate(ResourceBase):
    """
    Schema for creating a new resource.

    ``available_count`` defaults to ``capacity`` and may not exceed it.
    """
    available_count: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_available_count(self):
        if self.available_count is None:
            self.available_count = self.capacity
        elif self.available_count > self.capacity:
            raise ValueError("available_count cannot exceed capacity")
        return self


class ResourceUpdate(BaseModel):
    """
    Schema for partial updates to a resource.

    All fields are optional and only provided values will be updated.
    The capacity bound on available_count is checked against the merged
    values in the route.
    """
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    type: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    location: Optional[str] = Field(default=None, max_length=255)
    capacity: Optional[int] = Field(default=None, ge=1)
    available_count: Optional[int] = Field(default=None, ge=0)
    status: Optional[ResourceStatus] = None


class ResourceRead(ResourceBase):
    """
    Schema returned when reading resource data.

    Extends ResourceBase with identifiers, counters and status.
    """
    id: int
    available_count: int
    status: ResourceStatus
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
