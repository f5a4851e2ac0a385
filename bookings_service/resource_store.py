from dataclasses import dataclass
from typing import Dict, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, select
from sqlalchemy.orm import Session

# Mirror of the columns the bookings flow reads from the resources
# service's table. Kept on its own MetaData so the bookings service never
# creates or drops it.
resource_metadata = MetaData()

resources_table = Table(
    "resources",
    resource_metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255)),
    Column("capacity", Integer),
    Column("available_count", Integer),
    Column("status", String(50)),
)


@dataclass(frozen=True)
class ResourceInfo:
    """Snapshot of the resource attributes that gate a booking."""
    id: int
    name: str
    capacity: int
    available_count: int
    status: str


class SqlResourceStore:
    """Look up resources in the shared ``resources`` table."""

    def get(self, db: Session, resource_id: int) -> Optional[ResourceInfo]:
        row = db.execute(
            select(resources_table).where(resources_table.c.id == resource_id)
        ).mappings().first()
        if row is None:
            return None
        return ResourceInfo(
            id=row["id"],
            name=row["name"],
            capacity=row["capacity"],
            available_count=row["available_count"],
            status=row["status"],
        )


class InMemoryResourceStore:
    """Dictionary-backed store, for local runs without the resources service."""

    def __init__(self, resources: Optional[Dict[int, ResourceInfo]] = None):
        self._resources: Dict[int, ResourceInfo] = dict(resources or {})

    def add(self, resource: ResourceInfo) -> None:
        self._resources[resource.id] = resource

    def get(self, db: Optional[Session], resource_id: int) -> Optional[ResourceInfo]:
        return self._resources.get(resource_id)
