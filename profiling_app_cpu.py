import cProfile
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from jose import jwt

from bookings_service.main import app, get_availability_engine
from bookings_service.database import Base, engine
from bookings_service.auth import SECRET_KEY, ALGORITHM
from bookings_service.availability import AvailabilityEngine
from bookings_service.locks import LocalResourceLocks
from bookings_service.resource_store import InMemoryResourceStore, ResourceInfo

RESOURCE_COUNT = 5

store = InMemoryResourceStore()
for rid in range(1, RESOURCE_COUNT + 1):
    store.add(ResourceInfo(id=rid, name=f"Room {rid}", capacity=1, available_count=1, status="available"))
availability = AvailabilityEngine(store, LocalResourceLocks())
app.dependency_overrides[get_availability_engine] = lambda: availability

client = TestClient(app)


def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def token_for(user_id: int) -> str:
    payload = {
        "sub": f"user{user_id}",
        "role": "student",
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def scenario_bookings():
    """
    Fill each resource with back-to-back hourly bookings, then retry every
    slot once so the conflict path runs as often as the insert path.
    """
    base = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0) + timedelta(days=1)
    for attempt in range(2):
        for i in range(200):
            headers = {"Authorization": f"Bearer {token_for(i % 40 + 1)}"}
            start = base + timedelta(hours=i // RESOURCE_COUNT)
            r = client.post(
                "/api/v1/bookings",
                json={
                    "resource_id": i % RESOURCE_COUNT + 1,
                    "start_time": start.isoformat(),
                    "end_time": (start + timedelta(hours=1)).isoformat(),
                },
                headers=headers,
            )
            expected = 201 if attempt == 0 else 409
            if r.status_code != expected:
                raise RuntimeError(f"Unexpected status on create: {r.status_code}")


def main():
    reset_db()
    scenario_bookings()


if __name__ == "__main__":
    # run cProfile and sort by cumulative time
    cProfile.run("main()", sort="cumtime")
