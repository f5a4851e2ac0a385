import os
import sys
from datetime import datetime, timedelta, timezone

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from bookings_service.main import app, get_availability_engine, invalidate_schedule
from bookings_service.database import Base, SessionLocal, engine
from bookings_service.auth import SECRET_KEY, ALGORITHM
from bookings_service.availability import AvailabilityEngine
from bookings_service.locks import LocalResourceLocks
from bookings_service.resource_store import InMemoryResourceStore, ResourceInfo
from common import cache

client = TestClient(app)

resource_store = InMemoryResourceStore(
    {
        1: ResourceInfo(id=1, name="Physics Lab", capacity=1, available_count=1, status="available"),
        2: ResourceInfo(id=2, name="Seminar Room", capacity=30, available_count=30, status="available"),
        3: ResourceInfo(id=3, name="3D Printer", capacity=1, available_count=1, status="maintenance"),
        4: ResourceInfo(id=4, name="Laptop Cart", capacity=10, available_count=0, status="available"),
    }
)
availability = AvailabilityEngine(resource_store, LocalResourceLocks(), lock_timeout=1.0)
app.dependency_overrides[get_availability_engine] = lambda: availability


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def make_token(user_id: int, username: str, role: str) -> str:
    payload = {
        "sub": username,
        "role": role,
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def auth(user_id: int, username: str, role: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, username, role)}"}


def slot(start_hours: float, end_hours: float, resource_id: int = 1, **extra) -> dict:
    now = datetime.now(timezone.utc)
    body = {
        "resource_id": resource_id,
        "start_time": (now + timedelta(hours=start_hours)).isoformat(),
        "end_time": (now + timedelta(hours=end_hours)).isoformat(),
    }
    body.update(extra)
    return body


STUDENT = auth(1, "student1", "student")
OTHER_STUDENT = auth(2, "student2", "student")
STAFF = auth(50, "staff1", "staff")
ADMIN = auth(999, "admin1", "admin")


def test_student_can_create_pending_booking():
    res = client.post("/api/v1/bookings", json=slot(1, 2, purpose="Lab session"), headers=STUDENT)
    assert res.status_code == 201
    data = res.json()
    assert data["user_id"] == 1
    assert data["resource_id"] == 1
    assert data["status"] == "pending"
    assert data["purpose"] == "Lab session"


def test_cannot_create_overlapping_booking_and_conflicts_are_listed():
    res1 = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT)
    assert res1.status_code == 201
    first_id = res1.json()["id"]

    res2 = client.post("/api/v1/bookings", json=slot(1.5, 2.5), headers=OTHER_STUDENT)
    assert res2.status_code == 409
    body = res2.json()
    assert "conflicts" in body["detail"].lower()
    assert [c["id"] for c in body["conflicts"]] == [first_id]


def test_touching_booking_is_accepted():
    now = datetime.now(timezone.utc).replace(microsecond=0)
    first = {
        "resource_id": 1,
        "start_time": (now + timedelta(hours=1)).isoformat(),
        "end_time": (now + timedelta(hours=2)).isoformat(),
    }
    second = {
        "resource_id": 1,
        "start_time": (now + timedelta(hours=2)).isoformat(),
        "end_time": (now + timedelta(hours=3)).isoformat(),
    }
    assert client.post("/api/v1/bookings", json=first, headers=STUDENT).status_code == 201
    assert client.post("/api/v1/bookings", json=second, headers=STUDENT).status_code == 201


def test_same_interval_on_other_resource_is_accepted():
    assert client.post("/api/v1/bookings", json=slot(1, 2, resource_id=1), headers=STUDENT).status_code == 201
    assert client.post("/api/v1/bookings", json=slot(1, 2, resource_id=2), headers=STUDENT).status_code == 201


def test_create_booking_with_invalid_time_fails():
    res = client.post("/api/v1/bookings", json=slot(2, 1), headers=STUDENT)
    assert res.status_code == 400
    assert "end_time must be after start_time" in res.json()["detail"]


def test_create_booking_in_the_past_fails():
    res = client.post("/api/v1/bookings", json=slot(-2, -1), headers=STUDENT)
    assert res.status_code == 400
    assert "future" in res.json()["detail"]


def test_create_booking_for_unknown_resource_returns_404():
    res = client.post("/api/v1/bookings", json=slot(1, 2, resource_id=77), headers=STUDENT)
    assert res.status_code == 404
    assert res.json()["detail"] == "Resource not found"


def test_resource_in_maintenance_or_without_units_is_rejected():
    res_maint = client.post("/api/v1/bookings", json=slot(1, 2, resource_id=3), headers=STUDENT)
    assert res_maint.status_code == 400
    assert "not available" in res_maint.json()["detail"]

    res_full = client.post("/api/v1/bookings", json=slot(1, 2, resource_id=4), headers=STUDENT)
    assert res_full.status_code == 400
    assert "fully booked" in res_full.json()["detail"]


def test_service_account_cannot_create_bookings():
    res = client.post("/api/v1/bookings", json=slot(1, 2), headers=auth(0, "svc", "service_account"))
    assert res.status_code == 403


def test_list_my_bookings_filters_by_user():
    assert client.post("/api/v1/bookings", json=slot(1, 2, resource_id=1), headers=STUDENT).status_code == 201
    assert client.post("/api/v1/bookings", json=slot(1, 2, resource_id=2), headers=OTHER_STUDENT).status_code == 201

    res_me = client.get("/api/v1/bookings/me", headers=STUDENT)
    assert res_me.status_code == 200
    bookings_me = res_me.json()
    assert len(bookings_me) == 1
    assert bookings_me[0]["user_id"] == 1


def test_staff_can_list_and_filter_all_bookings():
    client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT)
    res2 = client.post("/api/v1/bookings", json=slot(3, 4), headers=OTHER_STUDENT)
    client.patch(f"/api/v1/bookings/{res2.json()['id']}/status", json={"status": "confirmed"}, headers=STAFF)

    res = client.get("/api/v1/bookings", headers=STAFF)
    assert res.status_code == 200
    all_bookings = res.json()
    assert len(all_bookings) == 2
    assert all_bookings[0]["start_time"] < all_bookings[1]["start_time"]

    res_confirmed = client.get("/api/v1/bookings", params={"status": "confirmed"}, headers=ADMIN)
    assert [b["user_id"] for b in res_confirmed.json()] == [2]


def test_student_cannot_list_all_bookings():
    res = client.get("/api/v1/bookings", headers=STUDENT)
    assert res.status_code == 403


def test_get_booking_visible_to_owner_and_staff_only():
    booking_id = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()["id"]

    assert client.get(f"/api/v1/bookings/{booking_id}", headers=STUDENT).status_code == 200
    assert client.get(f"/api/v1/bookings/{booking_id}", headers=STAFF).status_code == 200
    assert client.get(f"/api/v1/bookings/{booking_id}", headers=OTHER_STUDENT).status_code == 403
    assert client.get("/api/v1/bookings/9999", headers=STAFF).status_code == 404


def test_owner_can_cancel_and_slot_becomes_free():
    body = slot(1, 2)
    booking_id = client.post("/api/v1/bookings", json=body, headers=STUDENT).json()["id"]

    res_cancel = client.patch(
        f"/api/v1/bookings/{booking_id}/status", json={"status": "cancelled"}, headers=STUDENT
    )
    assert res_cancel.status_code == 200
    assert res_cancel.json()["status"] == "cancelled"

    # overlapping booking is now allowed since the previous one is cancelled
    res_new = client.post("/api/v1/bookings", json=body, headers=OTHER_STUDENT)
    assert res_new.status_code == 201


def test_owner_cannot_confirm_own_booking():
    booking_id = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()["id"]
    res = client.patch(
        f"/api/v1/bookings/{booking_id}/status", json={"status": "confirmed"}, headers=STUDENT
    )
    assert res.status_code == 403


def test_staff_moves_booking_through_lifecycle():
    booking_id = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()["id"]
    url = f"/api/v1/bookings/{booking_id}/status"

    assert client.patch(url, json={"status": "confirmed"}, headers=STAFF).json()["status"] == "confirmed"
    assert client.patch(url, json={"status": "completed"}, headers=STAFF).json()["status"] == "completed"

    res_reopen = client.patch(url, json={"status": "pending"}, headers=ADMIN)
    assert res_reopen.status_code == 409
    assert "completed" in res_reopen.json()["detail"]


def test_pending_cannot_jump_to_completed():
    booking_id = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()["id"]
    res = client.patch(
        f"/api/v1/bookings/{booking_id}/status", json={"status": "completed"}, headers=STAFF
    )
    assert res.status_code == 409


def test_update_booking_enforces_conflicts():
    booking1 = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()
    booking2 = client.post("/api/v1/bookings", json=slot(3, 4), headers=STUDENT).json()

    update_body = slot(1.5, 2.5)
    del update_body["resource_id"]
    res_update = client.put(f"/api/v1/bookings/{booking2['id']}", json=update_body, headers=STUDENT)
    assert res_update.status_code == 409
    assert [c["id"] for c in res_update.json()["conflicts"]] == [booking1["id"]]


def test_shifting_own_booking_does_not_conflict_with_itself():
    booking = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()

    update_body = slot(1.5, 2.5, purpose="Moved by 30 minutes")
    del update_body["resource_id"]
    res = client.put(f"/api/v1/bookings/{booking['id']}", json=update_body, headers=STUDENT)
    assert res.status_code == 200
    assert res.json()["purpose"] == "Moved by 30 minutes"
    assert res.json()["start_time"] > booking["start_time"]


def test_update_with_only_end_time_is_validated_against_existing_start():
    booking = client.post("/api/v1/bookings", json=slot(2, 3), headers=STUDENT).json()
    res = client.put(
        f"/api/v1/bookings/{booking['id']}",
        json={"end_time": booking["start_time"]},
        headers=STUDENT,
    )
    assert res.status_code == 400


def test_cancelled_booking_cannot_be_rescheduled():
    booking_id = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()["id"]
    client.patch(f"/api/v1/bookings/{booking_id}/status", json={"status": "cancelled"}, headers=STUDENT)

    body = slot(5, 6)
    del body["resource_id"]
    res = client.put(f"/api/v1/bookings/{booking_id}", json=body, headers=STUDENT)
    assert res.status_code == 409


def test_regular_user_cannot_modify_others_booking():
    booking_id = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()["id"]

    res_update = client.put(
        f"/api/v1/bookings/{booking_id}", json={"purpose": "mine now"}, headers=OTHER_STUDENT
    )
    assert res_update.status_code == 403

    res_cancel = client.patch(
        f"/api/v1/bookings/{booking_id}/status", json={"status": "cancelled"}, headers=OTHER_STUDENT
    )
    assert res_cancel.status_code == 403

    res_delete = client.delete(f"/api/v1/bookings/{booking_id}", headers=OTHER_STUDENT)
    assert res_delete.status_code == 403


def test_owner_can_delete_booking():
    booking_id = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()["id"]

    res_delete = client.delete(f"/api/v1/bookings/{booking_id}", headers=STUDENT)
    assert res_delete.status_code == 204
    assert client.get(f"/api/v1/bookings/{booking_id}", headers=STAFF).status_code == 404


def test_check_availability_endpoint():
    booking = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()

    busy = slot(1.5, 1.75)
    res_busy = client.get("/api/v1/bookings/availability", params=busy, headers=STUDENT)
    assert res_busy.status_code == 200
    busy_info = res_busy.json()
    assert busy_info["resource_id"] == 1
    assert busy_info["available"] is False
    assert [c["id"] for c in busy_info["conflicts"]] == [booking["id"]]

    res_free = client.get("/api/v1/bookings/availability", params=slot(3, 4), headers=STUDENT)
    assert res_free.status_code == 200
    assert res_free.json()["available"] is True
    assert res_free.json()["conflicts"] == []


def test_availability_requires_auth():
    res_no_auth = client.get("/api/v1/bookings/availability", params=slot(1, 2))
    assert res_no_auth.status_code in (401, 403)


def test_availability_invalid_time_range_returns_400():
    res = client.get("/api/v1/bookings/availability", params=slot(2, 1), headers=STUDENT)
    assert res.status_code == 400
    assert "end_time must be after start_time" in res.json()["detail"]


def test_availability_for_unknown_resource_returns_404():
    res = client.get("/api/v1/bookings/availability", params=slot(1, 2, resource_id=77), headers=STUDENT)
    assert res.status_code == 404


def test_schedule_lists_active_slots_in_order():
    later = client.post("/api/v1/bookings", json=slot(5, 6), headers=STUDENT).json()
    earlier = client.post("/api/v1/bookings", json=slot(1, 2), headers=OTHER_STUDENT).json()
    cancelled = client.post("/api/v1/bookings", json=slot(3, 4), headers=STUDENT).json()
    client.patch(f"/api/v1/bookings/{cancelled['id']}/status", json={"status": "cancelled"}, headers=STUDENT)

    now = datetime.now(timezone.utc)
    res = client.get(
        "/api/v1/bookings/resources/1/schedule",
        params={
            "window_start": now.isoformat(),
            "window_end": (now + timedelta(hours=24)).isoformat(),
        },
        headers=STUDENT,
    )
    assert res.status_code == 200
    slots = res.json()["slots"]
    assert [s["start_time"] for s in slots] == [earlier["start_time"], later["start_time"]]
    assert all(s["status"] == "pending" for s in slots)


def test_admin_report_counts_by_status_and_resource():
    b1 = client.post("/api/v1/bookings", json=slot(1, 2, resource_id=1), headers=STUDENT).json()
    client.post("/api/v1/bookings", json=slot(3, 4, resource_id=1), headers=STUDENT)
    client.post("/api/v1/bookings", json=slot(1, 2, resource_id=2), headers=OTHER_STUDENT)
    client.patch(f"/api/v1/bookings/{b1['id']}/status", json={"status": "confirmed"}, headers=STAFF)
    client.patch(f"/api/v1/bookings/{b1['id']}/status", json={"status": "completed"}, headers=STAFF)

    res = client.get("/api/v1/admin/reports/bookings", headers=ADMIN)
    assert res.status_code == 200
    report = res.json()
    assert report["total"] == 3
    assert report["by_status"] == {"pending": 2, "confirmed": 0, "cancelled": 0, "completed": 1}
    assert report["resources"][0] == {"resource_id": 1, "total_bookings": 2, "completed_bookings": 1}

    assert client.get("/api/v1/admin/reports/bookings", headers=STUDENT).status_code == 403


class FakeRedis:
    """Just enough of the redis client API for the cache helpers."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value

    def incr(self, key):
        self.data[key] = str(int(self.data.get(key) or 0) + 1)
        return int(self.data[key])

    def scan_iter(self, pattern):
        prefix = pattern.rstrip("*")
        return [k for k in list(self.data) if k.startswith(prefix)]

    def delete(self, key):
        self.data.pop(key, None)


def schedule_window() -> dict:
    now = datetime.now(timezone.utc)
    return {
        "window_start": now.isoformat(),
        "window_end": (now + timedelta(hours=24)).isoformat(),
    }


def test_cached_schedule_is_refreshed_after_booking_writes(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(cache, "get_redis_client", lambda: fake)
    window = schedule_window()

    assert client.get("/api/v1/bookings/resources/1/schedule", params=window, headers=STUDENT).json()["slots"] == []

    booking = client.post("/api/v1/bookings", json=slot(1, 2), headers=STUDENT).json()
    slots = client.get("/api/v1/bookings/resources/1/schedule", params=window, headers=STUDENT).json()["slots"]
    assert [s["start_time"] for s in slots] == [booking["start_time"]]

    client.patch(f"/api/v1/bookings/{booking['id']}/status", json={"status": "cancelled"}, headers=STUDENT)
    assert client.get("/api/v1/bookings/resources/1/schedule", params=window, headers=STUDENT).json()["slots"] == []


def test_schedule_read_overtaken_by_a_write_is_not_served_later(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr(cache, "get_redis_client", lambda: fake)
    window = schedule_window()

    compute = availability.get_availability
    calls = []

    def read_then_concurrent_write(db, resource_id, window_start, window_end):
        slots = compute(db, resource_id, window_start, window_end)
        calls.append(resource_id)
        if len(calls) == 1:
            # a booking commits and invalidates while this read is in flight
            session = SessionLocal()
            try:
                start = window_start + timedelta(hours=3)
                availability.create_booking(session, 1, user_id=2, start=start, end=start + timedelta(hours=1))
            finally:
                session.close()
            invalidate_schedule(1)
        return slots

    monkeypatch.setattr(availability, "get_availability", read_then_concurrent_write)

    first = client.get("/api/v1/bookings/resources/1/schedule", params=window, headers=STUDENT)
    assert first.json()["slots"] == []

    second = client.get("/api/v1/bookings/resources/1/schedule", params=window, headers=STUDENT)
    assert len(second.json()["slots"]) == 1
    assert len(calls) == 2
