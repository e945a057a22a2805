# tests/test_api.py
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from clinic_scheduling import models
from clinic_scheduling.config import get_settings
from clinic_scheduling.database import build_engine, get_db
from clinic_scheduling.main import app
from clinic_scheduling.security import create_access_token

from conftest import seed_clinic

UTC = timezone.utc


def auth(role: str = "admin", user_id: int = 1) -> dict:
    token = create_access_token({"sub": str(user_id), "role": role})
    return {"Authorization": f"Bearer {token}"}


def parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@pytest.fixture
def clinic_day():
    """A week from now, so bookings made through the API are in the future."""
    return (datetime.now(UTC) + timedelta(days=7)).replace(hour=0, minute=0, second=0, microsecond=0)


@pytest.fixture
def api_clinic(session_factory, clinic_day):
    return seed_clinic(session_factory, clinic_day)


@pytest.fixture
async def async_client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def appointment_body(clinic, clinic_day, hour, minute=0, length=30, **overrides):
    start = clinic_day.replace(hour=hour, minute=minute)
    body = {
        "patient_id": clinic.patient_id,
        "branch_id": clinic.branch_id,
        "doctor_id": clinic.house_id,
        "start_time": start.isoformat(),
        "end_time": (start + timedelta(minutes=length)).isoformat(),
        "appointment_type": "consultation",
        "notes": "Chest pain",
    }
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_health(async_client: AsyncClient):
    response = await async_client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_requires_bearer_token(async_client: AsyncClient, api_clinic):
    response = await async_client.get("/api/v1/appointments/1")
    assert response.status_code == 401
    response = await async_client.get("/api/v1/appointments/1", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_available_slots(async_client: AsyncClient, api_clinic, clinic_day):
    response = await async_client.get(
        "/api/v1/appointments/available-slots",
        params={"branch_id": api_clinic.branch_id, "date": clinic_day.date().isoformat(), "doctor_id": api_clinic.house_id},
        headers=auth("patient", 50),
    )
    assert response.status_code == 200
    slots = response.json()
    assert len(slots) == 6
    assert parse(slots[0]["start_time"]) == clinic_day.replace(hour=9)
    assert parse(slots[-1]["end_time"]) == clinic_day.replace(hour=12)
    assert {s["doctor_id"] for s in slots} == {api_clinic.house_id}


@pytest.mark.asyncio
async def test_available_slots_rejects_bad_duration(async_client: AsyncClient, api_clinic, clinic_day):
    response = await async_client.get(
        "/api/v1/appointments/available-slots",
        params={"branch_id": api_clinic.branch_id, "date": clinic_day.date().isoformat(), "slot_duration_minutes": 0},
        headers=auth(),
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_book_then_conflict(async_client: AsyncClient, api_clinic, clinic_day):
    response = await async_client.post("/api/v1/appointments", json=appointment_body(api_clinic, clinic_day, 9), headers=auth("patient", 50))
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "SCHEDULED"
    assert data["room_id"] == api_clinic.r1_id
    assert data["created_by"] == 50

    response = await async_client.post(
        "/api/v1/appointments",
        json=appointment_body(api_clinic, clinic_day, 9, 15, patient_id=api_clinic.other_patient_id),
        headers=auth("receptionist", 2),
    )
    assert response.status_code == 409
    assert response.json()["code"] == "slot_conflict"


@pytest.mark.asyncio
async def test_booking_outside_shift(async_client: AsyncClient, api_clinic, clinic_day):
    response = await async_client.post("/api/v1/appointments", json=appointment_body(api_clinic, clinic_day, 15), headers=auth())
    assert response.status_code == 409
    assert response.json()["code"] == "outside_shift"


@pytest.mark.asyncio
async def test_staff_override_is_staff_only(async_client: AsyncClient, api_clinic, clinic_day):
    body = appointment_body(api_clinic, clinic_day, 15, is_staff_override=True, source="walk-in", room_id=api_clinic.r1_id)
    response = await async_client.post("/api/v1/appointments", json=body, headers=auth("patient", 50))
    assert response.status_code == 403

    response = await async_client.post("/api/v1/appointments", json=body, headers=auth("receptionist", 2))
    assert response.status_code == 201
    assert response.json()["source"] == "walk-in"


@pytest.mark.asyncio
async def test_invalid_window_is_a_validation_error(async_client: AsyncClient, api_clinic, clinic_day):
    body = appointment_body(api_clinic, clinic_day, 10)
    body["end_time"] = body["start_time"]
    response = await async_client.post("/api/v1/appointments", json=body, headers=auth())
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_recurring_booking(async_client: AsyncClient, api_clinic, clinic_day):
    body = appointment_body(api_clinic, clinic_day, 16, is_staff_override=True, room_id=api_clinic.r1_id, occurrences=3, interval_weeks=2)
    response = await async_client.post("/api/v1/appointments/recurring", json=body, headers=auth("receptionist", 2))
    assert response.status_code == 201
    starts = [parse(a["start_time"]) for a in response.json()]
    assert starts == [clinic_day.replace(hour=16) + timedelta(weeks=2 * k) for k in range(3)]


@pytest.mark.asyncio
async def test_status_lifecycle(async_client: AsyncClient, api_clinic, clinic_day):
    created = await async_client.post("/api/v1/appointments", json=appointment_body(api_clinic, clinic_day, 10), headers=auth())
    appointment_id = created.json()["id"]
    url = f"/api/v1/appointments/{appointment_id}/status"

    response = await async_client.put(url, json={"status": "confirmed"}, headers=auth("patient", 50))
    assert response.status_code == 403

    response = await async_client.put(url, json={"status": "confirmed"}, headers=auth("receptionist", 2))
    assert response.status_code == 200
    assert response.json()["status"] == "CONFIRMED"

    response = await async_client.put(url, json={"status": "CONFIRMED"}, headers=auth("receptionist", 2))
    assert response.status_code == 409
    assert response.json()["code"] == "invalid_transition"

    response = await async_client.put(url, json={"status": "postponed"}, headers=auth("receptionist", 2))
    assert response.status_code == 422

    response = await async_client.put(url, json={"status": "in-progress"}, headers=auth("doctor", 3))
    assert response.json()["status"] == "IN_PROGRESS"
    response = await async_client.put(url, json={"status": "completed"}, headers=auth("doctor", 3))
    assert response.status_code == 200
    assert response.json()["completed_at"] is not None

    history = await async_client.get(f"/api/v1/appointments/{appointment_id}/status-history", headers=auth())
    assert [h["new_status"] for h in history.json()] == ["COMPLETED", "IN_PROGRESS", "CONFIRMED", "SCHEDULED"]
    assert history.json()[0]["changed_by"] == 3


@pytest.mark.asyncio
async def test_no_show_before_the_end(async_client: AsyncClient, api_clinic, clinic_day):
    created = await async_client.post("/api/v1/appointments", json=appointment_body(api_clinic, clinic_day, 11), headers=auth())
    response = await async_client.put(
        f"/api/v1/appointments/{created.json()['id']}/status", json={"status": "no-show"}, headers=auth("receptionist", 2),
    )
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_cancel(async_client: AsyncClient, api_clinic, clinic_day):
    created = await async_client.post("/api/v1/appointments", json=appointment_body(api_clinic, clinic_day, 11, 30), headers=auth())
    url = f"/api/v1/appointments/{created.json()['id']}/cancel"

    response = await async_client.post(url, json={"reason": " "}, headers=auth("patient", 50))
    assert response.status_code == 422

    response = await async_client.post(url, json={"reason": "Feeling better"}, headers=auth("patient", 50))
    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"
    assert response.json()["cancellation_reason"] == "Feeling better"

    response = await async_client.post(url, json={"reason": "Again"}, headers=auth("patient", 50))
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_missing_appointment(async_client: AsyncClient, api_clinic):
    response = await async_client.get("/api/v1/appointments/999", headers=auth())
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


@pytest.mark.asyncio
async def test_list_appointments(async_client: AsyncClient, api_clinic, clinic_day):
    for hour in (9, 10):
        await async_client.post("/api/v1/appointments", json=appointment_body(api_clinic, clinic_day, hour), headers=auth())

    response = await async_client.get("/api/v1/appointments", params={"limit": 1, "status": "scheduled"}, headers=auth("manager", 4))
    assert response.status_code == 200
    page = response.json()
    assert page["pagination"] == {"page": 1, "limit": 1, "total": 2, "total_pages": 2}
    assert parse(page["data"][0]["start_time"]) == clinic_day.replace(hour=9)

    response = await async_client.get("/api/v1/appointments", headers=auth("patient", 50))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_shift_endpoints(async_client: AsyncClient, api_clinic, clinic_day):
    body = {
        "doctor_id": api_clinic.wilson_id,
        "room_id": api_clinic.r2_id,
        "start_time": clinic_day.replace(hour=8).isoformat(),
        "end_time": clinic_day.replace(hour=10).isoformat(),
    }
    response = await async_client.post("/api/v1/shifts", json=body, headers=auth("receptionist", 2))
    assert response.status_code == 403

    response = await async_client.post("/api/v1/shifts", json=body, headers=auth("manager", 4))
    assert response.status_code == 201
    shift_id = response.json()["id"]

    listed = await async_client.get("/api/v1/shifts", params={"doctor_id": api_clinic.wilson_id}, headers=auth())
    assert shift_id in [s["id"] for s in listed.json()]

    booked = await async_client.post(
        "/api/v1/appointments", json=appointment_body(api_clinic, clinic_day, 8, doctor_id=api_clinic.wilson_id), headers=auth(),
    )
    assert booked.status_code == 201

    response = await async_client.delete(f"/api/v1/shifts/{shift_id}", headers=auth("manager", 4))
    assert response.status_code == 409
    assert response.json()["code"] == "shift_in_use"

    response = await async_client.delete(f"/api/v1/shifts/{shift_id}", params={"force": "true"}, headers=auth("manager", 4))
    assert response.status_code == 204

    kept = await async_client.get(f"/api/v1/appointments/{booked.json()['id']}", headers=auth())
    assert kept.json()["status"] == "SCHEDULED"


@pytest.mark.asyncio
async def test_unavailable_periods(async_client: AsyncClient, api_clinic, clinic_day):
    body = {
        "branch_id": api_clinic.branch_id,
        "start_datetime": clinic_day.replace(hour=9).isoformat(),
        "end_datetime": clinic_day.replace(hour=10).isoformat(),
        "reason": "Equipment maintenance",
        "reason_type": "maintenance",
    }
    response = await async_client.post("/api/v1/unavailable-periods", json=body, headers=auth("manager", 4))
    assert response.status_code == 201
    period_id = response.json()["id"]

    slots = await async_client.get(
        "/api/v1/appointments/available-slots",
        params={"branch_id": api_clinic.branch_id, "date": clinic_day.date().isoformat(), "doctor_id": api_clinic.house_id},
        headers=auth(),
    )
    assert len(slots.json()) == 4

    listed = await async_client.get(
        "/api/v1/unavailable-periods",
        params={"branch_id": api_clinic.branch_id, "start_date": clinic_day.date().isoformat()},
        headers=auth(),
    )
    assert [p["id"] for p in listed.json()] == [period_id]

    response = await async_client.delete(f"/api/v1/unavailable-periods/{period_id}", headers=auth("manager", 4))
    assert response.status_code == 204
    response = await async_client.delete(f"/api/v1/unavailable-periods/{period_id}", headers=auth("manager", 4))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_consistency_check(async_client: AsyncClient, session_factory, api_clinic, clinic_day):
    response = await async_client.get("/api/v1/health/consistency-check", headers=auth("receptionist", 2))
    assert response.status_code == 403

    response = await async_client.get("/api/v1/health/consistency-check", headers=auth())
    assert response.status_code == 200
    assert response.json()["overlapping_appointments"] == []

    # Rows written around the booking path, as a bad import would
    session = session_factory()
    try:
        for minute in (0, 15):
            start = clinic_day.replace(hour=9, minute=minute)
            session.add(models.Appointment(
                patient_id=api_clinic.patient_id, branch_id=api_clinic.branch_id, doctor_id=api_clinic.house_id,
                start_time=start, end_time=start + timedelta(minutes=30),
            ))
        session.commit()
    finally:
        session.close()

    response = await async_client.get("/api/v1/health/consistency-check", headers=auth())
    issues = response.json()["overlapping_appointments"]
    assert len(issues) == 1
    assert issues[0]["resource"] == "doctor"
    assert issues[0]["resource_id"] == api_clinic.house_id


@pytest.mark.asyncio
async def test_overlapping_shift_is_a_conflict(async_client: AsyncClient, api_clinic, clinic_day):
    body = {
        "doctor_id": api_clinic.house_id,
        "room_id": api_clinic.r2_id,
        "start_time": clinic_day.replace(hour=11).isoformat(),
        "end_time": clinic_day.replace(hour=13).isoformat(),
    }
    response = await async_client.post("/api/v1/shifts", json=body, headers=auth("manager", 4))
    assert response.status_code == 409
    assert response.json()["code"] == "shift_conflict"


@pytest.mark.asyncio
async def test_shift_attendance(async_client: AsyncClient, api_clinic):
    now = datetime.now(UTC)
    body = {
        "doctor_id": api_clinic.house_id,
        "room_id": api_clinic.r1_id,
        "start_time": (now - timedelta(hours=1)).isoformat(),
        "end_time": (now + timedelta(hours=1)).isoformat(),
    }
    created = await async_client.post("/api/v1/shifts", json=body, headers=auth("manager", 4))
    assert created.status_code == 201
    shift_id = created.json()["id"]

    response = await async_client.patch(f"/api/v1/shifts/{shift_id}/attendance", json={"type": "check-in"}, headers=auth("patient", 9))
    assert response.status_code == 403

    response = await async_client.patch(f"/api/v1/shifts/{shift_id}/attendance", json={"type": "check-in"}, headers=auth("doctor", 5))
    assert response.status_code == 200
    record = response.json()
    assert record["shift_id"] == shift_id
    assert record["checked_in_at"] is not None
    assert record["checked_out_at"] is None

    response = await async_client.patch(f"/api/v1/shifts/{shift_id}/attendance", json={"type": "CHECK_IN"}, headers=auth("doctor", 5))
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"

    response = await async_client.patch(f"/api/v1/shifts/{shift_id}/attendance", json={"type": "CHECK_OUT"}, headers=auth("doctor", 5))
    assert response.status_code == 200
    assert response.json()["checked_out_at"] is not None


@pytest.mark.asyncio
async def test_locked_database_is_unavailable(async_client: AsyncClient, engine, session_factory, api_clinic, clinic_day, monkeypatch):
    monkeypatch.setattr(get_settings(), "database_busy_timeout", 0.05)
    impatient = build_engine(engine.url.render_as_string(hide_password=False))
    impatient_sessions = sessionmaker(autocommit=False, autoflush=False, bind=impatient)

    def override_get_db():
        db = impatient_sessions()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    holder = session_factory()
    try:
        # BEGIN IMMEDIATE takes the write lock until rollback
        holder.execute(text("SELECT 1"))
        response = await async_client.post("/api/v1/appointments", json=appointment_body(api_clinic, clinic_day, 9), headers=auth())
    finally:
        holder.rollback()
        holder.close()
        impatient.dispose()
    assert response.status_code == 503
    assert response.json()["code"] == "dependency_unavailable"
