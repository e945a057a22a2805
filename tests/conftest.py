# tests/conftest.py
import os
import tempfile

# Settings are cached on first import; pin them before the package loads
os.environ["CLINIC_TIMEZONE"] = "UTC"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOG_JSON"] = "false"
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(tempfile.gettempdir(), 'clinic_scheduling_pytest.db')}"

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.orm import sessionmaker

from clinic_scheduling import models
from clinic_scheduling.database import build_engine, create_tables

UTC = timezone.utc

# Bookings in the scenario tests happen the day before the clinic day
NOW = datetime(2025, 6, 9, 8, 0, tzinfo=UTC)


def at(hour: int, minute: int = 0, day: int = 10) -> datetime:
    """An instant on June ``day`` 2025 (UTC, which is also clinic time in tests)."""
    return datetime(2025, 6, day, hour, minute, tzinfo=UTC)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'clinic.db'}")
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


def seed_clinic(session_factory, clinic_day: datetime) -> SimpleNamespace:
    """Two branches, two doctors and three rooms.

    Dr. House works room R1 on ``clinic_day`` 09:00-12:00 (one-off).
    Dr. Wilson works room R2 every Tuesday 13:00-15:00, starting the
    Tuesday on or before ``clinic_day``.
    """
    session = session_factory()
    try:
        central = models.Branch(name="Central", address="1 Main St")
        north = models.Branch(name="North", address="9 Hill Rd")
        cardiology = models.Specialization(name="Cardiology")
        dermatology = models.Specialization(name="Dermatology")
        session.add_all([central, north, cardiology, dermatology])
        session.flush()

        house = models.Doctor(full_name="Gregory House", branch_id=central.id, specialization_id=cardiology.id)
        wilson = models.Doctor(full_name="James Wilson", branch_id=central.id, specialization_id=dermatology.id)
        r1 = models.Room(name="Exam 1", code="C-R1", branch_id=central.id)
        r2 = models.Room(name="Exam 2", code="C-R2", branch_id=central.id)
        r3 = models.Room(name="North Exam", code="N-R1", branch_id=north.id)
        patient = models.Patient(full_name="Lisa Cuddy", phone_number="+15550100")
        other_patient = models.Patient(full_name="Eric Foreman", phone_number="+15550101")
        session.add_all([house, wilson, r1, r2, r3, patient, other_patient])
        session.flush()

        day_start = clinic_day.replace(hour=0, minute=0, second=0, microsecond=0)
        tuesday = day_start - timedelta(days=(day_start.weekday() - 1) % 7)
        house_shift = models.DoctorShift(
            doctor_id=house.id, room_id=r1.id,
            start_time=day_start.replace(hour=9), end_time=day_start.replace(hour=12),
        )
        wilson_shift = models.DoctorShift(
            doctor_id=wilson.id, room_id=r2.id,
            start_time=tuesday.replace(hour=13), end_time=tuesday.replace(hour=15),
            recurrence={"freq": "WEEKLY", "interval": 1, "weekdays": [1]},
        )
        session.add_all([house_shift, wilson_shift])
        session.commit()

        return SimpleNamespace(
            branch_id=central.id,
            other_branch_id=north.id,
            cardiology_id=cardiology.id,
            dermatology_id=dermatology.id,
            house_id=house.id,
            wilson_id=wilson.id,
            r1_id=r1.id,
            r2_id=r2.id,
            north_room_id=r3.id,
            patient_id=patient.id,
            other_patient_id=other_patient.id,
            house_shift_id=house_shift.id,
            wilson_shift_id=wilson_shift.id,
            day=clinic_day.date(),
        )
    finally:
        session.close()


@pytest.fixture
def clinic(session_factory):
    """Seeded clinic whose working day is Tuesday 2025-06-10."""
    return seed_clinic(session_factory, at(0))
