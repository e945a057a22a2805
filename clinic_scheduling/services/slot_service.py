# clinic_scheduling/services/slot_service.py
"""Bookable slots computed on demand from shifts, appointments and blackouts.

Nothing is materialized: every call expands the doctor's shifts for the
requested day and filters the slot grid against the ACTIVE appointments and
unavailable periods currently committed. The booking path reuses
``covering_shifts``, ``first_free_shift`` and ``active_blackouts`` so that a
slot offered here is accepted there.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta, tzinfo
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from .. import crud, models
from ..config import get_settings
from ..core.timewindow import RecurrenceRule, TimeWindow, day_window, expand_recurrence, utcnow, as_utc
from ..exceptions import InvalidBookingError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ShiftInstance:
    """One concrete occurrence of a (possibly recurring) doctor shift."""
    window: TimeWindow
    shift_id: int
    doctor_id: int
    room_id: int


@dataclass(frozen=True)
class AvailableSlot:
    window: TimeWindow
    doctor_id: int
    room_id: Optional[int] = None

    @property
    def start_time(self) -> datetime:
        return self.window.start

    @property
    def end_time(self) -> datetime:
        return self.window.end


def shift_occurrences(shift: models.DoctorShift, date_from: date, date_to: date, tz: tzinfo) -> List[TimeWindow]:
    """Occurrences of ``shift`` starting between the two clinic-local dates (inclusive)."""
    first = TimeWindow(shift.start_time, shift.end_time)
    rule = RecurrenceRule.from_dict(shift.recurrence)
    if rule is None:
        local_day = first.start.astimezone(tz).date()
        return [first] if date_from <= local_day <= date_to else []
    return expand_recurrence(rule, first, date_from, date_to, tz)


def _instances(db: Session, doctor_id: int, date_from: date, date_to: date, branch_id: Optional[int]) -> List[ShiftInstance]:
    tz = get_settings().tz
    instances = []
    for shift in crud.list_shifts_for_doctor_on_date(db, doctor_id, date_to, branch_id=branch_id):
        for window in shift_occurrences(shift, date_from, date_to, tz):
            instances.append(ShiftInstance(window, shift.id, shift.doctor_id, shift.room_id))
    return instances


def doctor_shift_windows(db: Session, doctor_id: int, target_date: date, branch_id: Optional[int] = None) -> List[ShiftInstance]:
    """Shift instances of the doctor on ``target_date``, clipped to that day.

    Occurrences that started the evening before and run past midnight are
    included for their part inside the day.
    """
    day = day_window(target_date, get_settings().tz)
    clipped = []
    for instance in _instances(db, doctor_id, target_date - timedelta(days=1), target_date, branch_id):
        window = instance.window.clip(day)
        if window is not None:
            clipped.append(ShiftInstance(window, instance.shift_id, instance.doctor_id, instance.room_id))
    return sorted(clipped, key=lambda i: (i.window.start, i.shift_id))


def covering_shifts(db: Session, doctor_id: int, window: TimeWindow, branch_id: Optional[int] = None) -> List[ShiftInstance]:
    """Shift instances of the doctor containing all of ``window``."""
    tz = get_settings().tz
    date_from = window.start.astimezone(tz).date() - timedelta(days=1)
    date_to = window.end.astimezone(tz).date()
    instances = _instances(db, doctor_id, date_from, date_to, branch_id)
    return sorted(
        (i for i in instances if i.window.contains(window)),
        key=lambda i: (i.window.start, i.shift_id),
    )


def first_free_shift(db: Session, instances: List[ShiftInstance], window: TimeWindow) -> Optional[ShiftInstance]:
    """First of ``instances`` whose room has no active appointment overlapping ``window``."""
    for instance in instances:
        if not crud.list_active_appointments(db, window, room_id=instance.room_id):
            return instance
    return None


def active_blackouts(db: Session, branch_id: int, window: TimeWindow, doctor_id: Optional[int] = None) -> List[TimeWindow]:
    """Unavailable periods of the branch (or of the doctor) intersecting ``window``."""
    return [
        TimeWindow(period.start_datetime, period.end_datetime)
        for period in crud.list_blackouts(db, branch_id, window, doctor_id=doctor_id)
    ]


def resolve_slot_duration(doctor: models.Doctor, slot_duration_minutes: Optional[int] = None) -> timedelta:
    if slot_duration_minutes is not None:
        minutes = slot_duration_minutes
    elif doctor.average_time:
        minutes = doctor.average_time
    else:
        minutes = get_settings().default_slot_minutes
    if minutes <= 0:
        raise InvalidBookingError(f"Slot duration must be positive, got {minutes} minutes")
    return timedelta(minutes=minutes)


def _doctor_slots(
    db: Session,
    doctor: models.Doctor,
    branch_id: int,
    target_date: date,
    slot_duration_minutes: Optional[int],
    now: datetime,
) -> List[AvailableSlot]:
    step = resolve_slot_duration(doctor, slot_duration_minutes)
    day = day_window(target_date, get_settings().tz)
    instances = doctor_shift_windows(db, doctor.id, target_date, branch_id=branch_id)

    # Overlapping shift entries must not offer the same slot twice
    candidates: Dict[Tuple[datetime, datetime], TimeWindow] = {}
    for instance in instances:
        for window in instance.window.slots(step):
            candidates.setdefault((window.start, window.end), window)
    if not candidates:
        return []

    busy = [TimeWindow(a.start_time, a.end_time) for a in crud.list_active_appointments(db, day, doctor_id=doctor.id)]
    busy += active_blackouts(db, branch_id, day, doctor_id=doctor.id)
    busy_rooms: Dict[int, List[TimeWindow]] = {}
    for room_id in {instance.room_id for instance in instances}:
        busy_rooms[room_id] = [TimeWindow(a.start_time, a.end_time) for a in crud.list_active_appointments(db, day, room_id=room_id)]

    available = []
    for window in candidates.values():
        if window.start < now:
            continue
        if any(window.overlaps(b) for b in busy):
            continue
        # Any shift covering the slot may host it; booking takes the first free room the same way
        room_id = next(
            (
                i.room_id for i in instances
                if i.window.contains(window) and not any(window.overlaps(b) for b in busy_rooms[i.room_id])
            ),
            None,
        )
        if room_id is None:
            continue
        available.append(AvailableSlot(window, doctor.id, room_id))
    return available



def compute_available_slots(
    db: Session,
    branch_id: int,
    target_date: date,
    doctor_id: Optional[int] = None,
    specialization_id: Optional[int] = None,
    slot_duration_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> List[AvailableSlot]:
    """Available slots on ``target_date`` (clinic-local) in the branch.

    With ``doctor_id`` only that doctor is considered; otherwise every doctor
    holding a shift in the branch (optionally of one specialization) and the
    slots are tagged with their doctor. Ordered by (start, doctor_id). An
    empty list means no availability.
    """
    now = as_utc(now) if now else utcnow()
    if slot_duration_minutes is not None and slot_duration_minutes <= 0:
        raise InvalidBookingError(f"Slot duration must be positive, got {slot_duration_minutes} minutes")
    crud.get_branch(db, branch_id)

    if doctor_id is not None:
        doctors = [crud.get_doctor(db, doctor_id)]
    else:
        doctors = crud.list_doctors_with_shifts_in_branch(db, branch_id, specialization_id=specialization_id)

    slots = []
    for doctor in doctors:
        slots.extend(_doctor_slots(db, doctor, branch_id, target_date, slot_duration_minutes, now))
    slots.sort(key=lambda s: (s.window.start, s.doctor_id))

    logger.debug(
        "computed_available_slots",
        branch_id=branch_id,
        doctor_id=doctor_id,
        target_date=target_date.isoformat(),
        doctors=len(doctors),
        slots=len(slots),
    )
    return slots
