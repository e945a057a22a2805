# clinic_scheduling/services/shift_service.py
"""Doctor shift management.

Committed appointments are authoritative: shift changes never move, delete
or unassign them. A change that would leave future active appointments
outside every shift of their doctor is refused with ``ShiftInUseError``
unless the caller forces it. Shifts of one doctor never overlap, and a room
is never staffed by more shifts at once than its capacity.
"""
from bisect import bisect_left
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..config import get_settings
from ..core.timewindow import RecurrenceRule, TimeWindow, as_utc, day_window, utcnow
from ..exceptions import InvalidBookingError, SchedulingError, ShiftConflictError, ShiftInUseError
from .slot_service import active_blackouts, covering_shifts, shift_occurrences

logger = structlog.get_logger(__name__)

# How far ahead open-ended recurring shifts are searched for appointments
LOOKAHEAD = timedelta(days=366)

CHECK_IN = "CHECK_IN"
CHECK_OUT = "CHECK_OUT"


def _covers(shift: models.DoctorShift, window: TimeWindow) -> bool:
    tz = get_settings().tz
    date_from = window.start.astimezone(tz).date() - timedelta(days=1)
    date_to = window.end.astimezone(tz).date()
    return any(o.contains(window) for o in shift_occurrences(shift, date_from, date_to, tz))


def _validated_fields(db: Session, fields: Dict[str, Any]) -> Dict[str, Any]:
    crud.get_doctor(db, fields["doctor_id"])
    crud.get_room(db, fields["room_id"])
    window = TimeWindow(fields["start_time"], fields["end_time"])
    recurrence = fields.get("recurrence")
    if isinstance(recurrence, schemas.RecurrenceRuleSchema):
        recurrence = recurrence.model_dump()
    rule = RecurrenceRule.from_dict(recurrence)
    if rule is not None and rule.until is not None and rule.until < window.start.astimezone(get_settings().tz).date():
        raise InvalidBookingError("Recurrence end date is before the first shift")
    return {
        "doctor_id": fields["doctor_id"],
        "room_id": fields["room_id"],
        "start_time": window.start,
        "end_time": window.end,
        "recurrence": rule.to_dict() if rule else None,
    }


def _occurrence_horizon(shift: models.DoctorShift) -> Tuple[date, date]:
    """Clinic-local dates over which the shift's occurrences are compared."""
    tz = get_settings().tz
    first_day = as_utc(shift.start_time).astimezone(tz).date()
    rule = RecurrenceRule.from_dict(shift.recurrence)
    if rule is None:
        return first_day, as_utc(shift.end_time).astimezone(tz).date()
    if rule.until is not None:
        return first_day, rule.until
    return first_day, first_day + LOOKAHEAD


def _sorted_occurrences(shift: models.DoctorShift, date_from: date, date_to: date) -> List[TimeWindow]:
    return sorted(shift_occurrences(shift, date_from, date_to, get_settings().tz), key=lambda w: w.start)


def _hits(window: TimeWindow, occurrences: List[TimeWindow], starts: List[datetime]) -> bool:
    # Occurrences of one shift share a length, so the last one starting before window.end ends last
    i = bisect_left(starts, window.end)
    return i > 0 and occurrences[i - 1].end > window.start


def _check_conflicts(db: Session, candidate: models.DoctorShift, exclude_id: Optional[int] = None):
    """Reject a shift overlapping another shift of its doctor, or overfilling its room."""
    date_from, date_to = _occurrence_horizon(candidate)
    windows = _sorted_occurrences(candidate, date_from, date_to)
    if not windows:
        return
    horizon_end = day_window(date_to, get_settings().tz).end

    def expanded(shift):
        # The day before catches occurrences running past midnight
        occurrences = _sorted_occurrences(shift, date_from - timedelta(days=1), date_to)
        return occurrences, [o.start for o in occurrences]

    for other in crud.list_shifts(db, doctor_id=candidate.doctor_id, end=horizon_end):
        if other.id == exclude_id:
            continue
        occurrences, starts = expanded(other)
        clash = next((w for w in windows if _hits(w, occurrences, starts)), None)
        if clash is not None:
            raise ShiftConflictError(
                f"Doctor {candidate.doctor_id} already works shift {other.id} during "
                f"{clash.start.isoformat()} - {clash.end.isoformat()}",
                resource_id=other.id,
            )

    room = crud.get_room(db, candidate.room_id)
    capacity = room.capacity or 1
    sharing = [expanded(s) for s in crud.list_shifts(db, room_id=room.id, end=horizon_end) if s.id != exclude_id]
    if len(sharing) < capacity:
        return
    for window in windows:
        occupancy = sum(1 for occurrences, starts in sharing if _hits(window, occurrences, starts))
        if occupancy >= capacity:
            raise ShiftConflictError(
                f"Room {room.name} is full during {window.start.isoformat()} - {window.end.isoformat()} "
                f"(capacity {capacity}, already staffed {occupancy})",
                resource_id=room.id,
            )


def _search_window(shift: models.DoctorShift, now: datetime) -> Optional[TimeWindow]:
    rule = RecurrenceRule.from_dict(shift.recurrence)
    start = max(now, as_utc(shift.start_time))
    if rule is None:
        end = as_utc(shift.end_time)
    elif rule.until is not None:
        end = as_utc(shift.end_time) + (rule.until - as_utc(shift.start_time).date()) + timedelta(days=2)
    else:
        end = now + LOOKAHEAD
    if end <= start:
        return None
    return TimeWindow(start, end)


def _sync_pending_appointments(db: Session, shift: models.DoctorShift, now: datetime) -> int:
    """Hand doctor-less SCHEDULED appointments inside the new shift to its doctor.

    An appointment is only assigned when the doctor (and the shift room, if
    the appointment has none) is free and not blacked out for its window.
    """
    room = crud.get_room(db, shift.room_id)
    search = _search_window(shift, now)
    if search is None:
        return 0
    assigned = 0
    for appointment in crud.list_pending_unassigned(db, room.branch_id, search):
        window = TimeWindow(appointment.start_time, appointment.end_time)
        if not _covers(shift, window):
            continue
        if active_blackouts(db, room.branch_id, window, doctor_id=shift.doctor_id):
            continue
        room_id = shift.room_id if appointment.room_id is None else None
        if crud.assign_doctor(db, appointment, shift.doctor_id, room_id):
            assigned += 1
    return assigned


def _orphaned_appointments(
    db: Session,
    shift: models.DoctorShift,
    replacement: Optional[models.DoctorShift],
    now: datetime,
) -> List[models.Appointment]:
    """Future active appointments covered by ``shift`` that nothing would cover
    once ``shift`` is replaced by ``replacement`` (or removed when None)."""
    search = _search_window(shift, now)
    if search is None:
        return []
    orphaned = []
    for appointment in crud.list_active_appointments(db, search, doctor_id=shift.doctor_id):
        window = TimeWindow(appointment.start_time, appointment.end_time)
        if window.start < now or not _covers(shift, window):
            continue
        if replacement is not None and replacement.doctor_id == appointment.doctor_id and _covers(replacement, window):
            continue
        others = [i for i in covering_shifts(db, shift.doctor_id, window) if i.shift_id != shift.id]
        if not others:
            orphaned.append(appointment)
    return orphaned


def _guard_orphans(db: Session, shift: models.DoctorShift, replacement: Optional[models.DoctorShift], force: bool, now: datetime):
    orphaned = _orphaned_appointments(db, shift, replacement, now)
    if not orphaned:
        return
    ids = [a.id for a in orphaned]
    if not force:
        raise ShiftInUseError(
            f"Shift {shift.id} covers {len(ids)} upcoming appointment(s) {ids} that no other shift would cover",
            resource_id=shift.id,
        )
    logger.warning("shift_change_forced", shift_id=shift.id, uncovered_appointment_ids=ids)


def create_shift(db: Session, shift_in: schemas.ShiftCreate, now: Optional[datetime] = None) -> models.DoctorShift:
    now = as_utc(now) if now else utcnow()
    fields = _validated_fields(db, shift_in.model_dump())
    _check_conflicts(db, models.DoctorShift(**fields))
    shift = crud.add_shift(db, fields)
    assigned = _sync_pending_appointments(db, shift, now)
    crud.commit(db, "creating shift")
    db.refresh(shift)
    logger.info(
        "shift_created",
        shift_id=shift.id,
        doctor_id=shift.doctor_id,
        room_id=shift.room_id,
        recurring=shift.recurrence is not None,
        pending_assigned=assigned,
    )
    return shift


def update_shift(
    db: Session,
    shift_id: int,
    shift_update: schemas.ShiftUpdate,
    force: bool = False,
    now: Optional[datetime] = None,
) -> models.DoctorShift:
    now = as_utc(now) if now else utcnow()
    shift = crud.get_shift(db, shift_id)
    current = {
        "doctor_id": shift.doctor_id,
        "room_id": shift.room_id,
        "start_time": shift.start_time,
        "end_time": shift.end_time,
        "recurrence": shift.recurrence,
    }
    changes = shift_update.model_dump(exclude_unset=True)
    fields = _validated_fields(db, {**current, **changes})

    # Transient row, never added to the session
    replacement = models.DoctorShift(**fields)
    _check_conflicts(db, replacement, exclude_id=shift.id)
    _guard_orphans(db, shift, replacement, force, now)

    for key, value in fields.items():
        setattr(shift, key, value)
    shift.updated_at = now
    crud.commit(db, f"updating shift {shift_id}")
    db.refresh(shift)
    logger.info("shift_updated", shift_id=shift_id, changed=sorted(changes), forced=force)
    return shift


def delete_shift(db: Session, shift_id: int, force: bool = False, now: Optional[datetime] = None):
    now = as_utc(now) if now else utcnow()
    shift = crud.get_shift(db, shift_id)
    _guard_orphans(db, shift, None, force, now)
    crud.delete_shift(db, shift)
    logger.info("shift_deleted", shift_id=shift_id, forced=force)


def list_shifts(
    db: Session,
    branch_id: Optional[int] = None,
    doctor_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[models.DoctorShift]:
    return crud.list_shifts(db, branch_id=branch_id, doctor_id=doctor_id, start=start, end=end)


def _current_occurrence(shift: models.DoctorShift, now: datetime) -> Optional[TimeWindow]:
    """The occurrence running at ``now``, else the one starting on today's clinic date."""
    tz = get_settings().tz
    today = now.astimezone(tz).date()
    occurrences = shift_occurrences(shift, today - timedelta(days=1), today, tz)
    running = [o for o in occurrences if o.start <= now < o.end]
    if running:
        return running[0]
    return next((o for o in occurrences if o.start.astimezone(tz).date() == today), None)


def record_attendance(db: Session, shift_id: int, action: str, now: Optional[datetime] = None) -> models.ShiftAttendance:
    """Check the doctor in to, or out of, the current occurrence of a shift."""
    now = as_utc(now) if now else utcnow()
    try:
        record, occurrence_date = _stage_attendance(db, shift_id, action, now)
    except SchedulingError:
        db.rollback()
        raise
    crud.commit(db, f"recording attendance of shift {shift_id}")
    db.refresh(record)
    logger.info("shift_attendance_recorded", shift_id=shift_id, action=action, occurrence_date=occurrence_date.isoformat())
    return record


def _stage_attendance(db: Session, shift_id: int, action: str, now: datetime) -> Tuple[models.ShiftAttendance, date]:
    shift = crud.get_shift(db, shift_id)
    occurrence = _current_occurrence(shift, now)
    if occurrence is None:
        raise InvalidBookingError(f"Shift {shift_id} has no occurrence today", resource_id=shift_id)
    occurrence_date = occurrence.start.astimezone(get_settings().tz).date()
    record = crud.get_attendance(db, shift_id, occurrence_date)

    if action == CHECK_IN:
        if record is not None:
            raise InvalidBookingError(f"Already checked in to shift {shift_id} on {occurrence_date.isoformat()}", resource_id=shift_id)
        record = crud.add_attendance(db, shift_id, occurrence_date)
        record.checked_in_at = now
    elif action == CHECK_OUT:
        if record is None:
            raise InvalidBookingError(f"Not checked in to shift {shift_id} on {occurrence_date.isoformat()}", resource_id=shift_id)
        if record.checked_out_at is not None:
            raise InvalidBookingError(f"Already checked out of shift {shift_id} on {occurrence_date.isoformat()}", resource_id=shift_id)
        record.checked_out_at = now
    else:
        raise InvalidBookingError(f"Unknown attendance action '{action}'")
    return record, occurrence_date

