# clinic_scheduling/crud.py
"""Persistence for scheduling data.

Every function here either fully succeeds or raises a ``SchedulingError``.
Driver failures (lock timeouts, lost connections, pool exhaustion) are rolled
back and surface as ``DependencyUnavailableError``.
"""
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from . import models
from .config import get_settings
from .core.timewindow import TimeWindow, day_window, utcnow
from .exceptions import (
    DependencyUnavailableError, InvalidBookingError, NotFoundError,
    SchedulingError, SlotConflictError,
)

logger = logging.getLogger(__name__)


def _unavailable(db: Session, action: str, exc: Exception) -> DependencyUnavailableError:
    """Roll back and log a driver failure; the caller raises the returned error."""
    db.rollback()
    logger.error(f"Database error while {action}: {exc}")
    return DependencyUnavailableError(f"Database unavailable while {action}")


def _commit(db: Session, action: str):
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Integrity error while {action}: {e}")
        raise InvalidBookingError(f"Could not complete {action} due to a data constraint")
    except SQLAlchemyError as e:
        raise _unavailable(db, action, e)


def _overlapping(start_column, end_column, window: TimeWindow):
    """SQL form of ``TimeWindow.overlaps`` for a [start, end) column pair."""
    return and_(start_column < window.end, end_column > window.start)


def _get_or_raise(db: Session, model, object_id: int, label: str, for_update: bool = False):
    try:
        query = db.query(model).filter(model.id == object_id)
        if for_update:
            query = query.with_for_update()
        obj = query.one_or_none()
    except SQLAlchemyError as e:
        raise _unavailable(db, f"loading {label} {object_id}", e)
    if obj is None:
        raise NotFoundError(f"{label.capitalize()} {object_id} not found", resource_id=object_id)
    return obj


# ==================== REFERENCE DATA ====================

def get_branch(db: Session, branch_id: int) -> models.Branch:
    return _get_or_raise(db, models.Branch, branch_id, "branch")


def get_doctor(db: Session, doctor_id: int) -> models.Doctor:
    return _get_or_raise(db, models.Doctor, doctor_id, "doctor")


def get_room(db: Session, room_id: int) -> models.Room:
    return _get_or_raise(db, models.Room, room_id, "room")


def get_patient(db: Session, patient_id: int) -> models.Patient:
    return _get_or_raise(db, models.Patient, patient_id, "patient")


def list_doctors_with_shifts_in_branch(db: Session, branch_id: int, specialization_id: Optional[int] = None) -> List[models.Doctor]:
    """Doctors holding at least one shift in a room of the branch, ordered by id."""
    try:
        query = (
            db.query(models.Doctor)
            .join(models.DoctorShift, models.DoctorShift.doctor_id == models.Doctor.id)
            .join(models.Room, models.Room.id == models.DoctorShift.room_id)
            .filter(models.Room.branch_id == branch_id)
        )
        if specialization_id is not None:
            query = query.filter(models.Doctor.specialization_id == specialization_id)
        return query.distinct().order_by(models.Doctor.id).all()
    except SQLAlchemyError as e:
        raise _unavailable(db, f"listing doctors for branch {branch_id}", e)


# ==================== SHIFTS ====================

def list_shifts_for_doctor_on_date(db: Session, doctor_id: int, target_date: date, branch_id: Optional[int] = None) -> List[models.DoctorShift]:
    """Shifts of the doctor that may produce an instance on ``target_date``.

    Recurring shifts are returned whenever their first occurrence starts
    before the end of the day; callers expand them. One-off shifts must
    intersect the day (or the evening before, for shifts crossing midnight).
    """
    day = day_window(target_date, get_settings().tz)
    try:
        query = db.query(models.DoctorShift).filter(
            models.DoctorShift.doctor_id == doctor_id,
            models.DoctorShift.start_time < day.end,
        )
        if branch_id is not None:
            query = query.join(models.Room, models.Room.id == models.DoctorShift.room_id).filter(models.Room.branch_id == branch_id)
        shifts = query.order_by(models.DoctorShift.start_time, models.DoctorShift.id).all()
    except SQLAlchemyError as e:
        raise _unavailable(db, f"listing shifts for doctor {doctor_id}", e)
    return [s for s in shifts if s.recurrence or s.end_time > day.start - timedelta(days=1)]


def list_shifts(
    db: Session,
    branch_id: Optional[int] = None,
    doctor_id: Optional[int] = None,
    room_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[models.DoctorShift]:
    try:
        query = db.query(models.DoctorShift)
        if branch_id is not None:
            query = query.join(models.Room, models.Room.id == models.DoctorShift.room_id).filter(models.Room.branch_id == branch_id)
        if doctor_id is not None:
            query = query.filter(models.DoctorShift.doctor_id == doctor_id)
        if room_id is not None:
            query = query.filter(models.DoctorShift.room_id == room_id)
        if end is not None:
            query = query.filter(models.DoctorShift.start_time < end)
        shifts = query.order_by(models.DoctorShift.start_time, models.DoctorShift.id).all()
    except SQLAlchemyError as e:
        raise _unavailable(db, "listing shifts", e)
    if start is not None:
        # recurring shifts keep producing instances after their first end_time
        shifts = [s for s in shifts if s.recurrence or s.end_time > start]
    return shifts


def get_shift(db: Session, shift_id: int) -> models.DoctorShift:
    return _get_or_raise(db, models.DoctorShift, shift_id, "shift")


def add_shift(db: Session, fields: Dict[str, Any]) -> models.DoctorShift:
    """Stage a new shift; the caller commits through ``commit``."""
    shift = models.DoctorShift(**fields)
    db.add(shift)
    try:
        db.flush()
    except SQLAlchemyError as e:
        raise _unavailable(db, "creating shift", e)
    return shift


def delete_shift(db: Session, shift: models.DoctorShift):
    shift_id = shift.id
    db.delete(shift)
    _commit(db, f"deleting shift {shift_id}")
    logger.info(f"Deleted shift {shift_id}")


def commit(db: Session, action: str):
    """Commit staged changes, rolling back on failure."""
    _commit(db, action)


def get_attendance(db: Session, shift_id: int, occurrence_date: date) -> Optional[models.ShiftAttendance]:
    try:
        return (
            db.query(models.ShiftAttendance)
            .filter(
                models.ShiftAttendance.shift_id == shift_id,
                models.ShiftAttendance.occurrence_date == occurrence_date,
            )
            .one_or_none()
        )
    except SQLAlchemyError as e:
        raise _unavailable(db, f"loading attendance of shift {shift_id}", e)


def add_attendance(db: Session, shift_id: int, occurrence_date: date) -> models.ShiftAttendance:
    """Stage an attendance row; the caller commits through ``commit``."""
    record = models.ShiftAttendance(shift_id=shift_id, occurrence_date=occurrence_date)
    db.add(record)
    return record


# ==================== APPOINTMENTS ====================

def get_appointment(db: Session, appointment_id: int, for_update: bool = False) -> models.Appointment:
    return _get_or_raise(db, models.Appointment, appointment_id, "appointment", for_update=for_update)


def list_active_appointments(
    db: Session,
    window: TimeWindow,
    doctor_id: Optional[int] = None,
    room_id: Optional[int] = None,
    branch_id: Optional[int] = None,
) -> List[models.Appointment]:
    """ACTIVE appointments of the doctor and/or room intersecting ``window``."""
    try:
        query = db.query(models.Appointment).filter(
            models.Appointment.status.in_(list(models.ACTIVE_STATUSES)),
            _overlapping(models.Appointment.start_time, models.Appointment.end_time, window),
        )
        if doctor_id is not None:
            query = query.filter(models.Appointment.doctor_id == doctor_id)
        if room_id is not None:
            query = query.filter(models.Appointment.room_id == room_id)
        if branch_id is not None:
            query = query.filter(models.Appointment.branch_id == branch_id)
        return query.order_by(models.Appointment.start_time, models.Appointment.id).all()
    except SQLAlchemyError as e:
        raise _unavailable(db, "listing active appointments", e)


def list_pending_unassigned(db: Session, branch_id: int, window: TimeWindow) -> List[models.Appointment]:
    """SCHEDULED appointments with no doctor that lie fully inside ``window``."""
    try:
        return (
            db.query(models.Appointment)
            .filter(
                models.Appointment.branch_id == branch_id,
                models.Appointment.doctor_id.is_(None),
                models.Appointment.status == models.AppointmentStatus.SCHEDULED,
                models.Appointment.start_time >= window.start,
                models.Appointment.end_time <= window.end,
            )
            .order_by(models.Appointment.start_time, models.Appointment.id)
            .all()
        )
    except SQLAlchemyError as e:
        raise _unavailable(db, f"listing pending appointments for branch {branch_id}", e)


def list_appointments(
    db: Session,
    skip: int = 0,
    limit: int = 20,
    branch_id: Optional[int] = None,
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status: Optional[models.AppointmentStatus] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Tuple[List[models.Appointment], int]:
    try:
        query = db.query(models.Appointment)
        if branch_id is not None:
            query = query.filter(models.Appointment.branch_id == branch_id)
        if doctor_id is not None:
            query = query.filter(models.Appointment.doctor_id == doctor_id)
        if patient_id is not None:
            query = query.filter(models.Appointment.patient_id == patient_id)
        if status is not None:
            query = query.filter(models.Appointment.status == status)
        if start is not None:
            query = query.filter(models.Appointment.end_time > start)
        if end is not None:
            query = query.filter(models.Appointment.start_time < end)
        total = query.count()
        items = query.order_by(models.Appointment.start_time, models.Appointment.id).offset(skip).limit(limit).all()
        return items, total
    except SQLAlchemyError as e:
        raise _unavailable(db, "listing appointments", e)


def _lock_resources(db: Session, doctor_id: Optional[int], room_id: Optional[int]):
    # Always doctor first, then room, so concurrent bookings lock in one order
    if doctor_id is not None:
        _get_or_raise(db, models.Doctor, doctor_id, "doctor", for_update=True)
    if room_id is not None:
        _get_or_raise(db, models.Room, room_id, "room", for_update=True)


def _check_free(db: Session, window: TimeWindow, doctor_id: Optional[int], room_id: Optional[int]):
    if doctor_id is not None:
        clash = list_active_appointments(db, window, doctor_id=doctor_id)
        if clash:
            raise SlotConflictError(
                f"Doctor {doctor_id} already has appointment {clash[0].id} overlapping "
                f"{window.start.isoformat()} - {window.end.isoformat()}",
                resource_id=clash[0].id,
            )
    if room_id is not None:
        clash = list_active_appointments(db, window, room_id=room_id)
        if clash:
            raise SlotConflictError(
                f"Room {room_id} already has appointment {clash[0].id} overlapping "
                f"{window.start.isoformat()} - {window.end.isoformat()}",
                resource_id=clash[0].id,
            )


def insert_appointments(db: Session, rows: List[Dict[str, Any]], now: Optional[datetime] = None) -> List[models.Appointment]:
    """Insert appointments in one transaction, atomically with the overlap check.

    The doctor and room rows are locked ``FOR UPDATE`` before the check, so
    two transactions booking the same resource serialize. SQLite has no row
    locks; there every transaction already holds the write lock (see
    ``database.build_engine``). Rows are flushed one by one, so a series
    conflicting with itself is rejected too. Any failure rolls back the whole
    batch.
    """
    now = now or utcnow()
    created = []
    try:
        for fields in rows:
            window = TimeWindow(fields["start_time"], fields["end_time"])
            _lock_resources(db, fields.get("doctor_id"), fields.get("room_id"))
            _check_free(db, window, fields.get("doctor_id"), fields.get("room_id"))

            appointment = models.Appointment(status=models.AppointmentStatus.SCHEDULED, created_at=now, **fields)
            db.add(appointment)
            db.flush()
            db.add(models.AppointmentStatusLog(
                appointment_id=appointment.id,
                old_status=None,
                new_status=models.AppointmentStatus.SCHEDULED,
                reason="created",
                changed_by=fields.get("created_by"),
                created_at=now,
            ))
            created.append(appointment)
        db.flush()
    except SchedulingError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        raise _unavailable(db, "creating appointment", e)

    _commit(db, "creating appointment")
    for appointment in created:
        db.refresh(appointment)
        logger.info(f"Created appointment {appointment.id} for patient {appointment.patient_id}")
    return created


def insert_appointment(db: Session, fields: Dict[str, Any], now: Optional[datetime] = None) -> models.Appointment:
    return insert_appointments(db, [fields], now=now)[0]


def assign_doctor(db: Session, appointment: models.Appointment, doctor_id: int, room_id: Optional[int]) -> bool:
    """Stage ``appointment`` onto a doctor (and room) if both are free.

    Returns False, leaving the appointment untouched, when either resource
    is busy during the appointment window.
    """
    window = TimeWindow(appointment.start_time, appointment.end_time)
    _lock_resources(db, doctor_id, room_id)
    try:
        _check_free(db, window, doctor_id, room_id)
    except SlotConflictError:
        return False
    appointment.doctor_id = doctor_id
    if room_id is not None:
        appointment.room_id = room_id
    try:
        db.flush()
    except SQLAlchemyError as e:
        raise _unavailable(db, f"assigning appointment {appointment.id}", e)
    return True


def update_appointment_status(
    db: Session,
    appointment: models.Appointment,
    new_status: models.AppointmentStatus,
    reason: Optional[str] = None,
    changed_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.Appointment:
    """Apply a validated status change, its workflow timestamp and its log row."""
    now = now or utcnow()
    old_status = appointment.status
    appointment.status = new_status
    appointment.updated_at = now
    if new_status == models.AppointmentStatus.CONFIRMED:
        appointment.confirmed_at = now
    elif new_status == models.AppointmentStatus.IN_PROGRESS:
        appointment.started_at = now
    elif new_status == models.AppointmentStatus.COMPLETED:
        appointment.completed_at = now
    elif new_status == models.AppointmentStatus.CANCELLED:
        appointment.cancelled_at = now
        appointment.cancellation_reason = reason

    db.add(models.AppointmentStatusLog(
        appointment_id=appointment.id,
        old_status=old_status,
        new_status=new_status,
        reason=reason,
        changed_by=changed_by,
        created_at=now,
    ))
    _commit(db, f"updating appointment {appointment.id}")
    db.refresh(appointment)
    logger.info(f"Appointment {appointment.id} moved from {old_status.value} to {new_status.value}")
    return appointment


def list_status_logs(db: Session, appointment_id: int) -> List[models.AppointmentStatusLog]:
    get_appointment(db, appointment_id)
    try:
        return (
            db.query(models.AppointmentStatusLog)
            .filter(models.AppointmentStatusLog.appointment_id == appointment_id)
            .order_by(models.AppointmentStatusLog.id.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise _unavailable(db, f"loading status history of appointment {appointment_id}", e)


def find_overlapping_active_appointments(db: Session) -> List[Tuple[str, int, models.Appointment, models.Appointment]]:
    """Pairs of ACTIVE appointments sharing a doctor or a room with overlapping windows."""
    first = aliased(models.Appointment)
    second = aliased(models.Appointment)
    both_active = and_(
        first.status.in_(list(models.ACTIVE_STATUSES)),
        second.status.in_(list(models.ACTIVE_STATUSES)),
        first.id < second.id,
        first.start_time < second.end_time,
        second.start_time < first.end_time,
    )
    issues = []
    try:
        for resource, column in (("doctor", "doctor_id"), ("room", "room_id")):
            pairs = (
                db.query(first, second)
                .join(second, getattr(first, column) == getattr(second, column))
                .filter(both_active, getattr(first, column).isnot(None))
                .order_by(first.id, second.id)
                .all()
            )
            issues.extend((resource, getattr(a, column), a, b) for a, b in pairs)
    except SQLAlchemyError as e:
        raise _unavailable(db, "checking appointment consistency", e)
    return issues


# ==================== UNAVAILABLE PERIODS ====================

def list_blackouts(db: Session, branch_id: int, window: TimeWindow, doctor_id: Optional[int] = None) -> List[models.UnavailablePeriod]:
    """Branch-wide blackouts plus those of ``doctor_id`` intersecting ``window``."""
    try:
        query = db.query(models.UnavailablePeriod).filter(
            models.UnavailablePeriod.branch_id == branch_id,
            _overlapping(models.UnavailablePeriod.start_datetime, models.UnavailablePeriod.end_datetime, window),
        )
        if doctor_id is None:
            query = query.filter(models.UnavailablePeriod.doctor_id.is_(None))
        else:
            query = query.filter(or_(
                models.UnavailablePeriod.doctor_id.is_(None),
                models.UnavailablePeriod.doctor_id == doctor_id,
            ))
        return query.order_by(models.UnavailablePeriod.start_datetime).all()
    except SQLAlchemyError as e:
        raise _unavailable(db, f"listing unavailable periods for branch {branch_id}", e)


def get_unavailable_periods(
    db: Session,
    branch_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[models.UnavailablePeriod]:
    try:
        query = db.query(models.UnavailablePeriod)
        if branch_id is not None:
            query = query.filter(models.UnavailablePeriod.branch_id == branch_id)
        if start is not None:
            query = query.filter(models.UnavailablePeriod.end_datetime > start)
        if end is not None:
            query = query.filter(models.UnavailablePeriod.start_datetime < end)
        return query.order_by(models.UnavailablePeriod.start_datetime).all()
    except SQLAlchemyError as e:
        raise _unavailable(db, "listing unavailable periods", e)


def create_unavailable_period(db: Session, fields: Dict[str, Any], created_by: Optional[int] = None) -> models.UnavailablePeriod:
    window = TimeWindow(fields["start_datetime"], fields["end_datetime"])
    get_branch(db, fields["branch_id"])
    if fields.get("doctor_id") is not None:
        get_doctor(db, fields["doctor_id"])
    period = models.UnavailablePeriod(
        **{**fields, "start_datetime": window.start, "end_datetime": window.end},
        created_by=created_by,
        created_at=utcnow(),
    )
    db.add(period)
    _commit(db, "creating unavailable period")
    db.refresh(period)
    logger.info(f"Created unavailable period {period.id} for branch {period.branch_id}")
    return period


def delete_unavailable_period(db: Session, period_id: int):
    period = _get_or_raise(db, models.UnavailablePeriod, period_id, "unavailable period")
    db.delete(period)
    _commit(db, f"deleting unavailable period {period_id}")
