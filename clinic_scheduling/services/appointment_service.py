# clinic_scheduling/services/appointment_service.py
"""Booking and status transitions of appointments.

Status graph::

    SCHEDULED -> CONFIRMED -> IN_PROGRESS -> COMPLETED
        |            |            |
        +------------+------------+--> CANCELLED (reason required)
        +------------+------------+--> NO_SHOW   (only once the window ended)

SCHEDULED may also go straight to IN_PROGRESS. COMPLETED, CANCELLED and
NO_SHOW are terminal.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..config import get_settings
from ..core.timewindow import TimeWindow, as_utc, utcnow
from ..exceptions import InvalidBookingError, InvalidTransitionError, OutsideShiftError, SchedulingError, SlotConflictError
from ..models import AppointmentStatus
from . import records
from .slot_service import active_blackouts, covering_shifts, first_free_shift

logger = structlog.get_logger(__name__)

TRANSITIONS = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED, AppointmentStatus.IN_PROGRESS,
        AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.IN_PROGRESS, AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.IN_PROGRESS: frozenset({
        AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in TRANSITIONS[current]


def _booking_fields(booking: schemas.AppointmentBase, window: TimeWindow, created_by: Optional[int]) -> Dict[str, Any]:
    return {
        "patient_id": booking.patient_id,
        "branch_id": booking.branch_id,
        "doctor_id": booking.doctor_id,
        "room_id": booking.room_id,
        "start_time": window.start,
        "end_time": window.end,
        "appointment_type": booking.appointment_type,
        "source": booking.source,
        "notes": booking.notes,
        "created_by": created_by,
    }


def _check_references(db: Session, fields: Dict[str, Any]):
    crud.get_branch(db, fields["branch_id"])
    crud.get_patient(db, fields["patient_id"])
    if fields["doctor_id"] is not None:
        crud.get_doctor(db, fields["doctor_id"])
    if fields["room_id"] is not None:
        room = crud.get_room(db, fields["room_id"])
        if room.branch_id != fields["branch_id"]:
            raise InvalidBookingError(
                f"Room {room.id} does not belong to branch {fields['branch_id']}",
                resource_id=room.id,
            )


def _place_on_shift(db: Session, fields: Dict[str, Any], window: TimeWindow, is_staff_override: bool):
    """Check the doctor works the whole window; fill the room from the shift."""
    doctor_id = fields["doctor_id"]
    covering = covering_shifts(db, doctor_id, window, branch_id=fields["branch_id"])
    if not is_staff_override:
        if not covering:
            raise OutsideShiftError(
                f"Doctor {doctor_id} has no shift in branch {fields['branch_id']} covering "
                f"{window.start.isoformat()} - {window.end.isoformat()}",
                resource_id=doctor_id,
            )
        if active_blackouts(db, fields["branch_id"], window, doctor_id=doctor_id):
            raise OutsideShiftError(
                f"Doctor {doctor_id} is unavailable during {window.start.isoformat()} - {window.end.isoformat()}",
                resource_id=doctor_id,
            )
    if fields["room_id"] is None and covering:
        # Overlapping shifts staff several rooms; the slot list offers the first free one
        shift = first_free_shift(db, covering, window) or covering[0]
        fields["room_id"] = shift.room_id


def _validated_fields(
    db: Session,
    booking: schemas.AppointmentBase,
    window: TimeWindow,
    created_by: Optional[int],
    is_staff_override: bool,
    now: datetime,
) -> Dict[str, Any]:
    if window.start < now:
        raise InvalidBookingError(f"Cannot book an appointment in the past ({window.start.isoformat()})")
    fields = _booking_fields(booking, window, created_by)
    _check_references(db, fields)
    if fields["doctor_id"] is not None:
        _place_on_shift(db, fields, window, is_staff_override)
    return fields


def _auto_assign(db: Session, fields: Dict[str, Any], window: TimeWindow, now: datetime) -> models.Appointment:
    """Book with the first doctor (by id) on shift and free for the window."""
    branch_id = fields["branch_id"]
    for doctor in crud.list_doctors_with_shifts_in_branch(db, branch_id):
        covering = covering_shifts(db, doctor.id, window, branch_id=branch_id)
        if not covering or active_blackouts(db, branch_id, window, doctor_id=doctor.id):
            continue
        shift = first_free_shift(db, covering, window) or covering[0]
        candidate = {**fields, "doctor_id": doctor.id, "room_id": fields["room_id"] or shift.room_id}
        try:
            return crud.insert_appointment(db, candidate, now=now)
        except SlotConflictError:
            logger.debug("auto_assign_doctor_busy", doctor_id=doctor.id, start=window.start.isoformat())
    raise SlotConflictError(
        f"No doctor in branch {branch_id} is free during {window.start.isoformat()} - {window.end.isoformat()}"
    )


def book_appointment(
    db: Session,
    booking: schemas.AppointmentCreate,
    created_by: Optional[int] = None,
    is_staff_override: bool = False,
    now: Optional[datetime] = None,
) -> models.Appointment:
    """Book a SCHEDULED appointment.

    Without ``is_staff_override`` the doctor must hold a shift in the branch
    covering the whole window and must not be blacked out. The override only
    skips those two checks; the doctor and room overlap check runs in every
    case, inside the insert transaction.

    Raises InvalidBookingError, NotFoundError, OutsideShiftError or
    SlotConflictError.
    """
    now = as_utc(now) if now else utcnow()
    window = TimeWindow(booking.start_time, booking.end_time)
    fields = _validated_fields(db, booking, window, created_by, is_staff_override, now)
    log = logger.bind(patient_id=fields["patient_id"], branch_id=fields["branch_id"], start=window.start.isoformat())

    if fields["doctor_id"] is None and getattr(booking, "auto_assign", False):
        appointment = _auto_assign(db, fields, window, now)
    else:
        try:
            appointment = crud.insert_appointment(db, fields, now=now)
        except SlotConflictError as e:
            log.info("booking_conflict", doctor_id=fields["doctor_id"], room_id=fields["room_id"], reason=e.message)
            raise

    log.info(
        "appointment_booked",
        appointment_id=appointment.id,
        doctor_id=appointment.doctor_id,
        room_id=appointment.room_id,
        staff_override=is_staff_override,
    )
    return appointment


def book_recurring_appointments(
    db: Session,
    booking: schemas.AppointmentCreate,
    occurrences: int,
    interval_weeks: int = 1,
    created_by: Optional[int] = None,
    is_staff_override: bool = False,
    now: Optional[datetime] = None,
) -> List[models.Appointment]:
    """Book ``occurrences`` copies of the window, ``interval_weeks`` apart.

    The series is all-or-nothing: if any occurrence fails validation or
    conflicts, nothing is booked. Occurrences keep the clinic wall-clock
    time across DST changes.
    """
    if occurrences < 1:
        raise InvalidBookingError("A recurring booking needs at least one occurrence")
    if interval_weeks < 1:
        raise InvalidBookingError("Recurring interval must be at least one week")
    if booking.doctor_id is None and getattr(booking, "auto_assign", False):
        raise InvalidBookingError("Recurring bookings cannot auto-assign a doctor")

    now = as_utc(now) if now else utcnow()
    tz = get_settings().tz
    first = TimeWindow(booking.start_time, booking.end_time)
    local_start = first.start.astimezone(tz)

    rows = []
    for k in range(occurrences):
        start = local_start + timedelta(weeks=k * interval_weeks)
        window = TimeWindow(start, start + first.duration)
        rows.append(_validated_fields(db, booking, window, created_by, is_staff_override, now))

    appointments = crud.insert_appointments(db, rows, now=now)
    logger.info(
        "recurring_appointments_booked",
        patient_id=booking.patient_id,
        doctor_id=booking.doctor_id,
        appointment_ids=[a.id for a in appointments],
    )
    return appointments


def _check_status_change(appointment: models.Appointment, target: AppointmentStatus, reason: Optional[str], now: datetime):
    current = appointment.status
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot change appointment {appointment.id} from {current.value} to {target.value}",
            resource_id=appointment.id,
        )
    if target == AppointmentStatus.CANCELLED and not (reason and reason.strip()):
        raise InvalidBookingError("A cancellation reason is required", resource_id=appointment.id)
    if target == AppointmentStatus.NO_SHOW and now < as_utc(appointment.end_time):
        raise InvalidBookingError(
            f"Appointment {appointment.id} cannot be marked no-show before it ends "
            f"({as_utc(appointment.end_time).isoformat()})",
            resource_id=appointment.id,
        )


def change_appointment_status(
    db: Session,
    appointment_id: int,
    target,
    reason: Optional[str] = None,
    changed_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.Appointment:
    """Move an appointment along the status graph.

    Checks run in this order: the appointment exists (NotFoundError), the
    edge exists (InvalidTransitionError, also for retries of a transition
    that already happened), then the edge's precondition
    (InvalidBookingError). Completing a visit stages its medical record and
    draft invoice in the same transaction.
    """
    now = as_utc(now) if now else utcnow()
    try:
        target = AppointmentStatus.normalize(target)
    except ValueError:
        raise InvalidBookingError(f"Unknown appointment status '{target}'")

    try:
        appointment = crud.get_appointment(db, appointment_id, for_update=True)
        current = appointment.status
        _check_status_change(appointment, target, reason, now)
        if target == AppointmentStatus.COMPLETED:
            records.create_visit_records(db, appointment, now)
    except SchedulingError:
        # Release the row lock taken above
        db.rollback()
        raise

    appointment = crud.update_appointment_status(
        db, appointment, target,
        reason=reason.strip() if reason else None,
        changed_by=changed_by,
        now=now,
    )
    logger.info(
        "appointment_status_changed",
        appointment_id=appointment_id,
        old_status=current.value,
        new_status=target.value,
        changed_by=changed_by,
    )
    return appointment


def cancel_appointment(
    db: Session,
    appointment_id: int,
    reason: str,
    changed_by: Optional[int] = None,
    now: Optional[datetime] = None,
) -> models.Appointment:
    return change_appointment_status(
        db, appointment_id, AppointmentStatus.CANCELLED,
        reason=reason, changed_by=changed_by, now=now,
    )


def get_status_history(db: Session, appointment_id: int) -> List[models.AppointmentStatusLog]:
    """Status changes of the appointment, newest first, starting from its creation."""
    return crud.list_status_logs(db, appointment_id)
