# clinic_scheduling/routers/appointments.py
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from .. import crud, schemas, security
from ..config import get_settings
from ..database import get_db
from ..limiter import limiter
from ..models import AppointmentStatus
from ..services import appointment_service, slot_service

router = APIRouter(
    tags=["Appointments"],
    responses={404: {"description": "Not found"}},
)


def _staff_override(booking: schemas.AppointmentCreate, current_user: security.Principal) -> bool:
    if booking.is_staff_override and not current_user.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only clinic staff may book outside shift hours",
        )
    return booking.is_staff_override


# Declared before /appointments/{appointment_id} so the literal path wins
@router.get("/appointments/available-slots", response_model=List[schemas.AvailableSlot])
def get_available_slots(
    branch_id: int,
    target_date: date = Query(..., alias="date"),
    doctor_id: Optional[int] = None,
    specialization_id: Optional[int] = None,
    slot_duration_minutes: Optional[int] = Query(None, gt=0, le=480),
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.get_current_user),
):
    """
    Bookable slots for a clinic-local date. Without doctor_id, every doctor on
    shift in the branch is considered and each slot names its doctor.
    """
    slots = slot_service.compute_available_slots(
        db,
        branch_id=branch_id,
        target_date=target_date,
        doctor_id=doctor_id,
        specialization_id=specialization_id,
        slot_duration_minutes=slot_duration_minutes,
    )
    return [schemas.AvailableSlot.model_validate(slot) for slot in slots]


@router.post("/appointments", response_model=schemas.AppointmentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_settings().booking_rate_limit)
def create_appointment(
    request: Request,
    booking: schemas.AppointmentCreate,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.get_current_user),
):
    """Book an appointment; conflicts come back as 409 and are never adjusted."""
    return appointment_service.book_appointment(
        db,
        booking,
        created_by=current_user.user_id,
        is_staff_override=_staff_override(booking, current_user),
    )


@router.post("/appointments/recurring", response_model=List[schemas.AppointmentResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit(get_settings().booking_rate_limit)
def create_recurring_appointments(
    request: Request,
    booking: schemas.RecurringAppointmentCreate,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.get_current_user),
):
    """Book a weekly series. Either every occurrence is booked or none is."""
    return appointment_service.book_recurring_appointments(
        db,
        booking,
        occurrences=booking.occurrences,
        interval_weeks=booking.interval_weeks,
        created_by=current_user.user_id,
        is_staff_override=_staff_override(booking, current_user),
    )


@router.get("/appointments", response_model=schemas.AppointmentListResponse)
def list_appointments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    branch_id: Optional[int] = None,
    doctor_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.require_staff),
):
    appointment_status = None
    if status_filter:
        try:
            appointment_status = AppointmentStatus.normalize(status_filter)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown status '{status_filter}'")

    items, total = crud.list_appointments(
        db,
        skip=(page - 1) * limit,
        limit=limit,
        branch_id=branch_id,
        doctor_id=doctor_id,
        patient_id=patient_id,
        status=appointment_status,
        start=schemas.localize(start),
        end=schemas.localize(end),
    )
    return schemas.AppointmentListResponse(
        data=[schemas.AppointmentResponse.model_validate(a) for a in items],
        pagination=schemas.Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=(total + limit - 1) // limit,
        ),
    )


@router.get("/appointments/{appointment_id}", response_model=schemas.AppointmentResponse)
def get_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.get_current_user),
):
    return crud.get_appointment(db, appointment_id)


@router.put("/appointments/{appointment_id}/status", response_model=schemas.AppointmentResponse)
def update_appointment_status(
    appointment_id: int,
    change: schemas.AppointmentStatusChange,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.require_staff),
):
    """
    Move the appointment along its status graph. Retrying a transition that
    already happened is rejected with 409.
    """
    return appointment_service.change_appointment_status(
        db,
        appointment_id,
        change.status,
        reason=change.reason,
        changed_by=current_user.user_id,
    )


@router.post("/appointments/{appointment_id}/cancel", response_model=schemas.AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    cancellation: schemas.AppointmentCancel,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.get_current_user),
):
    return appointment_service.cancel_appointment(
        db,
        appointment_id,
        reason=cancellation.reason,
        changed_by=current_user.user_id,
    )


@router.get("/appointments/{appointment_id}/status-history", response_model=List[schemas.StatusLogResponse])
def get_status_history(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.get_current_user),
):
    return appointment_service.get_status_history(db, appointment_id)
