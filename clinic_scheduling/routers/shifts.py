# clinic_scheduling/routers/shifts.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import schemas, security
from ..database import get_db
from ..services import shift_service

router = APIRouter(
    prefix="/shifts",
    tags=["Shifts"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=List[schemas.ShiftResponse])
def read_shifts(
    branch_id: Optional[int] = None,
    doctor_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    return shift_service.list_shifts(
        db,
        branch_id=branch_id,
        doctor_id=doctor_id,
        start=schemas.localize(start),
        end=schemas.localize(end),
    )


@router.post("", response_model=schemas.ShiftResponse, status_code=status.HTTP_201_CREATED)
def create_shift(
    shift: schemas.ShiftCreate,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.require_role("admin", "manager")),
):
    """
    Create a one-off or weekly shift. Doctor-less appointments already booked
    inside it are handed to the doctor when the doctor is free.
    """
    return shift_service.create_shift(db, shift)


@router.put("/{shift_id}", response_model=schemas.ShiftResponse)
def update_shift(
    shift_id: int,
    shift: schemas.ShiftUpdate,
    force: bool = False,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.require_role("admin", "manager")),
):
    """Reschedule a shift; 409 if upcoming appointments would lose coverage, unless force=true."""
    return shift_service.update_shift(db, shift_id, shift, force=force)


@router.delete("/{shift_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_shift(
    shift_id: int,
    force: bool = False,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.require_role("admin", "manager")),
):
    """Delete a shift. Booked appointments inside it are never touched."""
    shift_service.delete_shift(db, shift_id, force=force)


@router.patch("/{shift_id}/attendance", response_model=schemas.ShiftAttendanceResponse)
def record_attendance(
    shift_id: int,
    attendance: schemas.ShiftAttendanceAction,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.require_staff),
):
    """Check in to or out of today's occurrence of the shift."""
    return shift_service.record_attendance(db, shift_id, attendance.type)
