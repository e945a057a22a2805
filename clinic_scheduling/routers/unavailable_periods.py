# clinic_scheduling/routers/unavailable_periods.py
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import crud, schemas, security
from ..config import get_settings
from ..core.timewindow import day_window
from ..database import get_db

router = APIRouter(
    prefix="/unavailable-periods",
    tags=["Unavailable Periods"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=schemas.UnavailablePeriodResponse, status_code=status.HTTP_201_CREATED)
def create_unavailable_period(
    period: schemas.UnavailablePeriodCreate,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.require_staff),
):
    """
    Black out a branch, or a single doctor of it. Slots inside the period stop
    being offered; appointments already booked there are left as they are.
    """
    return crud.create_unavailable_period(db, period.model_dump(), created_by=current_user.user_id)


@router.get("", response_model=List[schemas.UnavailablePeriodResponse])
def read_unavailable_periods(
    branch_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
):
    """Retrieve unavailable periods, optionally for one branch and a clinic-local date range."""
    tz = get_settings().tz
    start = day_window(start_date, tz).start if start_date else None
    end = day_window(end_date, tz).end if end_date else None
    return crud.get_unavailable_periods(db, branch_id=branch_id, start=start, end=end)


@router.delete("/{period_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_unavailable_period(
    period_id: int,
    db: Session = Depends(get_db),
    current_user: security.Principal = Depends(security.require_staff),
):
    crud.delete_unavailable_period(db, period_id)
