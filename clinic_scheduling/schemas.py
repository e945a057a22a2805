# clinic_scheduling/schemas.py
from datetime import datetime, date
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import get_settings
from .models import AppointmentStatus


def localize(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes from clients are clinic wall-clock time."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=get_settings().tz)
    return value


# --- Base Schemas ---
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- Slot Schemas ---
class AvailableSlot(BaseSchema):
    start_time: datetime
    end_time: datetime
    doctor_id: Optional[int] = None
    room_id: Optional[int] = None


# --- Appointment Schemas ---
class AppointmentBase(BaseSchema):
    patient_id: int
    branch_id: int
    doctor_id: Optional[int] = None
    room_id: Optional[int] = None
    start_time: datetime
    end_time: datetime
    appointment_type: str = Field(default="consultation", max_length=50)
    source: str = Field(default="online", max_length=20)
    notes: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def localize_naive(cls, v):
        return localize(v)


class AppointmentCreate(AppointmentBase):
    is_staff_override: bool = False  # walk-ins outside nominal shift hours
    auto_assign: bool = False  # pick the first free doctor on shift when doctor_id is empty


class RecurringAppointmentCreate(AppointmentCreate):
    occurrences: int = Field(..., ge=1, le=52)
    interval_weeks: int = Field(default=1, ge=1, le=26)


class AppointmentStatusChange(BaseSchema):
    status: AppointmentStatus
    reason: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        try:
            return AppointmentStatus.normalize(v)
        except ValueError:
            raise ValueError(f"Unknown appointment status '{v}'")


class AppointmentCancel(BaseSchema):
    reason: str = Field(..., max_length=1000)


class AppointmentResponse(AppointmentBase):
    id: int
    status: AppointmentStatus
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class AppointmentListResponse(BaseModel):
    data: List[AppointmentResponse]
    pagination: Pagination


class StatusLogResponse(BaseSchema):
    id: int
    appointment_id: int
    old_status: Optional[AppointmentStatus] = None
    new_status: AppointmentStatus
    reason: Optional[str] = None
    changed_by: Optional[int] = None
    created_at: datetime


# --- Shift Schemas ---
class RecurrenceRuleSchema(BaseSchema):
    freq: str = "WEEKLY"
    interval: int = Field(default=1, ge=1)
    weekdays: List[int] = Field(default_factory=list)  # 0=Monday, 6=Sunday
    until: Optional[date] = None

    @field_validator("weekdays")
    @classmethod
    def check_weekdays(cls, v):
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("weekdays must be between 0 (Monday) and 6 (Sunday)")
        return v


class ShiftBase(BaseSchema):
    doctor_id: int
    room_id: int
    start_time: datetime
    end_time: datetime
    recurrence: Optional[RecurrenceRuleSchema] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def localize_naive(cls, v):
        return localize(v)


class ShiftCreate(ShiftBase):
    pass


class ShiftUpdate(BaseSchema):
    doctor_id: Optional[int] = None
    room_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    recurrence: Optional[RecurrenceRuleSchema] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def localize_naive(cls, v):
        return localize(v)


class ShiftResponse(ShiftBase):
    id: int


class ShiftAttendanceAction(BaseSchema):
    type: Literal["CHECK_IN", "CHECK_OUT"]

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        return str(v).strip().replace("-", "_").upper()


class ShiftAttendanceResponse(BaseSchema):
    id: int
    shift_id: int
    occurrence_date: date
    checked_in_at: Optional[datetime] = None
    checked_out_at: Optional[datetime] = None


# --- Unavailable Period Schemas ---
class UnavailablePeriodBase(BaseSchema):
    branch_id: int
    doctor_id: Optional[int] = None
    start_datetime: datetime
    end_datetime: datetime
    reason: Optional[str] = Field(None, max_length=255)
    reason_type: str = Field(default="other", max_length=50)

    @field_validator("start_datetime", "end_datetime")
    @classmethod
    def localize_naive(cls, v):
        return localize(v)


class UnavailablePeriodCreate(UnavailablePeriodBase):
    pass


class UnavailablePeriodResponse(UnavailablePeriodBase):
    id: int
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None


# --- Health Check Schemas ---
class HealthResponse(BaseModel):
    status: str
    database: str
    checked_at: datetime


class OverlapInconsistency(BaseModel):
    resource: str  # "doctor" or "room"
    resource_id: int
    first_appointment_id: int
    second_appointment_id: int
    issue: str


class ConsistencyReport(BaseModel):
    checked_at: datetime
    overlapping_appointments: List[OverlapInconsistency] = []
