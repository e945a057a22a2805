# clinic_scheduling/models.py
from datetime import timezone
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text,
    Enum as SQLAlchemyEnum, JSON, Numeric, Index, TypeDecorator, Date, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on write, so values are converted to UTC before
    binding and UTC is re-attached on read.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"

    @classmethod
    def normalize(cls, value):
        """Accept 'in-progress', 'confirmed', 'No_Show'... and return the member."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().replace("-", "_").replace(" ", "_").upper())


# Only these statuses hold a doctor/room window
ACTIVE_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED, AppointmentStatus.IN_PROGRESS})


class InvoiceStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    VOID = "VOID"


class Branch(Base):
    __tablename__ = "branches"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())

    rooms = relationship("Room", back_populates="branch")
    doctors = relationship("Doctor", back_populates="branch")


class Specialization(Base):
    __tablename__ = "specializations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False)


class Doctor(Base):
    __tablename__ = "doctors"
    __table_args__ = (
        Index('idx_doctors_branch_specialization', 'branch_id', 'specialization_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(255), nullable=False)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=True)
    specialization_id = Column(Integer, ForeignKey("specializations.id"), nullable=True)
    average_time = Column(Integer, nullable=True)  # minutes per visit

    branch = relationship("Branch", back_populates="doctors")
    specialization = relationship("Specialization")
    shifts = relationship("DoctorShift", back_populates="doctor")


class Room(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    code = Column(String(50), unique=True, nullable=False)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    capacity = Column(Integer, nullable=False, default=1, server_default="1")  # doctors that can staff it at once

    branch = relationship("Branch", back_populates="rooms")


class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String(255), nullable=False)
    phone_number = Column(String(20), nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())

    appointments = relationship("Appointment", back_populates="patient")


class DoctorShift(Base):
    """A doctor staffing a room, once or on a weekly recurrence."""
    __tablename__ = "doctor_shifts"
    __table_args__ = (
        Index('idx_shift_doctor_start', 'doctor_id', 'start_time'),
        Index('idx_shift_room_start', 'room_id', 'start_time'),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False)

    # First (or only) occurrence
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    recurrence = Column(JSON, nullable=True)  # {"freq": "WEEKLY", "interval": 1, "weekdays": [0], "until": "2025-12-31"}

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    doctor = relationship("Doctor", back_populates="shifts")
    room = relationship("Room")
    attendance = relationship("ShiftAttendance", back_populates="shift", cascade="all, delete-orphan")


class ShiftAttendance(Base):
    """Check-in and check-out of one occurrence of a shift, keyed by its clinic-local date."""
    __tablename__ = "shift_attendance"
    __table_args__ = (
        UniqueConstraint("shift_id", "occurrence_date", name="uq_attendance_shift_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shift_id = Column(Integer, ForeignKey("doctor_shifts.id", ondelete="CASCADE"), nullable=False, index=True)
    occurrence_date = Column(Date, nullable=False)
    checked_in_at = Column(UTCDateTime, nullable=True)
    checked_out_at = Column(UTCDateTime, nullable=True)

    shift = relationship("DoctorShift", back_populates="attendance")


class UnavailablePeriod(Base):
    """Holidays, maintenance and emergency closures for a branch or one doctor"""
    __tablename__ = "unavailable_periods"
    __table_args__ = (
        Index('idx_unavailable_branch_date', 'branch_id', 'start_datetime'),
        Index('idx_unavailable_date_range', 'start_datetime', 'end_datetime'),
    )

    id = Column(Integer, primary_key=True, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=True)  # NULL = whole branch

    start_datetime = Column(UTCDateTime, nullable=False)
    end_datetime = Column(UTCDateTime, nullable=False)
    reason = Column(String(255), nullable=True)
    reason_type = Column(String(50), default="other")  # vacation, holiday, maintenance, emergency

    created_by = Column(Integer, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_patient_date', 'patient_id', 'start_time'),
        Index('idx_appointments_doctor_window', 'doctor_id', 'start_time', 'end_time'),
        Index('idx_appointments_room_window', 'room_id', 'start_time', 'end_time'),
        Index('idx_appointments_status_date', 'status', 'start_time'),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=True)  # NULL until triage assigns one
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False)

    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)

    appointment_type = Column(String(50), default="consultation")
    source = Column(String(20), default="online")  # online, phone, walk-in
    notes = Column(Text, nullable=True)

    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.SCHEDULED, nullable=False, index=True)

    # Workflow timestamps
    confirmed_at = Column(UTCDateTime, nullable=True)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, onupdate=func.now())

    patient = relationship("Patient", back_populates="appointments")
    doctor = relationship("Doctor")
    room = relationship("Room")
    status_logs = relationship("AppointmentStatusLog", back_populates="appointment", order_by="AppointmentStatusLog.id.desc()")
    medical_record = relationship("MedicalRecord", back_populates="appointment", uselist=False)
    invoice = relationship("Invoice", back_populates="appointment", uselist=False)


class AppointmentStatusLog(Base):
    __tablename__ = "appointment_status_logs"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    old_status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), nullable=True)
    new_status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), nullable=False)
    reason = Column(Text, nullable=True)
    changed_by = Column(Integer, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)

    appointment = relationship("Appointment", back_populates="status_logs")


class MedicalRecord(Base):
    """Opened when an appointment completes; filled in by the examination flow."""
    __tablename__ = "medical_records"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, unique=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("doctors.id"), nullable=True)
    diagnosis = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)

    appointment = relationship("Appointment", back_populates="medical_record")


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, unique=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    status = Column(SQLAlchemyEnum(InvoiceStatus, name='invoice_status'), default=InvoiceStatus.UNPAID, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False)

    appointment = relationship("Appointment", back_populates="invoice")
