# clinic_scheduling/services/records.py
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy.orm import Session

from .. import models

logger = structlog.get_logger(__name__)


def create_visit_records(db: Session, appointment: models.Appointment, now: datetime):
    """Stage the medical record stub and draft invoice of a completed visit.

    Nothing is committed here: the records land in the same transaction as
    the COMPLETED status change, or not at all.
    """
    if appointment.medical_record is None:
        db.add(models.MedicalRecord(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            created_at=now,
        ))
    if appointment.invoice is None:
        db.add(models.Invoice(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            status=models.InvoiceStatus.UNPAID,
            total_amount=Decimal("0"),
            created_at=now,
        ))
    logger.info("visit_records_staged", appointment_id=appointment.id, patient_id=appointment.patient_id)
