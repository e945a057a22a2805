# clinic_scheduling/routers/health.py
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
import structlog

from .. import crud, schemas, security
from ..core.timewindow import utcnow
from ..database import get_db

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=schemas.HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Liveness plus a database ping; 503 when the database does not answer."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("health_check_database_error", error=str(e))
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "unavailable", "checked_at": utcnow().isoformat()},
        )
    return schemas.HealthResponse(status="healthy", database="ok", checked_at=utcnow())


@router.get("/consistency-check", response_model=schemas.ConsistencyReport, dependencies=[Depends(security.require_admin)])
def check_system_consistency(db: Session = Depends(get_db)) -> schemas.ConsistencyReport:
    """
    Lists pairs of active appointments that share a doctor or a room and
    overlap in time. The report is empty on a healthy system.
    Accessible only by admin users.
    """
    issues = [
        schemas.OverlapInconsistency(
            resource=resource,
            resource_id=resource_id,
            first_appointment_id=first.id,
            second_appointment_id=second.id,
            issue=f"{resource.capitalize()} {resource_id} is double-booked by appointments {first.id} and {second.id}",
        )
        for resource, resource_id, first, second in crud.find_overlapping_active_appointments(db)
    ]
    if issues:
        logger.warning("consistency_check_found_overlaps", count=len(issues))
    return schemas.ConsistencyReport(checked_at=utcnow(), overlapping_appointments=issues)
