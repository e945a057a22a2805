# clinic_scheduling/main.py
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import get_settings
from .core.logging import setup_logging
from .database import create_tables
from .exceptions import SchedulingError
from .limiter import limiter
from .routers import appointments, health, shifts, unavailable_periods

logger = setup_logging()
settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.on_event("startup")
def on_startup():
    create_tables()
    logger.info("startup_complete", environment=settings.environment, timezone=settings.clinic_timezone)


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    """Each error class carries its own HTTP status and machine-readable code."""
    log = logger.warning if exc.status_code >= 500 else logger.info
    log("request_rejected", path=request.url.path, code=exc.code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD"],
    allow_headers=["*"],
)

app.include_router(appointments.router, prefix="/api/v1")
app.include_router(shifts.router, prefix="/api/v1")
app.include_router(unavailable_periods.router, prefix="/api/v1")
app.include_router(health.router, prefix="/api/v1")


if __name__ == "__main__":
    uvicorn.run("clinic_scheduling.main:app", host="0.0.0.0", port=8000, reload=settings.is_development)
