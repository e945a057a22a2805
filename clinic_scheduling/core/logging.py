import logging
import sys
import structlog
from pythonjsonlogger import jsonlogger

from ..config import get_settings


def setup_logging():
    """Structured logging setup: structlog over the stdlib root logger"""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.log_json:
        # JSON for production: the event dict becomes the record's extra fields
        processors.append(structlog.stdlib.render_to_log_kwargs)
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
        )
    else:
        processors.append(structlog.dev.ConsoleRenderer())
        formatter = logging.Formatter("%(message)s")

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Setup root logger once; uvicorn reloads call this again
    logger = logging.getLogger()
    handler = next((h for h in logger.handlers if getattr(h, "_clinic_scheduling", False)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler._clinic_scheduling = True
        logger.addHandler(handler)
    handler.setFormatter(formatter)
    logger.setLevel(level)

    # Optional: quieter libraries
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return structlog.get_logger()
