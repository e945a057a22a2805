# clinic_scheduling/exceptions.py
"""Error taxonomy raised by the scheduling core.

Routers never catch these; ``main.py`` maps each class to an HTTP status.
"""
from typing import Optional


class SchedulingError(Exception):
    """Base class for every error the scheduling core raises."""

    code = "scheduling_error"
    status_code = 400

    def __init__(self, message: str, *, resource_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.resource_id = resource_id


class InvalidBookingError(SchedulingError):
    """Malformed input: end <= start, past window, missing cancellation reason..."""

    code = "validation_error"
    status_code = 422


class SlotConflictError(SchedulingError):
    """The window overlaps an active appointment of the doctor or room."""

    code = "slot_conflict"
    status_code = 409


class OutsideShiftError(SlotConflictError):
    """The window is not covered by a shift of the doctor, or hits a blackout."""

    code = "outside_shift"


class InvalidTransitionError(SchedulingError):
    code = "invalid_transition"
    status_code = 409


class NotFoundError(SchedulingError):
    code = "not_found"
    status_code = 404


class ShiftInUseError(SchedulingError):
    """A shift change would leave active appointments without coverage."""

    code = "shift_in_use"
    status_code = 409


class ShiftConflictError(SchedulingError):
    """The shift overlaps another shift of the doctor, or its room is already full."""

    code = "shift_conflict"
    status_code = 409


class DependencyUnavailableError(SchedulingError):
    """The database timed out or failed. Callers may retry once with backoff."""

    code = "dependency_unavailable"
    status_code = 503
