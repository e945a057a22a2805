# clinic_scheduling/core/timewindow.py
"""Scheduling value types shared by the slot engine and the booking path.

All instants inside a ``TimeWindow`` are timezone-aware UTC. Windows are
half-open: ``[start, end)``, so a window ending at 10:00 does not overlap one
starting at 10:00.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..exceptions import InvalidBookingError


def as_utc(value: datetime) -> datetime:
    """Naive values are taken to be UTC already (that is how they are stored)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, order=True)
class TimeWindow:
    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", as_utc(self.start))
        object.__setattr__(self, "end", as_utc(self.end))
        if self.end <= self.start:
            raise InvalidBookingError(f"Window end ({self.end.isoformat()}) must be after start ({self.start.isoformat()})")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeWindow") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeWindow") -> bool:
        return self.start <= other.start and other.end <= self.end

    def clip(self, bounds: "TimeWindow") -> Optional["TimeWindow"]:
        start = max(self.start, bounds.start)
        end = min(self.end, bounds.end)
        if end <= start:
            return None
        return TimeWindow(start, end)

    def shifted(self, delta: timedelta) -> "TimeWindow":
        return TimeWindow(self.start + delta, self.end + delta)

    def slots(self, step: timedelta) -> Iterator["TimeWindow"]:
        """Consecutive ``step``-long windows; a trailing partial slot is dropped."""
        if step <= timedelta(0):
            raise InvalidBookingError("Slot duration must be positive")
        current = self.start
        while current + step <= self.end:
            yield TimeWindow(current, current + step)
            current += step


def day_window(target_date: date, tz: tzinfo) -> TimeWindow:
    """The clinic-local calendar day ``target_date`` as a UTC window."""
    start = datetime.combine(target_date, time.min, tzinfo=tz)
    end = datetime.combine(target_date + timedelta(days=1), time.min, tzinfo=tz)
    return TimeWindow(start, end)


WEEKLY = "WEEKLY"


@dataclass(frozen=True)
class RecurrenceRule:
    """Weekly repetition of a shift.

    ``weekdays`` uses Monday=0. When empty the weekday of the first
    occurrence is used. ``interval`` counts weeks from the week of the first
    occurrence; ``until`` is an inclusive clinic-local date.
    """

    freq: str = WEEKLY
    interval: int = 1
    weekdays: Tuple[int, ...] = field(default_factory=tuple)
    until: Optional[date] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["RecurrenceRule"]:
        if not data:
            return None
        freq = str(data.get("freq", WEEKLY)).upper()
        if freq != WEEKLY:
            raise InvalidBookingError(f"Unsupported recurrence frequency '{freq}'")
        try:
            interval = int(data.get("interval", 1))
            weekdays = tuple(sorted({int(d) for d in data.get("weekdays") or ()}))
        except (TypeError, ValueError):
            raise InvalidBookingError("Recurrence interval and weekdays must be integers")
        if interval < 1:
            raise InvalidBookingError("Recurrence interval must be at least 1")
        if any(d < 0 or d > 6 for d in weekdays):
            raise InvalidBookingError("Recurrence weekdays must be between 0 (Monday) and 6 (Sunday)")
        until = data.get("until")
        if isinstance(until, str):
            try:
                until = date.fromisoformat(until)
            except ValueError:
                raise InvalidBookingError(f"Invalid recurrence end date '{until}'")
        return cls(freq=freq, interval=interval, weekdays=weekdays, until=until)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"freq": self.freq, "interval": self.interval}
        if self.weekdays:
            data["weekdays"] = list(self.weekdays)
        if self.until:
            data["until"] = self.until.isoformat()
        return data


def expand_recurrence(rule: RecurrenceRule, first: TimeWindow, date_from: date, date_to: date, tz: tzinfo) -> List[TimeWindow]:
    """Concrete occurrences of ``first`` repeated by ``rule`` that start between
    ``date_from`` and ``date_to`` (clinic-local, inclusive).

    Each occurrence keeps the wall-clock start time and the duration of
    ``first``.
    """
    local_start = first.start.astimezone(tz)
    duration = first.duration
    first_day = local_start.date()
    weekdays = rule.weekdays or (first_day.weekday(),)
    anchor_week = first_day - timedelta(days=first_day.weekday())
    last_day = date_to if rule.until is None else min(date_to, rule.until)

    occurrences = []
    day = max(date_from, first_day)
    while day <= last_day:
        if day.weekday() in weekdays and ((day - anchor_week).days // 7) % rule.interval == 0:
            start = datetime.combine(day, local_start.time(), tzinfo=tz)
            occurrences.append(TimeWindow(start, start + duration))
        day += timedelta(days=1)
    return occurrences
