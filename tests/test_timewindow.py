# tests/test_timewindow.py
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from clinic_scheduling.core.timewindow import RecurrenceRule, TimeWindow, day_window, expand_recurrence
from clinic_scheduling.exceptions import InvalidBookingError

UTC = timezone.utc


def window(h1, m1, h2, m2, day=10):
    return TimeWindow(datetime(2025, 6, day, h1, m1, tzinfo=UTC), datetime(2025, 6, day, h2, m2, tzinfo=UTC))


def test_touching_windows_do_not_overlap():
    assert not window(9, 0, 10, 0).overlaps(window(10, 0, 11, 0))
    assert not window(10, 0, 11, 0).overlaps(window(9, 0, 10, 0))


def test_partial_and_nested_windows_overlap():
    assert window(9, 0, 10, 0).overlaps(window(9, 59, 11, 0))
    assert window(9, 0, 12, 0).overlaps(window(10, 0, 10, 30))
    assert window(10, 0, 10, 30).overlaps(window(9, 0, 12, 0))


def test_end_must_be_after_start():
    with pytest.raises(InvalidBookingError):
        window(10, 0, 10, 0)
    with pytest.raises(InvalidBookingError):
        window(10, 0, 9, 0)


def test_naive_datetimes_are_treated_as_utc():
    w = TimeWindow(datetime(2025, 6, 10, 9, 0), datetime(2025, 6, 10, 10, 0))
    assert w.start.tzinfo == UTC
    assert w == window(9, 0, 10, 0)


def test_slots_drop_trailing_partial_slot():
    slots = list(window(9, 0, 10, 45).slots(timedelta(minutes=30)))
    assert [(s.start.hour, s.start.minute) for s in slots] == [(9, 0), (9, 30), (10, 0)]
    assert slots[-1].end == datetime(2025, 6, 10, 10, 30, tzinfo=UTC)


def test_slots_reject_non_positive_step():
    with pytest.raises(InvalidBookingError):
        list(window(9, 0, 10, 0).slots(timedelta(0)))


def test_clip_to_day():
    overnight = TimeWindow(datetime(2025, 6, 9, 22, 0, tzinfo=UTC), datetime(2025, 6, 10, 2, 0, tzinfo=UTC))
    day = day_window(date(2025, 6, 10), UTC)
    assert overnight.clip(day) == window(0, 0, 2, 0)
    assert window(9, 0, 10, 0, day=11).clip(day) is None


def test_day_window_follows_clinic_timezone():
    saigon = ZoneInfo("Asia/Ho_Chi_Minh")
    day = day_window(date(2025, 6, 10), saigon)
    assert day.start == datetime(2025, 6, 9, 17, 0, tzinfo=UTC)
    assert day.duration == timedelta(hours=24)


def test_recurrence_rule_parsing():
    rule = RecurrenceRule.from_dict({"freq": "weekly", "interval": 2, "weekdays": [3, 1, 1], "until": "2025-12-31"})
    assert rule.freq == "WEEKLY"
    assert rule.weekdays == (1, 3)
    assert rule.until == date(2025, 12, 31)
    assert RecurrenceRule.from_dict(rule.to_dict()) == rule
    assert RecurrenceRule.from_dict(None) is None


@pytest.mark.parametrize("data", [
    {"freq": "DAILY"},
    {"freq": "WEEKLY", "interval": 0},
    {"freq": "WEEKLY", "weekdays": [7]},
    {"freq": "WEEKLY", "until": "next year"},
])
def test_invalid_recurrence_rules(data):
    with pytest.raises(InvalidBookingError):
        RecurrenceRule.from_dict(data)


def test_expand_weekly_defaults_to_first_weekday():
    first = window(9, 0, 12, 0, day=3)  # Tuesday
    rule = RecurrenceRule.from_dict({"freq": "WEEKLY"})
    occurrences = expand_recurrence(rule, first, date(2025, 6, 1), date(2025, 6, 30), UTC)
    assert [o.start.day for o in occurrences] == [3, 10, 17, 24]
    assert all(o.duration == timedelta(hours=3) for o in occurrences)


def test_expand_biweekly_several_weekdays_until():
    first = window(9, 0, 10, 0, day=2)  # Monday
    rule = RecurrenceRule(interval=2, weekdays=(0, 3), until=date(2025, 6, 19))
    occurrences = expand_recurrence(rule, first, date(2025, 6, 1), date(2025, 6, 30), UTC)
    assert [o.start.day for o in occurrences] == [2, 5, 16, 19]


def test_expand_never_yields_occurrences_before_the_first():
    first = window(9, 0, 10, 0, day=17)
    rule = RecurrenceRule()
    assert expand_recurrence(rule, first, date(2025, 6, 1), date(2025, 6, 16), UTC) == []


def test_expand_keeps_wall_clock_time_across_dst():
    berlin = ZoneInfo("Europe/Berlin")
    first = TimeWindow(datetime(2025, 3, 24, 9, 0, tzinfo=berlin), datetime(2025, 3, 24, 10, 0, tzinfo=berlin))
    occurrences = expand_recurrence(RecurrenceRule(), first, date(2025, 3, 24), date(2025, 4, 1), berlin)
    assert [o.start.astimezone(berlin).hour for o in occurrences] == [9, 9]
    # CET (UTC+1) before the switch, CEST (UTC+2) after
    assert [o.start.hour for o in occurrences] == [8, 7]
