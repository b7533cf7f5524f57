from __future__ import annotations

import calendar
from datetime import date, timedelta
from enum import Enum

from rainbow_chick.errors import ValidationError

WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


class DayKind(str, Enum):
    REST = "rest"
    TEST = "test"
    STUDY = "study"


def parse_weekday(raw: str | int) -> int:
    if isinstance(raw, int):
        value = raw
    else:
        key = raw.strip().lower()
        if key.isdigit():
            value = int(key)
        elif key in WEEKDAY_NAMES:
            value = WEEKDAY_NAMES.index(key)
        else:
            raise ValidationError(f"Unknown weekday: {raw!r}")
    if not 0 <= value <= 6:
        raise ValidationError(f"Weekday out of range: {value}")
    return value


class WeekCalendar:
    """Maps dates to day kinds for a week starting on ``week_start`` (0 = Monday).

    The last day of the week is a rest day and the one before it is the
    weekly test day. Everything else is a study day, and only study days
    can be missed.
    """

    def __init__(self, week_start: int = 0) -> None:
        self.week_start = parse_weekday(week_start)

    def __repr__(self) -> str:
        return f"WeekCalendar({WEEKDAY_NAMES[self.week_start]})"

    def position(self, day: date) -> int:
        return (day.weekday() - self.week_start) % 7

    def classify(self, day: date) -> DayKind:
        pos = self.position(day)
        if pos == 6:
            return DayKind.REST
        if pos == 5:
            return DayKind.TEST
        return DayKind.STUDY

    def is_study_day(self, day: date) -> bool:
        return self.classify(day) is DayKind.STUDY

    def week_bounds(self, day: date) -> tuple[date, date]:
        start = day - timedelta(days=self.position(day))
        return start, start + timedelta(days=6)

    def test_day_of_week(self, day: date) -> date:
        return self.week_bounds(day)[0] + timedelta(days=5)

    def study_days_between(self, start: date, end: date) -> list[date]:
        if end < start:
            raise ValidationError(f"Window end {end} is before start {start}")
        days = []
        d = start
        while d <= end:
            if self.is_study_day(d):
                days.append(d)
            d += timedelta(days=1)
        return days

    def missed_study_days(self, after: date, today: date) -> list[date]:
        start = after + timedelta(days=1)
        end = today - timedelta(days=1)
        if end < start:
            return []
        return self.study_days_between(start, end)

    def _month_days(self, day: date) -> list[date]:
        last = calendar.monthrange(day.year, day.month)[1]
        return [date(day.year, day.month, n) for n in range(1, last + 1)]

    def month_study_days_count(self, day: date) -> int:
        return sum(1 for d in self._month_days(day) if self.classify(d) is DayKind.STUDY)

    def month_test_days_count(self, day: date) -> int:
        return sum(1 for d in self._month_days(day) if self.classify(d) is DayKind.TEST)
