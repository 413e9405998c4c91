"""Deterministic recurring-date generation and recurrence formatting.

Dates are calendar dates (no time zone). Weekday numbers follow the
marketplace convention 0=Sunday .. 6=Saturday.
"""

import calendar
import itertools
from datetime import date, timedelta
from typing import Iterator, Optional

from ..core.exceptions import ValidationError
from ..schemas.recurring import RecurrenceEndType, RecurrenceFrequency, RecurrencePattern

DEFAULT_MAX_OCCURRENCES = 100
SAFETY_CAP = 1000
MAX_INTERVAL = 365

# Any interval this long leaves room for the first occurrence only
_CALENDAR_DAYS = (date.max - date.min).days

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
SHORT_DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]

FREQUENCY_LABELS = {
    RecurrenceFrequency.DAILY: "Daily",
    RecurrenceFrequency.WEEKLY: "Weekly",
    RecurrenceFrequency.BIWEEKLY: "Bi-weekly",
    RecurrenceFrequency.MONTHLY: "Monthly",
}

_INTERVAL_UNITS = {
    RecurrenceFrequency.DAILY: "days",
    RecurrenceFrequency.WEEKLY: "weeks",
    RecurrenceFrequency.BIWEEKLY: "2 weeks",
    RecurrenceFrequency.MONTHLY: "months",
}


def sunday_based_weekday(day: date) -> int:
    """Weekday of ``day`` with Sunday as 0."""
    return (day.weekday() + 1) % 7


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _iter_daily(start: date, interval: int) -> Iterator[date]:
    step = timedelta(days=interval)
    current = start
    while True:
        yield current
        if date.max - current < step:
            return
        current += step


def _iter_weekly(start: date, weeks_per_period: int, days_of_week: list[int]) -> Iterator[date]:
    # Periods are counted from the Sunday that starts the start date's week
    week_start = start - timedelta(days=sunday_based_weekday(start))
    step = timedelta(weeks=weeks_per_period)
    while True:
        for weekday in days_of_week:
            if date.max - week_start < timedelta(days=weekday):
                return
            candidate = week_start + timedelta(days=weekday)
            if candidate >= start:
                yield candidate
        if date.max - week_start < step:
            return
        week_start += step


def _iter_monthly(start: date, interval: int, day_of_month: int) -> Iterator[date]:
    for period in itertools.count():
        year, month = _add_months(start.year, start.month, period * interval)
        if year > date.max.year:
            return
        last_day = calendar.monthrange(year, month)[1]
        candidate = date(year, month, min(day_of_month, last_day))
        if candidate >= start:
            yield candidate


def iter_occurrences(start: date, pattern: RecurrencePattern) -> Iterator[date]:
    """
    Lazily yield every date matching ``pattern`` on or after ``start``.

    The iterator honours ``end_date`` for date-bounded patterns but not the
    occurrence count; callers slice it.
    """
    interval = min(max(pattern.interval, 1), _CALENDAR_DAYS)

    if pattern.frequency == RecurrenceFrequency.DAILY:
        dates = _iter_daily(start, interval)
    elif pattern.frequency in (RecurrenceFrequency.WEEKLY, RecurrenceFrequency.BIWEEKLY):
        weeks = interval * (2 if pattern.frequency == RecurrenceFrequency.BIWEEKLY else 1)
        days = sorted(set(pattern.days_of_week or [])) or [sunday_based_weekday(start)]
        dates = _iter_weekly(start, weeks, days)
    else:
        dates = _iter_monthly(start, interval, pattern.day_of_month or start.day)

    if pattern.end_type == RecurrenceEndType.DATE and pattern.end_date is not None:
        end = pattern.end_date
        dates = itertools.takewhile(lambda day: day <= end, dates)

    return dates


def occurrence_limit(pattern: RecurrencePattern, max_occurrences: int = DEFAULT_MAX_OCCURRENCES) -> int:
    """How many occurrences a generation run may produce."""
    if pattern.end_type == RecurrenceEndType.OCCURRENCES and pattern.occurrences:
        limit = pattern.occurrences
    else:
        limit = max_occurrences
    return max(0, min(limit, SAFETY_CAP))


def generate_occurrence_dates(
    start: date,
    pattern: RecurrencePattern,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> list[date]:
    """
    Generate the dates of a recurrence in ascending order.

    Args:
        start: First possible date; no occurrence precedes it
        pattern: Recurrence rule
        max_occurrences: Upper bound for patterns without an occurrence count

    Returns:
        Matching dates, at most ``SAFETY_CAP`` of them
    """
    return list(itertools.islice(iter_occurrences(start, pattern), occurrence_limit(pattern, max_occurrences)))


def next_occurrence_after(
    start: date,
    pattern: RecurrencePattern,
    after: date,
    max_occurrences: int = DEFAULT_MAX_OCCURRENCES,
) -> Optional[date]:
    """First occurrence of the series strictly after ``after``, or None when the series has ended."""
    series = itertools.islice(iter_occurrences(start, pattern), occurrence_limit(pattern, max_occurrences))
    return next((day for day in series if day > after), None)


def validate_pattern(pattern: RecurrencePattern, start: Optional[date] = None) -> None:
    """
    Check a recurrence rule for semantic errors.

    Raises:
        ValidationError: with one message per offending field
    """
    errors: dict[str, str] = {}

    if pattern.interval < 1:
        errors["interval"] = "Interval must be at least 1"
    elif pattern.interval > MAX_INTERVAL:
        errors["interval"] = f"Interval must be at most {MAX_INTERVAL}"

    if pattern.day_of_month is not None and not 1 <= pattern.day_of_month <= 31:
        errors["day_of_month"] = "Day of month must be between 1 and 31"

    if pattern.days_of_week and any(not 0 <= d <= 6 for d in pattern.days_of_week):
        errors["days_of_week"] = "Days of week must be between 0 (Sunday) and 6 (Saturday)"

    if pattern.end_type == RecurrenceEndType.DATE:
        if pattern.end_date is None:
            errors["end_date"] = 'End date is required when end type is "date"'
        elif start is not None and pattern.end_date < start:
            errors["end_date"] = "End date must not be before the start date"

    if pattern.end_type == RecurrenceEndType.OCCURRENCES:
        if pattern.occurrences is None:
            errors["occurrences"] = 'Number of occurrences is required when end type is "occurrences"'
        elif pattern.occurrences < 1:
            errors["occurrences"] = "Number of occurrences must be at least 1"

    if errors:
        raise ValidationError(detail=next(iter(errors.values())), errors=errors)


def frequency_label(frequency: RecurrenceFrequency) -> str:
    return FREQUENCY_LABELS[RecurrenceFrequency(frequency)]


def day_name(day_of_week: int) -> str:
    return DAY_NAMES[day_of_week]


def short_day_name(day_of_week: int) -> str:
    return SHORT_DAY_NAMES[day_of_week]


def format_recurrence_pattern(pattern: RecurrencePattern) -> str:
    """Describe a rule for people, e.g. ``Every 2 weeks on Mon, Wed for 5 occurrences``."""
    if pattern.interval == 1:
        description = frequency_label(pattern.frequency)
    else:
        description = f"Every {pattern.interval} {_INTERVAL_UNITS[pattern.frequency]}"

    if pattern.frequency in (RecurrenceFrequency.WEEKLY, RecurrenceFrequency.BIWEEKLY) and pattern.days_of_week:
        days = ", ".join(short_day_name(d) for d in sorted(set(pattern.days_of_week)))
        description += f" on {days}"

    if pattern.frequency == RecurrenceFrequency.MONTHLY and pattern.day_of_month:
        description += f" on day {pattern.day_of_month}"

    if pattern.end_type == RecurrenceEndType.DATE and pattern.end_date:
        end = pattern.end_date
        description += f" until {end.month}/{end.day}/{end.year}"
    elif pattern.end_type == RecurrenceEndType.OCCURRENCES and pattern.occurrences:
        plural = "s" if pattern.occurrences > 1 else ""
        description += f" for {pattern.occurrences} occurrence{plural}"

    return description
