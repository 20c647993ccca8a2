"""Due-date calculator — pure calendar logic.

Converts a Timeframe descriptor plus "now" into an absolute due time.
All hours and horizons come from a DueDateRules object; identical
(timeframe, now, rules) inputs always give the identical result. Calendar
math happens in now's own timezone.

No I/O: this module only transforms data.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from src.core.timeframe import Timeframe
from src.data.models import TimeframeKind, TimeUnit

logger = logging.getLogger(__name__)

_CLOCK_RE = re.compile(r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)", re.IGNORECASE)
_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_FRIDAY = 4

_UNIT_DELTAS = {
    TimeUnit.MINUTES: timedelta(minutes=1),
    TimeUnit.HOURS: timedelta(hours=1),
    TimeUnit.DAYS: timedelta(days=1),
    TimeUnit.WEEKS: timedelta(weeks=1),
}

_PRIORITY_BY_KIND = {
    TimeframeKind.IN_MINUTES: 1,
    TimeframeKind.FEW_MINUTES: 1,
    TimeframeKind.IN_HOURS: 2,
    TimeframeKind.FEW_HOURS: 2,
    TimeframeKind.TODAY: 2,
    TimeframeKind.LATER_TODAY: 2,
    TimeframeKind.TOMORROW: 3,
    TimeframeKind.END_OF_DAY: 3,
}
_DEFAULT_PRIORITY = 4


@dataclass(frozen=True)
class DueDateRules:
    """Configured calendar rules. Hours are 0-23 in the caller's timezone."""

    end_of_day_hour: int = 17
    default_start_hour: int = 9
    week_end_hour: int = 17
    weekday_due_hour: int = 9
    today_offset: timedelta = timedelta(hours=4)
    default_horizon: timedelta = timedelta(hours=4)
    few_minutes: timedelta = timedelta(minutes=15)
    few_hours: timedelta = timedelta(hours=2)
    default_in_minutes: int = 30
    default_in_hours: int = 2
    default_in_days: int = 1

    @classmethod
    def from_settings(cls, settings=None) -> DueDateRules:
        if settings is None:
            from src.config import settings
        return cls(
            end_of_day_hour=settings.END_OF_DAY_HOUR,
            default_start_hour=settings.DEFAULT_START_HOUR,
            week_end_hour=settings.WEEK_END_HOUR,
            weekday_due_hour=settings.WEEKDAY_DUE_HOUR,
            today_offset=timedelta(hours=settings.TODAY_OFFSET_HOURS),
            default_horizon=timedelta(hours=settings.DEFAULT_FOLLOWUP_HOURS),
            few_minutes=timedelta(milliseconds=settings.FOLLOWUP_FEW_MINUTES_MS),
            few_hours=timedelta(milliseconds=settings.FOLLOWUP_FEW_HOURS_MS),
            default_in_minutes=settings.DEFAULT_IN_MINUTES,
            default_in_hours=settings.DEFAULT_IN_HOURS,
            default_in_days=settings.DEFAULT_IN_DAYS,
        )


def _at_hour(dt: datetime, hour: int, minute: int = 0) -> datetime:
    return dt.replace(hour=hour, minute=minute, second=0, microsecond=0)


def parse_clock_time(literal: str) -> tuple[int, int] | None:
    """Parse "5pm" / "2:30 PM" into (hour, minute), or None if unparseable."""
    m = _CLOCK_RE.search(literal or "")
    if not m:
        return None
    hour = int(m.group(1))
    minute = int(m.group(2) or 0)
    if not (1 <= hour <= 12 and 0 <= minute <= 59):
        return None
    ampm = m.group(3).lower()
    if ampm == "pm" and hour != 12:
        hour += 12
    if ampm == "am" and hour == 12:
        hour = 0
    return hour, minute


def _specific_time(timeframe: Timeframe, now: datetime, rules: DueDateRules) -> datetime:
    parsed = parse_clock_time(timeframe.matched_text or "")
    if parsed is None:
        logger.warning("Unparseable clock time %r, using default horizon", timeframe.matched_text)
        return now + rules.default_horizon
    target = _at_hour(now, *parsed)
    # Already passed today → same clock time tomorrow.
    return target if target > now else target + timedelta(days=1)


def _end_of_day(now: datetime, rules: DueDateRules) -> datetime:
    eod = _at_hour(now, rules.end_of_day_hour)
    return eod if eod > now else eod + timedelta(days=1)


def _this_week(now: datetime, rules: DueDateRules) -> datetime:
    days_ahead = (_FRIDAY - now.weekday()) % 7
    friday = _at_hour(now + timedelta(days=days_ahead), rules.week_end_hour)
    return friday if friday > now else friday + timedelta(weeks=1)


def _specific_day(timeframe: Timeframe, now: datetime, rules: DueDateRules) -> datetime:
    text = (timeframe.matched_text or "").lower()
    target = next((i for i, name in enumerate(_WEEKDAYS) if name in text), None)
    if target is None:
        return now + timedelta(days=1)
    days_ahead = (target - now.weekday()) % 7 or 7   # same weekday → next week
    return _at_hour(now + timedelta(days=days_ahead), rules.weekday_due_hour)


def calculate_due_date(
    timeframe: Timeframe, now: datetime, rules: DueDateRules | None = None,
) -> datetime:
    """Return the absolute due time for a timeframe, relative to `now`."""
    rules = rules or DueDateRules.from_settings()
    kind = timeframe.kind
    value = timeframe.value

    if kind == TimeframeKind.SPECIFIC_TIME:
        return _specific_time(timeframe, now, rules)
    if kind == TimeframeKind.END_OF_DAY:
        return _end_of_day(now, rules)
    if kind == TimeframeKind.TOMORROW:
        return _at_hour(now + timedelta(days=1), rules.default_start_hour)
    if kind in (TimeframeKind.TODAY, TimeframeKind.LATER_TODAY):
        return now + rules.today_offset
    if kind == TimeframeKind.IN_MINUTES:
        return now + timedelta(minutes=value or rules.default_in_minutes)
    if kind == TimeframeKind.IN_HOURS:
        return now + timedelta(hours=value or rules.default_in_hours)
    if kind == TimeframeKind.IN_DAYS:
        return now + timedelta(days=value or rules.default_in_days)
    if kind == TimeframeKind.NEXT_WEEK:
        return _at_hour(now + timedelta(days=7), rules.default_start_hour)
    if kind == TimeframeKind.THIS_WEEK:
        return _this_week(now, rules)
    if kind == TimeframeKind.SPECIFIC_DAY:
        return _specific_day(timeframe, now, rules)
    if kind == TimeframeKind.FEW_MINUTES:
        return now + rules.few_minutes
    if kind == TimeframeKind.FEW_HOURS:
        return now + rules.few_hours
    if kind == TimeframeKind.WITHIN:
        step = _UNIT_DELTAS.get(timeframe.unit, _UNIT_DELTAS[TimeUnit.HOURS])
        return now + (value or 1) * step
    return now + rules.default_horizon


def localize(dt: datetime, now: datetime) -> datetime:
    """Read a naive `dt` in now's timezone; aware values pass through."""
    if dt.tzinfo is None and now.tzinfo is not None:
        return dt.replace(tzinfo=now.tzinfo)
    return dt


def determine_priority(timeframe: Timeframe) -> int:
    """Map timeframe urgency to a priority tier (1 = highest)."""
    return _PRIORITY_BY_KIND.get(timeframe.kind, _DEFAULT_PRIORITY)


def format_due_date(due: datetime, now: datetime) -> str:
    """Human-friendly relative due time for acknowledgements and DMs."""
    due = localize(due, now)
    diff = due - now
    hours = round(diff.total_seconds() / 3600)
    days = round(diff.total_seconds() / 86400)
    clock = due.strftime("%H:%M")

    if diff < timedelta(hours=1):
        return f"in {max(round(diff.total_seconds() / 60), 0)} minutes"
    if diff < timedelta(hours=24):
        return f"in {hours} hours ({clock})"
    if days == 1:
        return f"tomorrow at {clock}"
    return f"on {due.date().isoformat()} at {clock}"
