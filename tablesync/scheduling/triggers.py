"""
Reload Triggers

Pure evaluation of the auto-reload schedule. Called on every scheduler tick
with the current workspace-local time; decides whether a reload is due.

Supported triggers:
- interval: every N minutes since the last reload
- cron: 5 fields (minute hour day-of-month month day-of-week, Sunday = 0)
- absolute: a set of "HH:MM" wall-clock times

Cron and absolute triggers fire at most once per calendar minute.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from tablesync.base.models import ScheduleConfig
from tablesync.kernel.errors import ScheduleMalformedError
from tablesync.kernel.time import align_to

logger = structlog.get_logger()

# (name, min, max) for each cron field, in order
CRON_FIELDS: tuple[tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 6),
)

_ABSOLUTE_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

# Malformed inputs already reported
_reported: set[str] = set()


@dataclass(frozen=True)
class CronTerm:
    """One comma-separated item of a cron field."""

    start: int | None = None  # None means "*"
    end: int | None = None
    step: int | None = None

    def matches(self, value: int) -> bool:
        if self.start is None:
            if self.step is None:
                return True
            return value % self.step == 0
        end = self.end if self.end is not None else self.start
        if self.step is not None and self.end is None:
            # "a/n": from a up to the field maximum
            return value >= self.start and (value - self.start) % self.step == 0
        if not self.start <= value <= end:
            return False
        return self.step is None or (value - self.start) % self.step == 0


@dataclass(frozen=True)
class CronField:
    name: str
    terms: tuple[CronTerm, ...]

    def matches(self, value: int) -> bool:
        return any(term.matches(value) for term in self.terms)


@dataclass(frozen=True)
class CronExpression:
    expression: str
    fields: tuple[CronField, ...]

    def matches(self, now: datetime) -> bool:
        values = (now.minute, now.hour, now.day, now.month, now.isoweekday() % 7)
        return all(f.matches(v) for f, v in zip(self.fields, values))


def _parse_int(raw: str, name: str, lo: int, hi: int, expression: str) -> int:
    if not raw.isdigit():
        raise ScheduleMalformedError(
            message=f"Invalid {name} value {raw!r}",
            meta={"expression": expression, "field": name},
        )
    value = int(raw)
    if not lo <= value <= hi:
        raise ScheduleMalformedError(
            message=f"{name} value {value} out of range {lo}-{hi}",
            meta={"expression": expression, "field": name},
        )
    return value


def _parse_term(raw: str, name: str, lo: int, hi: int, expression: str) -> CronTerm:
    base, sep, step_raw = raw.partition("/")
    step = None
    if sep:
        step = _parse_int(step_raw, name, 1, hi if hi > 0 else 1, expression)

    if base == "*":
        return CronTerm(step=step)

    start_raw, dash, end_raw = base.partition("-")
    start = _parse_int(start_raw, name, lo, hi, expression)
    if not dash:
        return CronTerm(start=start, step=step)

    end = _parse_int(end_raw, name, lo, hi, expression)
    if end < start:
        raise ScheduleMalformedError(
            message=f"Invalid {name} range {base!r}",
            meta={"expression": expression, "field": name},
        )
    return CronTerm(start=start, end=end, step=step)


def parse_cron(expression: str) -> CronExpression:
    """
    Parse a 5-field cron expression.

    Raises:
        ScheduleMalformedError: Wrong field count or an invalid field
    """
    parts = expression.split()
    if len(parts) != len(CRON_FIELDS):
        raise ScheduleMalformedError(
            message=f"Expected 5 cron fields, got {len(parts)}",
            meta={"expression": expression},
        )

    fields = []
    for raw, (name, lo, hi) in zip(parts, CRON_FIELDS):
        items = raw.split(",")
        if any(not item for item in items):
            raise ScheduleMalformedError(
                message=f"Empty item in {name} field",
                meta={"expression": expression, "field": name},
            )
        terms = tuple(_parse_term(item, name, lo, hi, expression) for item in items)
        fields.append(CronField(name=name, terms=terms))
    return CronExpression(expression=expression, fields=tuple(fields))


def parse_absolute_time(value: str) -> tuple[int, int]:
    """Parse "HH:MM" into (hour, minute)."""
    match = _ABSOLUTE_TIME_RE.fullmatch(value.strip())
    if not match:
        raise ScheduleMalformedError(message=f"Invalid time {value!r}", meta={"time": value})
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ScheduleMalformedError(message=f"Invalid time {value!r}", meta={"time": value})
    return hour, minute


def _report_once(key: str, error: ScheduleMalformedError) -> None:
    if key in _reported:
        return
    _reported.add(key)
    logger.warning("Ignoring malformed schedule", code=error.code, error=error.message, **error.meta)


def same_minute(a: datetime, b: datetime) -> bool:
    """True if both instants fall in the same calendar minute of `b`'s zone."""
    a = align_to(a, b)
    return (a.year, a.month, a.day, a.hour, a.minute) == (b.year, b.month, b.day, b.hour, b.minute)


def next_interval_due(schedule: ScheduleConfig) -> datetime | None:
    """When the interval trigger fires next, if it is armed."""
    if not schedule.interval_minutes or schedule.interval_minutes <= 0:
        return None
    if schedule.last_reload_at is None:
        return None
    return schedule.last_reload_at + timedelta(minutes=schedule.interval_minutes)


def interval_due(now: datetime, schedule: ScheduleConfig) -> bool:
    due_at = next_interval_due(schedule)
    if due_at is None:
        return False
    return now >= align_to(due_at, now)


def cron_due(now: datetime, schedule: ScheduleConfig) -> bool:
    expression = (schedule.cron_expression or "").strip()
    if not expression:
        return False
    try:
        cron = parse_cron(expression)
    except ScheduleMalformedError as e:
        _report_once(f"cron:{expression}", e)
        return False
    return cron.matches(now)


def absolute_due(now: datetime, schedule: ScheduleConfig) -> bool:
    for value in sorted(schedule.absolute_times):
        try:
            hour, minute = parse_absolute_time(value)
        except ScheduleMalformedError as e:
            _report_once(f"time:{value}", e)
            continue
        if (now.hour, now.minute) == (hour, minute):
            return True
    return False


def is_due(now: datetime, schedule: ScheduleConfig) -> bool:
    """
    Whether an automatic reload should start at `now`.

    Args:
        now: Current workspace-local time
        schedule: Schedule configuration, including the last reload time

    Returns:
        True if any configured trigger fires
    """
    if interval_due(now, schedule):
        return True

    last = schedule.last_reload_at
    if last is not None and same_minute(last, now):
        return False

    return cron_due(now, schedule) or absolute_due(now, schedule)
