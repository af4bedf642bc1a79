from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

UTC = timezone.utc


def utc_now() -> datetime:
    """Return a tz-aware UTC timestamp."""
    return datetime.now(UTC)


def local_now(tz_name: str) -> datetime:
    """Wall-clock time in the workspace timezone.

    Schedules (`HH:MM`, cron fields) are evaluated against this value.
    """
    return datetime.now(ZoneInfo(tz_name))


def is_tz_aware(value: datetime) -> bool:
    """True if a datetime is timezone-aware (has a non-None UTC offset)."""
    return value.tzinfo is not None and value.utcoffset() is not None


def coerce_utc(value: datetime, *, assume_naive_is_utc: bool = True) -> datetime:
    """Coerce any datetime to tz-aware UTC."""
    if is_tz_aware(value):
        return value.astimezone(UTC)

    if not assume_naive_is_utc:
        raise ValueError("Naive datetime cannot be coerced without an explicit assumption")

    return value.replace(tzinfo=UTC)


def align_to(value: datetime, reference: datetime) -> datetime:
    """Express `value` in the same timezone convention as `reference`.

    Naive values are compared as-is against naive references; aware values are
    converted into the reference's zone so calendar fields line up.
    """
    if is_tz_aware(reference):
        if not is_tz_aware(value):
            value = value.replace(tzinfo=reference.tzinfo)
        return value.astimezone(reference.tzinfo)
    if is_tz_aware(value):
        return value.replace(tzinfo=None)
    return value


def isoformat_z(value: datetime) -> str:
    """RFC3339-ish UTC string with a `Z` suffix."""
    dt = coerce_utc(value)
    return dt.isoformat().replace("+00:00", "Z")
