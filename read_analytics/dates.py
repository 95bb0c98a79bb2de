# read_analytics/dates.py
from datetime import date, datetime, time, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_bounds(day: date):
    """Interval half-open [day 00:00Z, day+1 00:00Z)."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def parse_run_at(value: str) -> time:
    hour, minute = value.split(":")
    return time(int(hour), int(minute), tzinfo=timezone.utc)
