"""Time helpers. All persisted timestamps are naive UTC."""

from datetime import datetime, timezone, timedelta


HOUR = timedelta(hours=1)
DAY = timedelta(hours=24)


def utc_now() -> datetime:
    """Current time as naive UTC, matching the database columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start) / HOUR
