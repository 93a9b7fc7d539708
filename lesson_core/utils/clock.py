"""
Time helpers. Timestamps are stored as naive UTC so SQLite and PostgreSQL
compare them the same way.
"""
from datetime import datetime, timedelta, timezone

WEEK = timedelta(days=7)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def week_start(now: datetime) -> datetime:
    """Most recent Sunday 00:00 UTC at or before now (weekly windows roll over on Sunday)."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    # weekday(): Monday=0 .. Sunday=6
    days_since_sunday = (midnight.weekday() + 1) % 7
    return midnight - timedelta(days=days_since_sunday)


def weeks_elapsed(since: datetime, now: datetime) -> int:
    """Number of whole weeks between since and now (0 when now is before since)."""
    if now <= since:
        return 0
    return (now - since) // WEEK
