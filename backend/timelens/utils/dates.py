"""UTC date helpers"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def today_utc() -> date:
    """Calendar day used for usage counters"""
    return utcnow().date()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(value) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to an aware datetime"""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of a UTC calendar day"""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    """Start of a rolling month (30 days) or year (365 days) ending now"""
    now = now or utcnow()
    if period == "year":
        return now - timedelta(days=365)
    if period == "month":
        return now - timedelta(days=30)
    raise ValueError(f"Unsupported period: {period}")
