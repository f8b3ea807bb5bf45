from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(value: datetime) -> datetime:
    value = ensure_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def floor_minute(value: datetime) -> datetime:
    return ensure_utc(value).replace(second=0, microsecond=0)


def days_between(earlier: datetime, later: datetime) -> float:
    return (ensure_utc(later) - ensure_utc(earlier)) / timedelta(days=1)
