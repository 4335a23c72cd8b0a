"""UTC time helpers. Timestamps are stored as naive UTC datetimes."""

import datetime
from typing import Callable

Clock = Callable[[], datetime.datetime]


def utcnow() -> datetime.datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


def isoformat_z(value: datetime.datetime | None) -> str | None:
    """Render a stored timestamp as ISO-8601 with a Z suffix."""
    if value is None:
        return None
    return to_naive_utc(value).isoformat() + "Z"
