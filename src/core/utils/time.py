"""Time utilities for consistent timezone handling."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """
    Get current UTC time as a timezone-aware datetime.

    Returns:
        datetime: Current UTC time with timezone information.
    """
    return datetime.now(UTC)


def utcnow_naive() -> datetime:
    """
    Get current UTC time as a naive datetime (no timezone info).

    All DateTime columns are stored without timezone, so this is the
    default for every timestamp column and every comparison against one.

    Example:
        >>> now = utcnow_naive()
        >>> now.tzinfo is None
        True
    """
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def seconds_since(moment: datetime | None, now: datetime | None = None) -> float | None:
    """Seconds elapsed between a naive UTC timestamp and now (or ``now``)."""
    if moment is None:
        return None
    now = now or utcnow_naive()
    return (now - moment).total_seconds()


def to_iso(value: datetime | None) -> str | None:
    """Render a naive UTC timestamp as ISO-8601 with a ``Z`` suffix."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value.isoformat() + "Z"
