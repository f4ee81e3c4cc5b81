# ABOUTME: Clock helpers for usage accounting
# ABOUTME: Derives the YYYY-MM billing period label from UTC wall-clock time

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to aware UTC.

    SQLite hands timestamps back without tzinfo; those are stored as UTC,
    so naive values are tagged rather than converted.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def billing_month(now: datetime | None = None) -> str:
    """
    Billing period label for a point in time.

    Examples:
        >>> billing_month(datetime(2025, 11, 30, 23, 59, tzinfo=timezone.utc))
        '2025-11'
    """
    now = as_utc(now) if now is not None else utc_now()
    return f"{now.year:04d}-{now.month:02d}"
