from __future__ import annotations
from datetime import datetime, timedelta, timezone as dt_tz


def utcnow() -> datetime:
    return datetime.now(dt_tz.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """
    Normalize a datetime to aware UTC.

    Some backends (SQLite) hand back naive datetimes for timestamptz columns;
    those are stored as UTC, so naive values are tagged rather than converted.

    Examples:
        >>> as_utc(datetime(2025, 1, 10, 12, 0)).tzinfo
        datetime.timezone.utc
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=dt_tz.utc)
    return dt.astimezone(dt_tz.utc)


def registration_close_time(scheduled_at: datetime, is_challenge: bool, buffer_minutes: int) -> datetime:
    """
    Registration closes `buffer_minutes` before the start for organized matches.
    Challenges accept opponents right up to the scheduled start.

    Examples:
        >>> s = datetime(2025, 1, 10, 18, 0, tzinfo=dt_tz.utc)
        >>> registration_close_time(s, False, 30).time()
        datetime.time(17, 30)
        >>> registration_close_time(s, True, 30) == s
        True
    """
    scheduled_at = as_utc(scheduled_at)
    if is_challenge:
        return scheduled_at
    return scheduled_at - timedelta(minutes=buffer_minutes)


def credentials_reveal_time(scheduled_at: datetime, buffer_minutes: int) -> datetime:
    return as_utc(scheduled_at) - timedelta(minutes=buffer_minutes)


def minutes_until(target: datetime, now: datetime) -> float:
    return (as_utc(target) - as_utc(now)).total_seconds() / 60
