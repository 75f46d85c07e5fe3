"""
Timestamp Utilities

Wire timestamps are UTC with millisecond precision, e.g.
``2024-05-01T12:30:45.123Z``.
"""

import time
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """
    Format a datetime as an ISO-8601 UTC string with millisecond precision.

    Naive datetimes are treated as UTC.

    Examples:
        # 2024-05-01 12:30:45.123456+00:00 -> "2024-05-01T12:30:45.123Z"
        # 2024-05-01 14:30:45+02:00        -> "2024-05-01T12:30:45.000Z"
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def utc_timestamp_ms() -> str:
    """Current UTC time in wire format"""
    return format_timestamp(utc_now())


def monotonic_ms() -> float:
    """Monotonic clock in milliseconds, for measuring durations"""
    return time.monotonic() * 1000.0


def elapsed_ms(start_ms: float) -> float:
    """Milliseconds elapsed since ``start_ms`` (from monotonic_ms), rounded to 0.01"""
    return round(monotonic_ms() - start_ms, 2)
