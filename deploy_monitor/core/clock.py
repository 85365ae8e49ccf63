"""Millisecond-precision UTC time helpers."""

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]

_MILLISECOND = timedelta(milliseconds=1)


def truncate_ms(value: datetime) -> datetime:
    """Drop sub-millisecond precision so stored durations stay exact."""
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utc_now() -> datetime:
    return truncate_ms(datetime.now(timezone.utc))


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Whole milliseconds between two timestamps."""
    return (end - start) // _MILLISECOND


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
