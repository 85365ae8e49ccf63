"""
Identifier generation for runs, webhook records, errors and alerts.

Run ids embed their creation time so they sort chronologically:
``run_20260118_143005_123456_9f2c1ab0``.
"""

import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

RUN_ID_PATTERN = re.compile(r"^run_(\d{8})_(\d{6})_(\d{6})_([a-f0-9]{8})$")


def _hex(length: int) -> str:
    return uuid4().hex[:length]


class RunIdGenerator:
    """Produces strictly increasing, time-sortable run ids."""

    def __init__(self) -> None:
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def next_id(self, now: Optional[datetime] = None) -> str:
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        with self._lock:
            if self._last is not None and now <= self._last:
                now = self._last + timedelta(microseconds=1)
            self._last = now
        return f"run_{now:%Y%m%d}_{now:%H%M%S}_{now:%f}_{_hex(8)}"


def new_webhook_id() -> str:
    return f"webhook_{_hex(12)}"


def new_error_id() -> str:
    return f"error_{_hex(10)}"


def new_alert_id() -> str:
    return f"alert_{_hex(12)}"


def timestamp_from_run_id(run_id: str) -> Optional[datetime]:
    """Recover the creation time embedded in a run id."""
    match = RUN_ID_PATTERN.match(run_id)
    if not match:
        return None
    date_part, time_part, micros, _ = match.groups()
    return datetime.strptime(f"{date_part}{time_part}{micros}", "%Y%m%d%H%M%S%f").replace(
        tzinfo=timezone.utc
    )
