"""
Cooldown cache: signature -> (window start, cumulative occurrences).

Checking is separate from recording so the alert manager can persist the
outcome first and only then commit it to the cache.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


class FireDecision(str, enum.Enum):
    NEW = "new"                # first firing, notify
    SUPPRESSED = "suppressed"  # inside the cooldown window, count only
    REFIRED = "refired"        # window elapsed, notify and open a new window

    @property
    def notifies(self) -> bool:
        return self is not FireDecision.SUPPRESSED


@dataclass(frozen=True)
class CooldownEntry:
    last_fired: datetime
    occurrences: int


class CooldownCache:
    """Time-windowed deduplication map for alert signatures."""

    def __init__(self) -> None:
        self._entries: dict[str, CooldownEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, signature: str) -> bool:
        return signature in self._entries

    def get(self, signature: str) -> Optional[CooldownEntry]:
        return self._entries.get(signature)

    def check(self, signature: str, now: datetime, window: timedelta) -> tuple[FireDecision, CooldownEntry]:
        """Decide what a firing at ``now`` means and the entry it would leave behind."""
        entry = self._entries.get(signature)
        if entry is None:
            return FireDecision.NEW, CooldownEntry(last_fired=now, occurrences=1)
        if now - entry.last_fired < window:
            return FireDecision.SUPPRESSED, CooldownEntry(entry.last_fired, entry.occurrences + 1)
        return FireDecision.REFIRED, CooldownEntry(now, entry.occurrences + 1)

    def record(self, signature: str, entry: CooldownEntry) -> None:
        self._entries[signature] = entry

    def forget(self, signature: str) -> None:
        self._entries.pop(signature, None)

    def clear(self) -> None:
        self._entries.clear()
