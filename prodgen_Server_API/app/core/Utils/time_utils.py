from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable, Optional


# Millisecond wall clock; components accept a replacement for deterministic tests.
Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def ms_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def datetime_to_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ManualClock:
    """Settable clock used by tests and simulations.

    Calling the instance returns the current value in milliseconds.
    """

    def __init__(self, start_ms: int = 0):
        self.value = int(start_ms)

    def __call__(self) -> int:
        return self.value

    def advance(self, ms: int) -> int:
        self.value += int(ms)
        return self.value

    def set(self, ms: int) -> None:
        self.value = int(ms)
