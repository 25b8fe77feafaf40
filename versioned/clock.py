"""
Timestamp source for version rows.

Every row written by one operation shares one timestamp, and separate
operations must never share one, so history ordered by ``inserted_at``
cannot interleave two writes.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class MonotonicClock:
    """
    Wall clock in UTC that never repeats or goes backwards within a process.

    If the system clock returns a value at or before the previous tick, the
    previous tick plus one microsecond is returned instead.
    """

    _resolution = timedelta(microseconds=1)

    def __init__(self) -> None:
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + self._resolution
            self._last = current
            return current


default_clock = MonotonicClock()
