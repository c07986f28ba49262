"""
Time helpers.

Timestamps are stored as naive UTC datetimes so that every supported backend
(SQLite included) compares them the same way.
"""
import threading
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MonotonicClock:
    """
    Hands out strictly increasing UTC timestamps.

    Two calls within the same clock tick (or after the wall clock stepped
    backwards) get the previous value plus one microsecond.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last = None

    def now(self) -> datetime:
        with self._lock:
            current = utcnow()
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current
