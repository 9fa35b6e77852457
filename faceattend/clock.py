"""
Injectable time sources.
Timestamps are naive local datetimes; the late cutoff is a local wall-clock time.
"""
import threading
from datetime import datetime, timedelta


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now()


class FixedClock:
    """Clock pinned to a given instant, for tests and replays."""

    def __init__(self, current: datetime):
        self._current = current
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def set(self, current: datetime):
        with self._lock:
            self._current = current

    def advance(self, **kwargs) -> datetime:
        with self._lock:
            self._current = self._current + timedelta(**kwargs)
            return self._current
