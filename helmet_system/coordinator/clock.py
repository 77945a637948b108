"""
Central Clock
Monotonic UTC timestamps shared by the stream worker and the escalation coordinator
"""

import threading
import logging
from datetime import datetime, timezone, timedelta
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CentralClock:
    """
    Thread-safe clock for one monitored stream

    - Thread-safe access (worker, timer and user-cancel threads call it)
    - Monotonic timestamps (always increasing, no duplicates)
    - Injectable time source so tests can control wall time
    """

    def __init__(self, source: Optional[Callable[[], datetime]] = None):
        """
        Args:
            source: Callable returning the current aware UTC datetime
        """
        self._source = source or _utc_now
        self._lock = threading.Lock()
        self._last_timestamp: Optional[datetime] = None
        self._call_count = 0

    def now(self) -> datetime:
        """
        Get current timestamp

        Returns:
            datetime: Current UTC timestamp, strictly later than the previous one
        """
        with self._lock:
            current_time = self._source()

            if self._last_timestamp and current_time <= self._last_timestamp:
                current_time = self._last_timestamp + timedelta(microseconds=1)

            self._last_timestamp = current_time
            self._call_count += 1

            return current_time

    def seconds_since(self, moment: datetime) -> float:
        """Seconds elapsed between ``moment`` and now."""
        with self._lock:
            return (self._source() - moment).total_seconds()

    def get_stats(self) -> dict:
        with self._lock:
            return {
                'total_calls': self._call_count,
                'last_timestamp': self._last_timestamp.isoformat() if self._last_timestamp else None,
            }

    def __repr__(self):
        return f"<CentralClock(calls={self._call_count})>"
