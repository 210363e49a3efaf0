"""
Clock Module

Wall-clock abstraction injected into every component that compares against time
(lockout windows, password age, MFA expiry, sweep scheduling).
"""

import threading
from datetime import datetime, timezone, timedelta
from typing import Optional


class Clock:
    """Source of the current UTC time"""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Real wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """Clock that only moves when told to. Used for deterministic tests and replays."""

    def __init__(self, start: Optional[datetime] = None):
        start = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: Optional[timedelta] = None, **kwargs) -> datetime:
        """Move forward by a timedelta or timedelta keyword arguments"""
        step = delta if delta is not None else timedelta(**kwargs)
        with self._lock:
            self._now = self._now + step
            return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = value


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp, assuming UTC for naive values"""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
