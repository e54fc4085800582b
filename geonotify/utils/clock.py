"""Clock helpers. Engine timestamps are naive UTC datetimes, matching what the database stores."""
from datetime import datetime, timedelta, timezone
from typing import Callable
import threading

import pytz

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(value: datetime, tz_name: str) -> datetime:
    """Convert a naive UTC datetime to an aware datetime in `tz_name`."""
    return pytz.utc.localize(value).astimezone(pytz.timezone(tz_name))


def from_local(value: datetime) -> datetime:
    """Convert an aware local datetime back to naive UTC."""
    return value.astimezone(pytz.utc).replace(tzinfo=None)


class ManualClock:
    """
    Settable clock for tests and simulations.

    Calling the instance returns the current logical time; `advance()` moves it.
    """

    def __init__(self, start: datetime):
        self._lock = threading.Lock()
        self._now = to_naive_utc(start)

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **delta) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = to_naive_utc(value)
