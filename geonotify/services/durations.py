"""
Snooze and mute durations.

Durations are closed enums; anything else is rejected at the boundary with a
ValidationError. Each enum has an explicit resolver to a concrete expiry
instant (naive UTC), computed in the user's timezone where the duration is
calendar based.
"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

import pytz

from geonotify.errors import ValidationError
from geonotify.utils.clock import to_local, from_local

# Local hour a "until tomorrow" mute ends at
TOMORROW_RESUME_HOUR = 9


class SnoozeDuration(str, Enum):
    FIFTEEN_MINUTES = "15m"
    ONE_HOUR = "1h"
    TODAY = "today"


class MuteDuration(str, Enum):
    ONE_HOUR = "1h"
    FOUR_HOURS = "4h"
    EIGHT_HOURS = "8h"
    ONE_DAY = "24h"
    UNTIL_TOMORROW = "until_tomorrow"
    PERMANENT = "permanent"


_SNOOZE_OFFSETS = {
    SnoozeDuration.FIFTEEN_MINUTES: timedelta(minutes=15),
    SnoozeDuration.ONE_HOUR: timedelta(hours=1),
}

_MUTE_OFFSETS = {
    MuteDuration.ONE_HOUR: timedelta(hours=1),
    MuteDuration.FOUR_HOURS: timedelta(hours=4),
    MuteDuration.EIGHT_HOURS: timedelta(hours=8),
    MuteDuration.ONE_DAY: timedelta(hours=24),
}

# Notification action -> snooze duration
SNOOZE_ACTIONS = {
    "snooze_15m": SnoozeDuration.FIFTEEN_MINUTES,
    "snooze_1h": SnoozeDuration.ONE_HOUR,
    "snooze_today": SnoozeDuration.TODAY,
}


def parse_snooze_duration(value: Union[str, SnoozeDuration]) -> SnoozeDuration:
    try:
        return SnoozeDuration(value)
    except ValueError:
        raise ValidationError(
            f"Unknown snooze duration: {value}",
            {"field": "duration", "allowed": [d.value for d in SnoozeDuration]}
        )


def parse_mute_duration(value: Union[str, MuteDuration]) -> MuteDuration:
    try:
        return MuteDuration(value)
    except ValueError:
        raise ValidationError(
            f"Unknown mute duration: {value}",
            {"field": "duration", "allowed": [d.value for d in MuteDuration]}
        )


def _next_local_day_at(now: datetime, tz_name: str, hour: int) -> datetime:
    zone = pytz.timezone(tz_name)
    local_now = to_local(now, tz_name)
    next_day = (local_now + timedelta(days=1)).date()
    return from_local(zone.localize(datetime(next_day.year, next_day.month, next_day.day, hour)))


def resolve_snooze_until(
    duration: SnoozeDuration,
    now: datetime,
    tz_name: str = "UTC",
) -> datetime:
    """
    Resolve a snooze duration to the instant the snooze ends.

    Args:
        duration: Snooze duration
        now: Base instant (naive UTC)
        tz_name: User timezone, used by "today" (ends at local midnight)

    Returns:
        Naive UTC expiry
    """
    duration = parse_snooze_duration(duration)
    if duration is SnoozeDuration.TODAY:
        return _next_local_day_at(now, tz_name, 0)
    return now + _SNOOZE_OFFSETS[duration]


def resolve_mute_until(
    duration: MuteDuration,
    now: datetime,
    tz_name: str = "UTC",
) -> Optional[datetime]:
    """
    Resolve a mute duration to the instant the mute ends.

    Returns:
        Naive UTC expiry, or None for a permanent mute
    """
    duration = parse_mute_duration(duration)
    if duration is MuteDuration.PERMANENT:
        return None
    if duration is MuteDuration.UNTIL_TOMORROW:
        return _next_local_day_at(now, tz_name, TOMORROW_RESUME_HOUR)
    return now + _MUTE_OFFSETS[duration]
