"""Snooze, mute and preference schemas."""
from pydantic import BaseModel, Field, field_validator
from typing import Optional

import pytz

from geonotify.services.durations import SnoozeDuration, MuteDuration

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class SnoozeCreate(BaseModel):
    """Body of POST /notifications/snoozes."""
    task_id: str = Field(..., min_length=1, max_length=100)
    duration: SnoozeDuration
    reason: Optional[str] = Field(None, max_length=200)


class SnoozeExtend(BaseModel):
    duration: SnoozeDuration


class MuteCreate(BaseModel):
    """Body of POST /notifications/mutes."""
    task_id: str = Field(..., min_length=1, max_length=100)
    duration: MuteDuration
    reason: Optional[str] = Field(None, max_length=200)


class MuteExtend(BaseModel):
    duration: MuteDuration


class PreferencesUpdate(BaseModel):
    """Body of PUT /notifications/preferences; omitted fields are left unchanged."""
    timezone: Optional[str] = Field(None, max_length=64)
    quiet_hours_start: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    quiet_hours_end: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    enable_bundling: Optional[bool] = None
    max_notifications_per_hour: Optional[int] = Field(None, ge=1, le=100)
    default_snooze_duration: Optional[SnoozeDuration] = None
    max_snooze_count: Optional[int] = Field(None, ge=1, le=50)
    default_mute_duration: Optional[MuteDuration] = None
    allow_permanent_mute: Optional[bool] = None

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {value}")
        return value
