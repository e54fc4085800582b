"""Per-user notification preferences model for SQLModel."""
from sqlmodel import SQLModel, Field
from datetime import datetime
from typing import Optional

from geonotify.utils.clock import utcnow


class NotificationPreferences(SQLModel, table=True):
    """Notification preferences; a user without a row gets the defaults below."""

    __tablename__ = "notification_preferences"

    user_id: str = Field(primary_key=True, max_length=100)
    timezone: str = Field(default="UTC", max_length=64)  # pytz zone name
    quiet_hours_start: Optional[str] = Field(default=None, max_length=5)  # HH:MM local
    quiet_hours_end: Optional[str] = Field(default=None, max_length=5)  # HH:MM local
    enable_bundling: bool = Field(default=True)
    max_notifications_per_hour: int = Field(default=10)
    default_snooze_duration: str = Field(default="15m", max_length=20)
    max_snooze_count: int = Field(default=5)
    default_mute_duration: str = Field(default="1h", max_length=20)
    allow_permanent_mute: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
