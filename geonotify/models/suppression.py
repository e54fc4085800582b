"""Snooze and mute models for SQLModel."""
from sqlmodel import SQLModel, Field
from datetime import datetime
from typing import Optional
import uuid

from geonotify.utils.clock import utcnow


class NotificationSnooze(SQLModel, table=True):
    """
    A snooze window.

    notification_id NULL means the snooze covers the whole task; notification_type
    NULL means every notification type is held back.
    """

    __tablename__ = "notification_snoozes"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    user_id: str = Field(max_length=100, index=True)
    task_id: str = Field(max_length=100, index=True)
    notification_id: Optional[str] = Field(default=None, max_length=100, index=True)
    notification_type: Optional[str] = Field(default=None, max_length=20)
    duration: str = Field(max_length=20)  # 15m, 1h, today
    snooze_until: datetime
    original_scheduled_time: Optional[datetime] = None
    snooze_count: int = Field(default=1)
    reason: Optional[str] = Field(default=None, max_length=200)
    status: str = Field(default="active", max_length=20)  # active, cancelled, expired
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TaskMute(SQLModel, table=True):
    """A per-task mute. mute_until NULL means permanent."""

    __tablename__ = "task_mutes"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True, max_length=36)
    user_id: str = Field(max_length=100, index=True)
    task_id: str = Field(max_length=100, index=True)
    duration: str = Field(max_length=20)  # 1h, 4h, 8h, 24h, until_tomorrow, permanent
    mute_until: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, max_length=200)
    status: str = Field(default="active", max_length=20)  # active, cancelled, expired
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
