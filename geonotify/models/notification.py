"""Notification history model for SQLModel."""
from sqlmodel import SQLModel, Field
from datetime import datetime
from typing import Optional
from sqlalchemy import Column, JSON

from geonotify.utils.clock import utcnow

HISTORY_STATUSES = ("pending", "delivered", "failed", "cancelled", "snoozed", "bundled", "expired")


class NotificationHistory(SQLModel, table=True):
    """Persisted record of every notification or bundle the engine produced."""

    __tablename__ = "notification_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    notification_id: str = Field(max_length=100, unique=True)
    user_id: str = Field(max_length=100, index=True)
    task_id: Optional[str] = Field(default=None, max_length=100, index=True)  # None for bundles
    kind: str = Field(default="notification", max_length=20)  # notification, bundle
    notification_type: Optional[str] = Field(default=None, max_length=20)
    title: str = Field(max_length=200)
    body: str = Field(max_length=1000)
    status: str = Field(default="pending", max_length=20)
    bundle_id: Optional[str] = Field(default=None, max_length=100)
    cancel_reason: Optional[str] = Field(default=None, max_length=50)
    delivery_attempts: int = Field(default=0)
    error: Optional[str] = Field(default=None, max_length=500)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))  # serialized Notification / bundle
    scheduled_time: datetime
    delivered_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
