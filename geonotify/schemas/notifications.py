"""Notification, bundle and action schemas."""
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional, List

from geonotify.schemas.events import Location
from geonotify.utils.clock import to_naive_utc


class NotificationAction(BaseModel):
    """A button rendered with the notification."""
    id: str
    title: str
    type: str = Field(..., pattern=r"^(complete|snooze_15m|snooze_1h|snooze_today|open_map|mute)$")
    destructive: bool = False


class NotificationMetadata(BaseModel):
    geofence_id: str
    geofence_type: str
    location: Location
    place_name: Optional[str] = None
    distance: Optional[float] = None  # meters from the geofence center, when known


class Notification(BaseModel):
    """A location reminder produced for one geofence event."""
    id: str
    task_id: str
    user_id: str
    type: str = Field(..., pattern=r"^(approach|arrival|post_arrival|completion)$")
    title: str = Field(..., max_length=200)
    body: str = Field(..., max_length=1000)
    actions: List[NotificationAction] = Field(default_factory=list)
    metadata: NotificationMetadata
    scheduled_time: datetime
    event_id: Optional[str] = None

    @field_validator("scheduled_time")
    @classmethod
    def normalize_scheduled_time(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class NotificationBundle(BaseModel):
    """One delivered notification standing for several nearby reminders."""
    id: str
    user_id: str
    notifications: List[Notification]
    title: str
    body: str
    actions: List[NotificationAction] = Field(default_factory=list)
    location: Location
    radius: float
    scheduled_time: datetime

    @property
    def task_ids(self) -> List[str]:
        seen: List[str] = []
        for notification in self.notifications:
            if notification.task_id not in seen:
                seen.append(notification.task_id)
        return seen


class NotificationActionRequest(BaseModel):
    """Body of POST /notifications/{id}/action."""
    action: str = Field(..., pattern=r"^(complete|snooze_15m|snooze_1h|snooze_today|open_map|mute)$")


class BundleRequest(BaseModel):
    """Body of POST /notifications/bundle."""
    notifications: List[Notification] = Field(..., max_length=200)
