"""
Notification templates.

Turns a scored geofence event into a Notification: title, body and the
action buttons that fit the notification type. Place and task names come
from the PlaceLookup; when the lookup has nothing (or timed out) the
wording falls back to generic text.
"""
from datetime import datetime
from typing import Dict, List, Optional
import uuid

from geonotify.schemas.events import GeofenceEventIn
from geonotify.schemas.notifications import (
    Notification,
    NotificationAction,
    NotificationMetadata,
)
from geonotify.services.lookups import PlaceInfo

METERS_PER_MILE = 1609.34

GENERIC_PLACE = "your destination"
GENERIC_TASK = "your reminder"

ACTIONS: Dict[str, NotificationAction] = {
    "complete": NotificationAction(id="complete", title="Complete", type="complete"),
    "snooze_15m": NotificationAction(id="snooze_15m", title="Snooze 15m", type="snooze_15m"),
    "snooze_1h": NotificationAction(id="snooze_1h", title="Snooze 1h", type="snooze_1h"),
    "snooze_today": NotificationAction(id="snooze_today", title="Snooze Today", type="snooze_today"),
    "open_map": NotificationAction(id="open_map", title="Open Map", type="open_map"),
    "mute": NotificationAction(id="mute", title="Mute", type="mute", destructive=True),
}

_ACTIONS_BY_TYPE = {
    "approach": ("complete", "snooze_15m", "open_map", "mute"),
    "arrival": ("complete", "snooze_15m", "snooze_1h", "mute"),
    "post_arrival": ("complete", "snooze_1h", "snooze_today", "mute"),
    "completion": ("complete", "snooze_today", "mute"),
}

BUNDLE_ACTIONS = ("complete", "snooze_1h", "open_map", "mute")


def actions_for(notification_type: str) -> List[NotificationAction]:
    return [ACTIONS[name] for name in _ACTIONS_BY_TYPE[notification_type]]


def bundle_actions() -> List[NotificationAction]:
    return [ACTIONS[name] for name in BUNDLE_ACTIONS]


def render_text(notification_type: str, place: Optional[PlaceInfo]) -> Dict[str, str]:
    """
    Title and body for a notification type.

    Args:
        notification_type: approach, arrival, post_arrival or completion
        place: Lookup result, None for generic wording

    Returns:
        Dict with "title" and "body"
    """
    place_name = place.name if place and place.name else GENERIC_PLACE
    task = place.task_title if place and place.task_title else GENERIC_TASK
    distance = place.distance_meters if place else None

    if notification_type == "approach":
        if distance and distance > METERS_PER_MILE:
            miles = round(distance / METERS_PER_MILE, 1)
            return {
                "title": f"Approaching {place_name}",
                "body": f"You're {miles} miles from {place_name} — {task}?",
            }
        return {
            "title": f"Near {place_name}",
            "body": f"You're close to {place_name} — {task}?",
        }
    if notification_type == "arrival":
        return {
            "title": f"Arrived at {place_name}",
            "body": f"Arriving at {place_name} — {task} now?",
        }
    if notification_type == "post_arrival":
        return {
            "title": f"Still at {place_name}",
            "body": f"Still at {place_name} — {task.lower()}?",
        }
    return {
        "title": f"Leaving {place_name}",
        "body": f"Did you take care of {task}?",
    }


def build_notification(
    event: GeofenceEventIn,
    notification_type: str,
    place: Optional[PlaceInfo],
    scheduled_time: datetime,
) -> Notification:
    """Create the Notification for a stamped event that passed every gate."""
    text = render_text(notification_type, place)
    return Notification(
        id=f"notif_{uuid.uuid4().hex}",
        task_id=event.task_id,
        user_id=event.user_id,
        type=notification_type,
        title=text["title"],
        body=text["body"],
        actions=actions_for(notification_type),
        metadata=NotificationMetadata(
            geofence_id=event.geofence_id,
            geofence_type=event.geofence_type,
            location=event.location,
            place_name=place.name if place else None,
            distance=place.distance_meters if place else None,
        ),
        scheduled_time=scheduled_time,
        event_id=event.id,
    )
