"""Geofence event schemas."""
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Any, Dict, Optional, List
import uuid

from geonotify.utils.clock import to_naive_utc


class Location(BaseModel):
    """A WGS84 coordinate."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    class Config:
        frozen = True


class GeofenceEventIn(BaseModel):
    """A raw "user crossed boundary X" signal. Immutable once created."""
    id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex}", min_length=1, max_length=64)
    user_id: Optional[str] = Field(None, max_length=100)  # stamped server-side from the token
    task_id: str = Field(..., min_length=1, max_length=100)
    geofence_id: str = Field(..., min_length=1, max_length=100)
    event_type: str = Field(..., pattern=r"^(enter|exit)$")
    geofence_type: str = Field(
        default="arrival",
        pattern=r"^(approach_5mi|approach_3mi|approach_1mi|arrival|post_arrival)$"
    )
    location: Location
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    timestamp: Optional[datetime] = None  # client time of the crossing, naive UTC

    class Config:
        frozen = True

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None

    def stamped(self, user_id: str, now: datetime) -> "GeofenceEventIn":
        """Copy with the authenticated user id and a timestamp filled in."""
        return self.model_copy(update={
            "user_id": user_id,
            "timestamp": self.timestamp or now,
        })


class EventBatchRequest(BaseModel):
    """Body of POST /geofences/events and /geofences/events/sync.

    Items stay raw here so each one is validated on its own and a bad item
    is reported in the results instead of failing the whole batch.
    """
    events: List[Dict[str, Any]] = Field(..., max_length=500)
