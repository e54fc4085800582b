"""Geofence event and dedup fingerprint models for SQLModel."""
from sqlmodel import SQLModel, Field
from datetime import datetime
from typing import Optional

from geonotify.utils.clock import utcnow


class GeofenceEventRecord(SQLModel, table=True):
    """A geofence crossing that produced a notify decision (persisted once per fingerprint)."""

    __tablename__ = "geofence_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(max_length=64, index=True)  # client supplied event identifier
    fingerprint: str = Field(max_length=64, unique=True)
    user_id: str = Field(max_length=100, index=True)
    task_id: str = Field(max_length=100, index=True)
    geofence_id: str = Field(max_length=100)
    geofence_type: str = Field(max_length=20)  # approach_5mi, approach_3mi, approach_1mi, arrival, post_arrival
    event_type: str = Field(max_length=10)  # enter, exit
    notification_type: str = Field(max_length=20)  # approach, arrival, post_arrival, completion
    latitude: float
    longitude: float
    confidence: float = Field(default=1.0)
    occurred_at: datetime  # client timestamp of the crossing
    created_at: datetime = Field(default_factory=utcnow, index=True)


class EventFingerprint(SQLModel, table=True):
    """Dedup store row: the primary key makes check-then-set atomic across processes."""

    __tablename__ = "event_fingerprints"

    fingerprint: str = Field(primary_key=True, max_length=64)
    user_id: str = Field(max_length=100, index=True)
    event_id: str = Field(max_length=64)
    seen_at: datetime = Field(default_factory=utcnow, index=True)
