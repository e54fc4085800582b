"""
Dedup / fingerprint store.

Maps an event fingerprint to the fact that it already produced a notify
decision. The fingerprint is the canonical dedup key:

    sha256("user_id|geofence_id|event_type|bucket")

where bucket = floor(epoch seconds of the event timestamp / dedup window).
Using the client-side event timestamp makes replays of offline batches
collapse onto the fingerprints of the original crossings.
"""
from datetime import datetime, timezone
from typing import Optional
import hashlib

from sqlmodel import Session
from sqlalchemy import delete
from sqlalchemy.engine import Engine

from geonotify.db.config import store_session
from geonotify.models.geofence_event import EventFingerprint
from geonotify.schemas.events import GeofenceEventIn
from geonotify.utils.logger import get_logger

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1)


def time_bucket(timestamp: datetime, window_minutes: int) -> int:
    """Index of the dedup window `timestamp` (naive UTC) falls in."""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    seconds = (timestamp - _EPOCH).total_seconds()
    return int(seconds // (window_minutes * 60))


def compute_fingerprint(event: GeofenceEventIn, window_minutes: int) -> str:
    """
    Deterministic dedup key for an event.

    Args:
        event: Event with user_id and timestamp already stamped
        window_minutes: Dedup window (bucket width)

    Returns:
        Hex sha256 digest
    """
    if event.user_id is None or event.timestamp is None:
        raise ValueError("event must be stamped with user_id and timestamp before fingerprinting")
    bucket = time_bucket(event.timestamp, window_minutes)
    raw = f"{event.user_id}|{event.geofence_id}|{event.event_type}|{bucket}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class FingerprintStore:
    """Persistent set of seen fingerprints with retention-based eviction."""

    def __init__(self, engine: Engine, window_minutes: int = 15):
        self.engine = engine
        self.window_minutes = window_minutes

    def fingerprint(self, event: GeofenceEventIn) -> str:
        return compute_fingerprint(event, self.window_minutes)

    def is_seen(self, fingerprint: str, session: Optional[Session] = None) -> bool:
        """Check whether a fingerprint already produced a notification."""
        if session is not None:
            return session.get(EventFingerprint, fingerprint) is not None
        with store_session(self.engine) as own:
            return own.get(EventFingerprint, fingerprint) is not None

    def stage_mark(self, session: Session, fingerprint: str, user_id: str, event_id: str, now: datetime) -> None:
        """
        Add the fingerprint row to `session` without committing.

        The caller commits it together with the persisted event, so either both
        land or neither does. A concurrent insert of the same key fails the
        commit with an IntegrityError.
        """
        session.add(EventFingerprint(
            fingerprint=fingerprint,
            user_id=user_id,
            event_id=event_id,
            seen_at=now,
        ))

    def evict_older_than(self, cutoff: datetime) -> int:
        """Forget fingerprints seen before `cutoff`; returns the number removed."""
        with store_session(self.engine) as session:
            result = session.exec(delete(EventFingerprint).where(EventFingerprint.seen_at < cutoff))
            session.commit()
            removed = result.rowcount or 0

        if removed:
            logger.info("Evicted stale fingerprints", count=removed, cutoff=cutoff.isoformat())
        return removed
