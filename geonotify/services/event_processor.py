"""
Geofence Event Processor.

Decides, exactly once per fingerprint, whether a geofence crossing should
produce a notification:

    validate -> score -> [user lock] dedup -> mute/snooze -> quiet hours/rate
             -> persist event + mark fingerprint (one transaction) -> notify

Suppressions are ordinary results, not errors. Only malformed input
(ValidationError) and infrastructure trouble (ProcessingError) raise.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
import threading

import pydantic
from sqlmodel import select, func
from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from geonotify.db.config import store_session
from geonotify.errors import GeonotifyError, LimitExceededError, ValidationError
from geonotify.models.geofence_event import GeofenceEventRecord
from geonotify.schemas.events import GeofenceEventIn
from geonotify.services.dedup_store import FingerprintStore
from geonotify.services.locks import UserLockRegistry
from geonotify.services.suppression import SnoozeMuteManager
from geonotify.utils.clock import Clock, utcnow
from geonotify.utils.logger import get_logger
from geonotify.utils.metrics import MetricsCollector

logger = get_logger(__name__)

APPROACH_RINGS = ("approach_5mi", "approach_3mi", "approach_1mi")


def classify_event(event: GeofenceEventIn) -> Optional[str]:
    """Notification type for an event, or None when the crossing is not actionable."""
    if event.geofence_type == "post_arrival":
        return "post_arrival"
    if event.geofence_type in APPROACH_RINGS:
        return "approach" if event.event_type == "enter" else None
    if event.geofence_type == "arrival":
        return "arrival" if event.event_type == "enter" else "completion"
    return None


@dataclass
class ProcessingResult:
    """Decision for one event."""
    event: GeofenceEventIn
    should_notify: bool
    reason: str  # notify, duplicate, suppressed, quiet_hours, rate_limited, low_confidence, not_actionable
    fingerprint: Optional[str] = None
    notification_type: Optional[str] = None
    suppressed_by: Optional[str] = None
    notification_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eventId": self.event.id,
            "taskId": self.event.task_id,
            "shouldNotify": self.should_notify,
            "reason": self.reason,
            "notificationType": self.notification_type,
            "suppressedBy": self.suppressed_by,
            "notificationId": self.notification_id,
        }


@dataclass
class BatchItem:
    """Per-item outcome of process_batch: exactly one of result / error is set."""
    event: Union[GeofenceEventIn, Dict[str, Any]]
    result: Optional[ProcessingResult] = None
    error: Optional[GeonotifyError] = None

    @property
    def event_id(self) -> Optional[str]:
        if isinstance(self.event, GeofenceEventIn):
            return self.event.id
        return self.event.get("id")


@dataclass
class _Counters:
    received: int = 0
    by_reason: Dict[str, int] = field(default_factory=dict)


class GeofenceEventProcessor:
    """Scores, deduplicates and gates geofence events."""

    def __init__(
        self,
        engine: Engine,
        fingerprints: FingerprintStore,
        manager: SnoozeMuteManager,
        clock: Clock = utcnow,
        metrics: Optional[MetricsCollector] = None,
        min_confidence: float = 0.5,
        lock_timeout_seconds: float = 5.0,
        fingerprint_retention_hours: int = 48,
        event_retention_days: int = 30,
    ):
        self.engine = engine
        self.fingerprints = fingerprints
        self.manager = manager
        self.clock = clock
        self.metrics = metrics or MetricsCollector()
        self.min_confidence = min_confidence
        self.locks = UserLockRegistry(lock_timeout_seconds)
        self.fingerprint_retention = timedelta(hours=fingerprint_retention_hours)
        self.event_retention = timedelta(days=event_retention_days)
        # Receives every notify decision; wired by the engine to the outbox
        self.on_notify = None
        self._counters: Dict[str, _Counters] = {}
        self._counters_lock = threading.Lock()

    def process_event(
        self,
        event: Union[GeofenceEventIn, Dict[str, Any]],
        user_id: Optional[str] = None,
    ) -> ProcessingResult:
        """
        Process one geofence event.

        Args:
            event: Event model or raw mapping
            user_id: Authenticated user; overrides whatever the event carries

        Returns:
            ProcessingResult

        Raises:
            ValidationError: Malformed event
            ProcessingError: Store or lock unavailable; nothing was marked
        """
        now = self.clock()
        event = self.validate(event, user_id, now)
        self.metrics.increment_counter("events_received_total")

        notification_type = classify_event(event)
        if event.confidence < self.min_confidence:
            return self._finish(ProcessingResult(event, False, "low_confidence", notification_type=notification_type))
        if notification_type is None:
            return self._finish(ProcessingResult(event, False, "not_actionable"))

        fingerprint = self.fingerprints.fingerprint(event)
        with self.locks.hold(event.user_id):
            if self.fingerprints.is_seen(fingerprint):
                return self._finish(ProcessingResult(event, False, "duplicate", fingerprint, notification_type))

            check = self.manager.check_task(event.user_id, event.task_id, notification_type, now=now)
            if check.suppressed:
                return self._finish(ProcessingResult(
                    event, False, "suppressed", fingerprint, notification_type, suppressed_by=check.suppressed_by
                ))

            try:
                self.manager.enforce_delivery_limits(event.user_id, now)
            except LimitExceededError as e:
                return self._finish(ProcessingResult(event, False, e.reason, fingerprint, notification_type))

            if not self._persist(event, fingerprint, notification_type, now):
                return self._finish(ProcessingResult(event, False, "duplicate", fingerprint, notification_type))

        result = ProcessingResult(event, True, "notify", fingerprint, notification_type)
        if self.on_notify is not None:
            result.notification_id = self.on_notify(event, notification_type)
        return self._finish(result)

    def process_batch(
        self,
        events: List[Union[GeofenceEventIn, Dict[str, Any]]],
        user_id: Optional[str] = None,
    ) -> List[BatchItem]:
        """Process events in order; a failing item never stops the rest."""
        items: List[BatchItem] = []
        for event in events:
            try:
                items.append(BatchItem(event, result=self.process_event(event, user_id)))
            except GeonotifyError as e:
                self.metrics.increment_counter("events_failed_total")
                items.append(BatchItem(event, error=e))
        return items

    def validate(
        self,
        event: Union[GeofenceEventIn, Dict[str, Any]],
        user_id: Optional[str],
        now: datetime,
    ) -> GeofenceEventIn:
        """Parse and stamp an event; raises ValidationError when it is unusable."""
        if not isinstance(event, GeofenceEventIn):
            try:
                event = GeofenceEventIn.model_validate(event)
            except pydantic.ValidationError as e:
                raise ValidationError(
                    "Invalid geofence event",
                    {"errors": e.errors(include_url=False, include_context=False)}
                ) from e

        owner = user_id or event.user_id
        if not owner:
            raise ValidationError("Event has no user", {"field": "user_id", "event_id": event.id})

        # Models built with model_construct skip field validation
        if not -90 <= event.location.latitude <= 90 or not -180 <= event.location.longitude <= 180:
            raise ValidationError("Coordinates out of range", {"field": "location", "event_id": event.id})
        if not 0.0 <= event.confidence <= 1.0:
            raise ValidationError("Confidence must be within [0, 1]", {"field": "confidence", "event_id": event.id})

        return event.stamped(owner, now)

    def get_processing_stats(self, user_id: str, days: int = 7) -> Dict[str, Any]:
        """Aggregate counters for a user over the last `days` days."""
        if days < 1:
            raise ValidationError("days must be at least 1", {"field": "days"})
        since = self.clock() - timedelta(days=days)

        with store_session(self.engine) as session:
            rows = session.exec(
                select(GeofenceEventRecord.notification_type, func.count())
                .where(GeofenceEventRecord.user_id == user_id)
                .where(GeofenceEventRecord.created_at >= since)
                .group_by(GeofenceEventRecord.notification_type)
            ).all()
            tasks = session.exec(
                select(func.count(func.distinct(GeofenceEventRecord.task_id)))
                .where(GeofenceEventRecord.user_id == user_id)
                .where(GeofenceEventRecord.created_at >= since)
            ).one()

        by_type = {notification_type: count for notification_type, count in rows}
        with self._counters_lock:
            counters = self._counters.get(user_id, _Counters())
            received, outcomes = counters.received, dict(counters.by_reason)
        return {
            "user_id": user_id,
            "days": days,
            "notified_events": sum(by_type.values()),
            "by_notification_type": by_type,
            "unique_tasks": tasks,
            "received_since_start": received,
            "outcomes_since_start": outcomes,
        }

    def evict_stale(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Forget fingerprints past retention and delete old event rows."""
        now = now or self.clock()
        fingerprints = self.fingerprints.evict_older_than(now - self.fingerprint_retention)
        with store_session(self.engine) as session:
            result = session.exec(
                delete(GeofenceEventRecord).where(GeofenceEventRecord.created_at < now - self.event_retention)
            )
            session.commit()
            events = result.rowcount or 0
        return {"fingerprints": fingerprints, "events": events}

    def _persist(self, event: GeofenceEventIn, fingerprint: str, notification_type: str, now: datetime) -> bool:
        """
        Store the event and its fingerprint atomically.

        Returns:
            False when another writer already claimed the fingerprint
        """
        with store_session(self.engine) as session:
            session.add(GeofenceEventRecord(
                event_id=event.id,
                fingerprint=fingerprint,
                user_id=event.user_id,
                task_id=event.task_id,
                geofence_id=event.geofence_id,
                geofence_type=event.geofence_type,
                event_type=event.event_type,
                notification_type=notification_type,
                latitude=event.location.latitude,
                longitude=event.location.longitude,
                confidence=event.confidence,
                occurred_at=event.timestamp,
                created_at=now,
            ))
            self.fingerprints.stage_mark(session, fingerprint, event.user_id, event.id, now)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("Fingerprint claimed concurrently", event_id=event.id, fingerprint=fingerprint)
                return False
        return True

    def _finish(self, result: ProcessingResult) -> ProcessingResult:
        with self._counters_lock:
            counters = self._counters.setdefault(result.event.user_id, _Counters())
            counters.received += 1
            counters.by_reason[result.reason] = counters.by_reason.get(result.reason, 0) + 1

        if result.should_notify:
            self.metrics.increment_counter("events_notified_total")
        elif result.reason == "duplicate":
            self.metrics.increment_counter("events_duplicate_total")
        else:
            self.metrics.increment_counter("events_suppressed_total")

        logger.info(
            "Geofence event processed",
            event_id=result.event.id,
            user_id=result.event.user_id,
            task_id=result.event.task_id,
            reason=result.reason,
            suppressed_by=result.suppressed_by,
        )
        return result
