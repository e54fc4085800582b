"""
Event Retry Queue.

Events whose processing hit a transient failure wait here and are re-driven
with backoff until they succeed or run out of attempts. The queue is
sharded per user and bounded per user. Successful entries are removed;
exhausted ones stay as "failed" for inspection and manual retry.

Offline sync pushes a client's stored batch through the same dedup-aware
processing path, so replaying a batch is harmless.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union
import threading
import uuid

from geonotify.errors import GeonotifyError, ProcessingError, ValidationError
from geonotify.schemas.events import GeofenceEventIn
from geonotify.services.event_processor import GeofenceEventProcessor, ProcessingResult
from geonotify.services.locks import UserLockRegistry
from geonotify.utils.clock import Clock, utcnow
from geonotify.utils.logger import get_logger
from geonotify.utils.metrics import MetricsCollector

logger = get_logger(__name__)

# Minutes to wait before retry n (1-based); the last value repeats
RETRY_DELAYS_MINUTES = (1, 5, 15, 30, 60)


@dataclass
class QueuedEvent:
    id: str
    event: GeofenceEventIn
    user_id: str
    attempts: int = 0
    last_error: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utcnow)
    last_attempt: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    status: str = "pending"  # pending, processing, failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "eventId": self.event.id,
            "taskId": self.event.task_id,
            "geofenceId": self.event.geofence_id,
            "eventType": self.event.event_type,
            "attempts": self.attempts,
            "status": self.status,
            "lastError": self.last_error,
            "enqueuedAt": self.enqueued_at.isoformat(),
            "lastAttempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "nextRetryAt": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }


class EventRetryQueue:
    """Per-user retry queue in front of the event processor."""

    def __init__(
        self,
        processor: GeofenceEventProcessor,
        clock: Clock = utcnow,
        metrics: Optional[MetricsCollector] = None,
        max_attempts: int = 5,
        max_per_user: int = 500,
        lock_timeout_seconds: float = 5.0,
    ):
        self.processor = processor
        self.clock = clock
        self.metrics = metrics or MetricsCollector()
        self.max_attempts = max_attempts
        self.max_per_user = max_per_user
        self.locks = UserLockRegistry(lock_timeout_seconds)
        self._shards: Dict[str, Dict[str, QueuedEvent]] = {}
        self._completed = 0
        self._completed_by_user: Dict[str, int] = {}
        self._stats_lock = threading.Lock()

    def enqueue_event(
        self,
        event: Union[GeofenceEventIn, Dict[str, Any]],
        error: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """
        Queue an event for a later retry.

        Args:
            event: Event to retry
            error: Failure that sent it here; delays the first retry when set
            user_id: Owner, defaults to the event's user_id

        Returns:
            Queue entry id

        Raises:
            ValidationError: Event is malformed or has no owner
            ProcessingError: The user's queue is full
        """
        now = self.clock()
        event = self.processor.validate(event, user_id, now)

        entry = QueuedEvent(
            id=f"q_{uuid.uuid4().hex}",
            event=event,
            user_id=event.user_id,
            last_error=error,
            enqueued_at=now,
            next_retry_at=now + timedelta(minutes=RETRY_DELAYS_MINUTES[0]) if error else now,
        )
        with self.locks.hold(entry.user_id):
            shard = self._shard(entry.user_id)
            if len(shard) >= self.max_per_user:
                raise ProcessingError(
                    "Retry queue is full for user",
                    {"user_id": entry.user_id, "limit": self.max_per_user}
                )
            shard[entry.id] = entry

        logger.info("Event queued for retry", queue_id=entry.id, event_id=event.id, error=error)
        return entry.id

    def retry_event(self, queue_id: str, user_id: Optional[str] = None) -> bool:
        """
        Re-drive one entry immediately. A failed entry gets one more attempt.

        Returns:
            False when the entry is unknown, not owned by `user_id`, or being processed
        """
        entry = self._find(queue_id, user_id)
        if entry is None:
            return False

        with self.locks.hold(entry.user_id):
            if entry.status == "processing":
                return False
            if entry.status == "failed":
                entry.status = "pending"
                entry.attempts = min(entry.attempts, self.max_attempts - 1)
            entry.next_retry_at = None
            entry.last_error = None

        self._attempt(entry)
        return True

    def process_pending(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Retry every pending entry whose backoff has elapsed (one ticker pass)."""
        now = now or self.clock()
        due: List[QueuedEvent] = []
        for user_id in self.locks.user_ids():
            with self.locks.hold(user_id):
                for entry in self._shard(user_id).values():
                    if entry.status == "pending" and (entry.next_retry_at is None or entry.next_retry_at <= now):
                        due.append(entry)

        stats = {"attempted": 0, "completed": 0, "retrying": 0, "failed": 0}
        for entry in sorted(due, key=lambda e: e.enqueued_at):
            before = entry.attempts
            self._attempt(entry)
            if entry.attempts == before:
                continue
            stats["attempted"] += 1
            self.metrics.increment_counter("queue_retries_total")
            if entry.status == "completed":
                stats["completed"] += 1
            elif entry.status == "failed":
                stats["failed"] += 1
            else:
                stats["retrying"] += 1
        return stats

    def sync_offline_events(
        self,
        user_id: str,
        events: List[Union[GeofenceEventIn, Dict[str, Any]]],
    ) -> Dict[str, int]:
        """
        Replay a client's offline batch in the order it was submitted.

        Returns:
            {queued, processed, failed, duplicates}
        """
        stats = {"queued": 0, "processed": 0, "failed": 0, "duplicates": 0}
        now = self.clock()

        parsed: List[GeofenceEventIn] = []
        for raw in events:
            try:
                parsed.append(self.processor.validate(raw, user_id, now))
            except ValidationError as e:
                stats["failed"] += 1
                logger.warning("Offline event rejected", user_id=user_id, error=e.message)

        for event in parsed:
            try:
                result = self.processor.process_event(event, user_id)
            except ValidationError as e:
                stats["failed"] += 1
                logger.warning("Offline event rejected", user_id=user_id, event_id=event.id, error=e.message)
                continue
            except ProcessingError as e:
                try:
                    self.enqueue_event(event, error=e.message, user_id=user_id)
                    stats["queued"] += 1
                except GeonotifyError as overflow:
                    stats["failed"] += 1
                    logger.error("Offline event dropped", user_id=user_id, event_id=event.id, error=overflow.message)
                continue

            if result.reason == "duplicate":
                stats["duplicates"] += 1
            else:
                stats["processed"] += 1

        logger.info("Offline events synced", user_id=user_id, **stats)
        return stats

    def get_queued_events_for_user(self, user_id: str) -> List[QueuedEvent]:
        with self.locks.hold(user_id):
            entries = list(self._shard(user_id).values())
        return sorted(entries, key=lambda e: (e.attempts, e.enqueued_at))

    def get_queue_stats(self, user_id: Optional[str] = None) -> Dict[str, int]:
        stats = {"pending": 0, "processing": 0, "failed": 0, "completed": 0, "totalRetries": 0}
        user_ids = [user_id] if user_id is not None else self.locks.user_ids()
        for uid in user_ids:
            with self.locks.hold(uid):
                for entry in self._shard(uid).values():
                    stats[entry.status] += 1
                    stats["totalRetries"] += entry.attempts
        with self._stats_lock:
            if user_id is None:
                stats["completed"] = self._completed
            else:
                stats["completed"] = self._completed_by_user.get(user_id, 0)
        return stats

    def remove_from_queue(self, queue_id: str, user_id: Optional[str] = None) -> bool:
        """Drop an entry; refused while it is being processed."""
        entry = self._find(queue_id, user_id)
        if entry is None:
            return False
        with self.locks.hold(entry.user_id):
            if entry.status == "processing":
                return False
            return self._shard(entry.user_id).pop(queue_id, None) is not None

    def clear_old_failed(self, older_than: datetime) -> int:
        """Forget failed entries whose last attempt is older than `older_than`."""
        cleared = 0
        for user_id in self.locks.user_ids():
            with self.locks.hold(user_id):
                shard = self._shard(user_id)
                stale = [
                    qid for qid, entry in shard.items()
                    if entry.status == "failed" and (entry.last_attempt or entry.enqueued_at) < older_than
                ]
                for qid in stale:
                    del shard[qid]
                cleared += len(stale)
        return cleared

    def _attempt(self, entry: QueuedEvent) -> Optional[ProcessingResult]:
        """
        One processing attempt for an entry.

        Returns:
            The processing result on success, None when the entry was busy or the attempt failed
        """
        now = self.clock()
        with self.locks.hold(entry.user_id):
            if entry.status != "pending" or entry.id not in self._shard(entry.user_id):
                return None
            entry.status = "processing"
            entry.attempts += 1
            entry.last_attempt = now

        try:
            result = self.processor.process_event(entry.event, entry.user_id)
        except ValidationError as e:
            self._settle_failure(entry, e.message, now, retryable=False)
            return None
        except GeonotifyError as e:
            self._settle_failure(entry, e.message, now, retryable=True)
            return None

        with self.locks.hold(entry.user_id):
            entry.status = "completed"
            self._shard(entry.user_id).pop(entry.id, None)
        with self._stats_lock:
            self._completed += 1
            self._completed_by_user[entry.user_id] = self._completed_by_user.get(entry.user_id, 0) + 1

        logger.info("Queued event processed", queue_id=entry.id, attempts=entry.attempts, reason=result.reason)
        return result

    def _settle_failure(self, entry: QueuedEvent, error: str, now: datetime, retryable: bool) -> None:
        with self.locks.hold(entry.user_id):
            entry.last_error = error
            if not retryable or entry.attempts >= self.max_attempts:
                entry.status = "failed"
                entry.next_retry_at = None
            else:
                entry.status = "pending"
                delay = RETRY_DELAYS_MINUTES[min(entry.attempts, len(RETRY_DELAYS_MINUTES)) - 1]
                entry.next_retry_at = now + timedelta(minutes=delay)

        if entry.status == "failed":
            logger.error("Queued event failed permanently", queue_id=entry.id, attempts=entry.attempts, error=error)
        else:
            logger.warning(
                "Queued event failed, will retry",
                queue_id=entry.id,
                attempts=entry.attempts,
                retry_at=entry.next_retry_at.isoformat(),
                error=error,
            )

    def _shard(self, user_id: str) -> Dict[str, QueuedEvent]:
        return self._shards.setdefault(user_id, {})

    def _find(self, queue_id: str, user_id: Optional[str] = None) -> Optional[QueuedEvent]:
        user_ids = [user_id] if user_id is not None else self.locks.user_ids()
        for uid in user_ids:
            with self.locks.hold(uid):
                entry = self._shard(uid).get(queue_id)
            if entry is not None:
                return entry
        return None
