"""
Notification Scheduler.

Holds scheduled notifications and bundles in per-user in-memory shards and
drives them through pending -> delivered | failed | cancelled. Every
transition is mirrored into NotificationHistory.

A delivery marks its entry in-flight under the user's lock, does the gate
check and the provider I/O outside the lock, then finalises under the lock
again. Cancelling an in-flight or finished entry is refused.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import uuid

from geonotify.schemas.notifications import Notification, NotificationBundle
from geonotify.services.delivery import DeliveryProvider, DeliveryResult
from geonotify.services.history import NotificationHistoryRepository
from geonotify.services.locks import UserLockRegistry
from geonotify.utils.clock import Clock, utcnow
from geonotify.utils.logger import get_logger
from geonotify.utils.metrics import MetricsCollector

logger = get_logger(__name__)

SCHEDULED_STATUSES = ("pending", "delivered", "failed", "cancelled")


@dataclass
class ScheduledNotification:
    """A notification or bundle waiting for (or done with) delivery."""
    id: str
    user_id: str
    scheduled_time: datetime
    notification: Optional[Notification] = None
    bundle: Optional[NotificationBundle] = None
    status: str = "pending"
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    error: Optional[str] = None
    cancel_reason: Optional[str] = None
    in_flight: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def payload_id(self) -> str:
        return self.bundle.id if self.bundle is not None else self.notification.id

    @property
    def members(self) -> List[Notification]:
        return list(self.bundle.notifications) if self.bundle is not None else [self.notification]

    @property
    def task_ids(self) -> List[str]:
        return self.bundle.task_ids if self.bundle is not None else [self.notification.task_id]

    @property
    def due_at(self) -> datetime:
        return self.next_attempt_at or self.scheduled_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": "bundle" if self.bundle is not None else "notification",
            "notification_id": self.payload_id,
            "task_ids": self.task_ids,
            "title": self.bundle.title if self.bundle is not None else self.notification.title,
            "scheduled_time": self.scheduled_time.isoformat(),
            "status": self.status,
            "attempts": self.attempts,
            "last_attempt": self.last_attempt.isoformat() if self.last_attempt else None,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "error": self.error,
            "cancel_reason": self.cancel_reason,
            "in_flight": self.in_flight,
        }


class NotificationScheduler:
    """Schedules, delivers, retries and cancels notifications."""

    def __init__(
        self,
        history: NotificationHistoryRepository,
        provider: DeliveryProvider,
        clock: Clock = utcnow,
        metrics: Optional[MetricsCollector] = None,
        max_attempts: int = 3,
        retry_delay_minutes: int = 5,
        lock_timeout_seconds: float = 5.0,
    ):
        self.history = history
        self.provider = provider
        self.clock = clock
        self.metrics = metrics or MetricsCollector()
        self.max_attempts = max_attempts
        self.retry_delay = timedelta(minutes=retry_delay_minutes)
        self.locks = UserLockRegistry(lock_timeout_seconds)
        self._shards: Dict[str, Dict[str, ScheduledNotification]] = {}
        # (notification) -> DeliveryDecision; wired to SnoozeMuteManager.evaluate_for_delivery
        self.gate: Optional[Callable] = None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule_notification(self, notification: Notification) -> ScheduledNotification:
        """Register a single notification for delivery at its scheduled time."""
        now = self.clock()
        entry = ScheduledNotification(
            id=f"sched_{uuid.uuid4().hex}",
            user_id=notification.user_id,
            scheduled_time=notification.scheduled_time,
            notification=notification,
            created_at=now,
            updated_at=now,
        )
        self.history.record_notification(notification, now)
        with self.locks.hold(entry.user_id):
            self._shard(entry.user_id)[entry.id] = entry

        logger.debug("Notification scheduled", scheduled_id=entry.id, notification_id=notification.id)
        return entry

    def schedule_bundle(self, bundle: NotificationBundle) -> ScheduledNotification:
        """Register a bundle; its members' history rows point at the bundle."""
        now = self.clock()
        entry = ScheduledNotification(
            id=f"sched_{uuid.uuid4().hex}",
            user_id=bundle.user_id,
            scheduled_time=bundle.scheduled_time,
            bundle=bundle,
            created_at=now,
            updated_at=now,
        )
        for member in bundle.notifications:
            self.history.record_notification(member, now)
        self.history.record_bundle(bundle, now)
        with self.locks.hold(entry.user_id):
            self._shard(entry.user_id)[entry.id] = entry

        self.metrics.increment_counter("bundles_created_total")
        logger.info(
            "Bundle scheduled",
            scheduled_id=entry.id,
            bundle_id=bundle.id,
            members=len(bundle.notifications),
        )
        return entry

    def cancel_notification(self, scheduled_id: str, user_id: Optional[str] = None, reason: str = "cancelled") -> bool:
        """
        Cancel a pending entry.

        Returns:
            False when the entry is unknown, owned by another user, in flight
            or already finished
        """
        entry = self._find(scheduled_id, user_id)
        if entry is None:
            return False

        now = self.clock()
        with self.locks.hold(entry.user_id):
            if entry.status != "pending" or entry.in_flight:
                return False
            self._mark_cancelled(entry, reason, now)

        self._mirror_cancel(entry, reason, now)
        return True

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def deliver(self, scheduled_id: str, user_id: Optional[str] = None) -> bool:
        """
        Attempt delivery of one pending entry now.

        Returns:
            True when the provider accepted it
        """
        entry = self._find(scheduled_id, user_id)
        if entry is None:
            return False

        with self.locks.hold(entry.user_id):
            if entry.status != "pending" or entry.in_flight:
                return False
            entry.in_flight = True

        try:
            return self._attempt(entry)
        finally:
            with self.locks.hold(entry.user_id):
                entry.in_flight = False

    def process_due(self, now: Optional[datetime] = None, user_id: Optional[str] = None) -> Dict[str, int]:
        """Deliver every pending entry whose (retry) time has come, optionally for one user only."""
        now = now or self.clock()
        due: List[tuple] = []
        user_ids = [user_id] if user_id is not None else self._user_ids()
        for uid in user_ids:
            with self.locks.hold(uid):
                for entry in self._shard(uid).values():
                    if entry.status == "pending" and not entry.in_flight and entry.due_at <= now:
                        due.append((uid, entry.id))

        stats = {"due": len(due), "delivered": 0, "not_delivered": 0}
        for uid, scheduled_id in due:
            if self.deliver(scheduled_id, uid):
                stats["delivered"] += 1
            else:
                stats["not_delivered"] += 1
        return stats

    def _attempt(self, entry: ScheduledNotification) -> bool:
        """Gate check, provider call and result bookkeeping for an in-flight entry."""
        now = self.clock()

        verdict = self._admit(entry, now)
        if verdict is not None:
            return False

        try:
            result = self.provider.send(entry)
        except Exception as e:
            logger.exception("Delivery provider raised", scheduled_id=entry.id, error=str(e))
            result = DeliveryResult(success=False, error=str(e))

        with self.locks.hold(entry.user_id):
            entry.attempts += 1
            entry.last_attempt = now
            entry.updated_at = now
            if result.success:
                entry.status = "delivered"
                entry.error = None
                entry.next_attempt_at = None
            else:
                entry.error = result.error
                if entry.attempts >= self.max_attempts:
                    entry.status = "failed"
                    entry.next_attempt_at = None
                else:
                    entry.next_attempt_at = now + self.retry_delay

        ids = [entry.payload_id] + ([m.id for m in entry.members] if entry.bundle is not None else [])
        if result.success:
            self.history.update_status(
                ids, "delivered", now, delivered_time=now, delivery_attempts=entry.attempts, error=None
            )
            self.metrics.increment_counter("notifications_delivered_total")
            logger.info("Notification delivered", scheduled_id=entry.id, attempts=entry.attempts)
            return True

        if entry.status == "failed":
            self.history.update_status(ids, "failed", now, delivery_attempts=entry.attempts, error=result.error)
            self.metrics.increment_counter("notifications_failed_total")
            logger.error("Delivery failed permanently", scheduled_id=entry.id, attempts=entry.attempts, error=result.error)
        else:
            self.history.update_status(
                [entry.payload_id], "pending", now, delivery_attempts=entry.attempts, error=result.error
            )
            logger.warning(
                "Delivery failed, will retry",
                scheduled_id=entry.id,
                attempts=entry.attempts,
                retry_at=entry.next_attempt_at.isoformat(),
            )
        return False

    def _admit(self, entry: ScheduledNotification, now: datetime) -> Optional[str]:
        """
        Consult the gate for every member of the entry.

        Returns:
            None to go ahead, otherwise "deferred" or "cancelled"
        """
        if self.gate is None:
            return None

        decisions = [(member, self.gate(member)) for member in entry.members]
        deferred = [d for _, d in decisions if d.action == "defer"]
        if deferred:
            retry_at = max(d.retry_at for d in deferred)
            with self.locks.hold(entry.user_id):
                entry.next_attempt_at = retry_at
                entry.updated_at = now
            logger.info("Delivery deferred", scheduled_id=entry.id, reason=deferred[0].reason, until=retry_at.isoformat())
            return "deferred"

        blocked = [(member, d) for member, d in decisions if d.action == "cancel"]
        if not blocked:
            return None

        reason = blocked[0][1].reason
        with self.locks.hold(entry.user_id):
            self._mark_cancelled(entry, reason, now)

        if entry.bundle is None:
            self._mirror_held(entry.members, reason, now)
        else:
            self.history.update_status([entry.bundle.id], "cancelled", now, cancel_reason=reason)
            blocked_ids = {member.id for member, _ in blocked}
            for member, decision in blocked:
                self._mirror_held([member], decision.reason, now)
            for member in entry.members:
                if member.id not in blocked_ids:
                    self.schedule_notification(member)
        return "cancelled"

    # ------------------------------------------------------------------
    # Suppression support
    # ------------------------------------------------------------------

    def suppress_for_task(
        self,
        user_id: str,
        task_id: str,
        reason: str,
        history_status: str = "cancelled",
    ) -> List[Notification]:
        """
        Cancel pending, not in-flight entries that carry a notification of `task_id`.

        Bundles lose the whole entry; their members for other tasks are
        rescheduled on their own.

        Returns:
            The task's notifications that were held back
        """
        now = self.clock()
        hit: List[ScheduledNotification] = []
        with self.locks.hold(user_id):
            for entry in self._shard(user_id).values():
                if entry.status == "pending" and not entry.in_flight and task_id in entry.task_ids:
                    self._mark_cancelled(entry, reason, now)
                    hit.append(entry)

        held: List[Notification] = []
        for entry in hit:
            if entry.bundle is not None:
                self.history.update_status([entry.bundle.id], "cancelled", now, cancel_reason=reason)
            for member in entry.members:
                if member.task_id == task_id:
                    held.append(member)
                else:
                    self.schedule_notification(member)

        self.history.update_status([n.id for n in held], history_status, now, cancel_reason=reason)
        return held

    # ------------------------------------------------------------------
    # Queries and housekeeping
    # ------------------------------------------------------------------

    def get(self, scheduled_id: str, user_id: Optional[str] = None) -> Optional[ScheduledNotification]:
        return self._find(scheduled_id, user_id)

    def get_scheduled_notifications(self, user_id: str, status: Optional[str] = None) -> List[ScheduledNotification]:
        with self.locks.hold(user_id):
            entries = list(self._shard(user_id).values())
        if status is not None:
            entries = [e for e in entries if e.status == status]
        return sorted(entries, key=lambda e: e.scheduled_time)

    def get_stats(self, user_id: Optional[str] = None) -> Dict[str, int]:
        stats = {status: 0 for status in SCHEDULED_STATUSES}
        stats["in_flight"] = 0
        stats["total"] = 0
        user_ids = [user_id] if user_id is not None else self._user_ids()
        for uid in user_ids:
            with self.locks.hold(uid):
                for entry in self._shard(uid).values():
                    stats[entry.status] += 1
                    stats["total"] += 1
                    if entry.in_flight:
                        stats["in_flight"] += 1
        return stats

    def cleanup_old(self, older_than: datetime) -> int:
        """Drop finished entries last updated before `older_than`; history keeps them."""
        removed = 0
        for user_id in self._user_ids():
            with self.locks.hold(user_id):
                shard = self._shard(user_id)
                stale = [
                    sid for sid, entry in shard.items()
                    if entry.status != "pending" and not entry.in_flight and entry.updated_at < older_than
                ]
                for sid in stale:
                    del shard[sid]
                removed += len(stale)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _shard(self, user_id: str) -> Dict[str, ScheduledNotification]:
        # Only called with the user's lock held
        return self._shards.setdefault(user_id, {})

    def _user_ids(self) -> List[str]:
        return self.locks.user_ids()

    def _find(self, scheduled_id: str, user_id: Optional[str] = None) -> Optional[ScheduledNotification]:
        user_ids = [user_id] if user_id is not None else self._user_ids()
        for uid in user_ids:
            with self.locks.hold(uid):
                entry = self._shard(uid).get(scheduled_id)
            if entry is not None:
                return entry
        return None

    def _mark_cancelled(self, entry: ScheduledNotification, reason: str, now: datetime) -> None:
        entry.status = "cancelled"
        entry.cancel_reason = reason
        entry.next_attempt_at = None
        entry.updated_at = now
        self.metrics.increment_counter("notifications_cancelled_total")

    def _mirror_cancel(self, entry: ScheduledNotification, reason: str, now: datetime) -> None:
        ids = [entry.payload_id] + ([m.id for m in entry.members] if entry.bundle is not None else [])
        self.history.update_status(ids, "cancelled", now, cancel_reason=reason)
        logger.info("Scheduled notification cancelled", scheduled_id=entry.id, reason=reason)

    def _mirror_held(self, notifications: List[Notification], reason: str, now: datetime) -> None:
        status = "snoozed" if reason == "snoozed" else "cancelled"
        self.history.update_status([n.id for n in notifications], status, now, cancel_reason=reason)
