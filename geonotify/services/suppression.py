"""
Snooze / Mute Manager.

Owns per-task snoozes and mutes, per-user notification preferences, and the
gates the processor and scheduler consult before notifying:
- check_task: is the task muted or snoozed for this notification type?
- enforce_delivery_limits: quiet hours and the per-hour rate limit
- evaluate_for_delivery: the scheduler's pre-attempt gate

When a snooze or mute ends, the notifications it held back are re-evaluated
and rescheduled if they are still allowed and still fresh.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

import pytz
from sqlmodel import Session, select, func
from sqlalchemy import delete
from sqlalchemy.engine import Engine

from geonotify.db.config import store_session
from geonotify.errors import LimitExceededError, NotFoundError, ValidationError
from geonotify.models.geofence_event import GeofenceEventRecord
from geonotify.models.notification import NotificationHistory
from geonotify.models.preferences import NotificationPreferences
from geonotify.models.suppression import NotificationSnooze, TaskMute
from geonotify.schemas.notifications import Notification
from geonotify.services.durations import (
    MuteDuration,
    SnoozeDuration,
    parse_mute_duration,
    parse_snooze_duration,
    resolve_mute_until,
    resolve_snooze_until,
)
from geonotify.services.history import NotificationHistoryRepository
from geonotify.services.locks import UserLockRegistry
from geonotify.utils.clock import Clock, from_local, to_local, utcnow
from geonotify.utils.logger import get_logger

logger = get_logger(__name__)

PREFERENCE_FIELDS = (
    "timezone", "quiet_hours_start", "quiet_hours_end", "enable_bundling",
    "max_notifications_per_hour", "default_snooze_duration", "max_snooze_count",
    "default_mute_duration", "allow_permanent_mute",
)


@dataclass
class SuppressionCheck:
    """Outcome of the mute/snooze gate for one task."""
    suppressed: bool
    suppressed_by: Optional[str] = None  # mute, snooze
    until: Optional[datetime] = None
    record_id: Optional[str] = None


@dataclass
class DeliveryDecision:
    """What the scheduler should do with a due notification."""
    action: str  # deliver, cancel, defer
    reason: Optional[str] = None
    retry_at: Optional[datetime] = None


@dataclass
class SnoozeResult:
    snooze: NotificationSnooze
    extended: bool = False
    snoozed_notifications: List[str] = field(default_factory=list)


@dataclass
class MuteResult:
    mute: TaskMute
    superseded: int = 0
    cancelled_notifications: List[str] = field(default_factory=list)


def _parse_hhmm(value: str):
    hours, minutes = value.split(":")
    return int(hours), int(minutes)


def quiet_hours_end(prefs: NotificationPreferences, now: datetime) -> Optional[datetime]:
    """
    If `now` falls inside the user's quiet hours, return when they end.

    Windows are evaluated in the user's timezone and may wrap midnight
    (e.g. 22:00-07:00). A window whose start equals its end is empty.

    Returns:
        Naive UTC end of the current quiet window, or None outside quiet hours
    """
    if not prefs.quiet_hours_start or not prefs.quiet_hours_end:
        return None

    start_h, start_m = _parse_hhmm(prefs.quiet_hours_start)
    end_h, end_m = _parse_hhmm(prefs.quiet_hours_end)
    start = start_h * 60 + start_m
    end = end_h * 60 + end_m
    if start == end:
        return None

    local_now = to_local(now, prefs.timezone)
    minute_of_day = local_now.hour * 60 + local_now.minute
    if start < end:
        inside = start <= minute_of_day < end
    else:
        inside = minute_of_day >= start or minute_of_day < end
    if not inside:
        return None

    zone = pytz.timezone(prefs.timezone)
    end_date = local_now.date()
    if minute_of_day >= end:
        end_date = end_date + timedelta(days=1)
    return from_local(zone.localize(datetime(end_date.year, end_date.month, end_date.day, end_h, end_m)))


class SnoozeMuteManager:
    """Snooze, mute and preference management plus the suppression gates."""

    def __init__(
        self,
        engine: Engine,
        history: NotificationHistoryRepository,
        clock: Clock = utcnow,
        lock_timeout_seconds: float = 5.0,
        quiet_hours_tolerance_minutes: int = 5,
        reentry_max_age_minutes: int = 120,
    ):
        self.engine = engine
        self.history = history
        self.clock = clock
        self.locks = UserLockRegistry(lock_timeout_seconds)
        self.quiet_hours_tolerance = timedelta(minutes=quiet_hours_tolerance_minutes)
        self.reentry_max_age = timedelta(minutes=reentry_max_age_minutes)
        # Wired by the engine; used to cancel and reschedule pending notifications
        self.scheduler = None

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def get_preferences(self, user_id: str, session: Optional[Session] = None) -> NotificationPreferences:
        """Stored preferences, or unsaved defaults for users without a row."""
        if session is not None:
            prefs = session.get(NotificationPreferences, user_id)
        else:
            with store_session(self.engine) as own:
                prefs = own.get(NotificationPreferences, user_id)
        return prefs or NotificationPreferences(user_id=user_id)

    def update_preferences(self, user_id: str, updates: Dict[str, Any]) -> NotificationPreferences:
        unknown = set(updates) - set(PREFERENCE_FIELDS)
        if unknown:
            raise ValidationError("Unknown preference fields", {"fields": sorted(unknown)})
        if "timezone" in updates and updates["timezone"] not in pytz.all_timezones_set:
            raise ValidationError(f"Unknown timezone: {updates['timezone']}", {"field": "timezone"})
        if "default_snooze_duration" in updates:
            updates["default_snooze_duration"] = parse_snooze_duration(updates["default_snooze_duration"]).value
        if "default_mute_duration" in updates:
            updates["default_mute_duration"] = parse_mute_duration(updates["default_mute_duration"]).value

        now = self.clock()
        with store_session(self.engine) as session:
            prefs = session.get(NotificationPreferences, user_id)
            if prefs is None:
                prefs = NotificationPreferences(user_id=user_id, created_at=now)
            for key, value in updates.items():
                setattr(prefs, key, value)
            if bool(prefs.quiet_hours_start) != bool(prefs.quiet_hours_end):
                raise ValidationError(
                    "quiet_hours_start and quiet_hours_end must be set together",
                    {"field": "quiet_hours_start"}
                )
            prefs.updated_at = now
            session.add(prefs)
            session.commit()
            session.refresh(prefs)

        logger.info("Preferences updated", user_id=user_id, fields=sorted(updates))
        return prefs

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def check_task(
        self,
        user_id: str,
        task_id: str,
        notification_type: Optional[str] = None,
        notification_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SuppressionCheck:
        """
        Mute/snooze gate for a task. A mute takes precedence over a snooze.

        A snooze applies when it is task-wide or targets `notification_id`,
        and when its notification type is unset or equal to `notification_type`.
        """
        now = now or self.clock()
        with store_session(self.engine) as session:
            mute = self._active_mute(session, user_id, task_id, now)
            if mute is not None:
                return SuppressionCheck(True, "mute", mute.mute_until, mute.id)

            statement = select(NotificationSnooze).where(
                NotificationSnooze.user_id == user_id,
                NotificationSnooze.task_id == task_id,
                NotificationSnooze.status == "active",
                NotificationSnooze.snooze_until > now,
            )
            for snooze in session.exec(statement).all():
                if snooze.notification_id is not None and snooze.notification_id != notification_id:
                    continue
                if snooze.notification_type is not None and snooze.notification_type != notification_type:
                    continue
                return SuppressionCheck(True, "snooze", snooze.snooze_until, snooze.id)

        return SuppressionCheck(False)

    def enforce_delivery_limits(self, user_id: str, now: Optional[datetime] = None, check_rate: bool = True) -> None:
        """
        Apply quiet hours and the per-hour notification limit.

        Raises:
            LimitExceededError: reason "quiet_hours" or "rate_limited"
        """
        now = now or self.clock()
        with store_session(self.engine) as session:
            prefs = self.get_preferences(user_id, session)

            quiet_end = quiet_hours_end(prefs, now)
            if quiet_end is not None:
                raise LimitExceededError(
                    "quiet_hours",
                    "Inside quiet hours",
                    {"until": quiet_end.isoformat()}
                )

            if check_rate:
                recent = session.exec(
                    select(func.count()).select_from(GeofenceEventRecord).where(
                        GeofenceEventRecord.user_id == user_id,
                        GeofenceEventRecord.created_at > now - timedelta(hours=1),
                    )
                ).one()
                if recent >= prefs.max_notifications_per_hour:
                    raise LimitExceededError(
                        "rate_limited",
                        "Hourly notification limit reached",
                        {"limit": prefs.max_notifications_per_hour, "count": recent}
                    )

    def evaluate_for_delivery(self, notification: Notification, now: Optional[datetime] = None) -> DeliveryDecision:
        """Gate consulted by the scheduler before every delivery attempt."""
        now = now or self.clock()
        check = self.check_task(
            notification.user_id, notification.task_id, notification.type, notification.id, now
        )
        if check.suppressed:
            return DeliveryDecision("cancel", "muted" if check.suppressed_by == "mute" else "snoozed")

        try:
            self.enforce_delivery_limits(notification.user_id, now, check_rate=False)
        except LimitExceededError as e:
            quiet_end = datetime.fromisoformat(e.details["until"])
            return DeliveryDecision("defer", e.reason, quiet_end + self.quiet_hours_tolerance)

        return DeliveryDecision("deliver")

    # ------------------------------------------------------------------
    # Snoozes
    # ------------------------------------------------------------------

    def snooze_task_notifications(
        self,
        user_id: str,
        task_id: str,
        duration: Union[str, SnoozeDuration],
        reason: Optional[str] = None,
        notification_type: Optional[str] = None,
    ) -> SnoozeResult:
        """
        Snooze a task.

        Creates (or extends) the task-wide snooze and holds back every pending
        scheduled notification of the task with its own snooze record.

        Raises:
            ValidationError: Unknown duration
            LimitExceededError: The task was already snoozed max_snooze_count times
        """
        duration = parse_snooze_duration(duration)
        with self.locks.hold(user_id):
            now = self.clock()
            with store_session(self.engine) as session:
                prefs = self.get_preferences(user_id, session)
                until = resolve_snooze_until(duration, now, prefs.timezone)

                existing = session.exec(
                    select(NotificationSnooze).where(
                        NotificationSnooze.user_id == user_id,
                        NotificationSnooze.task_id == task_id,
                        NotificationSnooze.notification_id.is_(None),
                        NotificationSnooze.status == "active",
                        NotificationSnooze.snooze_until > now,
                    )
                ).first()

                extended = existing is not None
                if existing is not None:
                    self._extend_snooze_row(session, existing, duration, until, prefs, now)
                    snooze = existing
                else:
                    snooze = NotificationSnooze(
                        user_id=user_id,
                        task_id=task_id,
                        notification_type=notification_type,
                        duration=duration.value,
                        snooze_until=until,
                        reason=reason,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(snooze)
                session.commit()
                session.refresh(snooze)

            held = self._hold_pending(user_id, task_id, "snoozed", "snoozed")
            if held:
                with store_session(self.engine) as session:
                    for notification in held:
                        session.add(NotificationSnooze(
                            user_id=user_id,
                            task_id=task_id,
                            notification_id=notification.id,
                            notification_type=notification.type,
                            duration=duration.value,
                            snooze_until=until,
                            original_scheduled_time=notification.scheduled_time,
                            reason=reason,
                            created_at=now,
                            updated_at=now,
                        ))
                    session.commit()

        logger.info(
            "Task snoozed",
            user_id=user_id,
            task_id=task_id,
            duration=duration.value,
            until=until.isoformat(),
            extended=extended,
            held=len(held),
        )
        return SnoozeResult(snooze, extended, [n.id for n in held])

    def extend_snooze(self, user_id: str, snooze_id: str, duration: Union[str, SnoozeDuration]) -> NotificationSnooze:
        """
        Push an active snooze to a new expiry and bump its count.

        Raises:
            NotFoundError: Unknown snooze or not owned by the user
            ValidationError: Snooze is no longer active
            LimitExceededError: max_snooze_count reached
        """
        duration = parse_snooze_duration(duration)
        with self.locks.hold(user_id):
            now = self.clock()
            with store_session(self.engine) as session:
                snooze = self._owned(session, NotificationSnooze, snooze_id, user_id, "Snooze")
                if snooze.status != "active":
                    raise ValidationError("Snooze is not active", {"snooze_id": snooze_id, "status": snooze.status})
                prefs = self.get_preferences(user_id, session)
                until = resolve_snooze_until(duration, now, prefs.timezone)
                self._extend_snooze_row(session, snooze, duration, until, prefs, now)
                session.commit()
                session.refresh(snooze)
        return snooze

    def cancel_snooze(self, user_id: str, snooze_id: str) -> NotificationSnooze:
        """Cancel one snooze and release what it held back."""
        with self.locks.hold(user_id):
            now = self.clock()
            with store_session(self.engine) as session:
                snooze = self._owned(session, NotificationSnooze, snooze_id, user_id, "Snooze")
                was_active = snooze.status == "active"
                if was_active:
                    snooze.status = "cancelled"
                    snooze.updated_at = now
                    session.add(snooze)
                    session.commit()
                    session.refresh(snooze)
            if was_active:
                self._reenter_snoozed(user_id, snooze.task_id, now)
        return snooze

    def cancel_task_snoozes(self, user_id: str, task_id: str) -> int:
        """Cancel every active snooze of a task; returns how many were cancelled."""
        with self.locks.hold(user_id):
            now = self.clock()
            with store_session(self.engine) as session:
                snoozes = session.exec(
                    select(NotificationSnooze).where(
                        NotificationSnooze.user_id == user_id,
                        NotificationSnooze.task_id == task_id,
                        NotificationSnooze.status == "active",
                    )
                ).all()
                for snooze in snoozes:
                    snooze.status = "cancelled"
                    snooze.updated_at = now
                    session.add(snooze)
                session.commit()
                count = len(snoozes)
            if count:
                self._reenter_snoozed(user_id, task_id, now)

        logger.info("Task snoozes cancelled", user_id=user_id, task_id=task_id, count=count)
        return count

    def list_snoozes(self, user_id: str, active_only: bool = True) -> List[NotificationSnooze]:
        with store_session(self.engine) as session:
            statement = select(NotificationSnooze).where(NotificationSnooze.user_id == user_id)
            if active_only:
                statement = statement.where(
                    NotificationSnooze.status == "active",
                    NotificationSnooze.snooze_until > self.clock(),
                )
            statement = statement.order_by(NotificationSnooze.snooze_until)
            return list(session.exec(statement).all())

    def expire_snoozes(self, now: Optional[datetime] = None) -> int:
        """Mark lapsed snoozes expired and re-enter the notifications they held."""
        now = now or self.clock()
        with store_session(self.engine) as session:
            lapsed = session.exec(
                select(NotificationSnooze).where(
                    NotificationSnooze.status == "active",
                    NotificationSnooze.snooze_until <= now,
                )
            ).all()
            tasks = set()
            for snooze in lapsed:
                snooze.status = "expired"
                snooze.updated_at = now
                session.add(snooze)
                tasks.add((snooze.user_id, snooze.task_id))
            session.commit()
            count = len(lapsed)

        for user_id, task_id in sorted(tasks):
            with self.locks.hold(user_id):
                self._reenter_snoozed(user_id, task_id, now)

        if count:
            logger.info("Snoozes expired", count=count, tasks=len(tasks))
        return count

    # ------------------------------------------------------------------
    # Mutes
    # ------------------------------------------------------------------

    def mute_task(
        self,
        user_id: str,
        task_id: str,
        duration: Union[str, MuteDuration],
        reason: Optional[str] = None,
    ) -> MuteResult:
        """
        Mute a task. A new mute supersedes the task's current one.

        Raises:
            ValidationError: Unknown duration, or permanent mutes are disabled for the user
        """
        duration = parse_mute_duration(duration)
        with self.locks.hold(user_id):
            now = self.clock()
            with store_session(self.engine) as session:
                prefs = self.get_preferences(user_id, session)
                if duration is MuteDuration.PERMANENT and not prefs.allow_permanent_mute:
                    raise ValidationError("Permanent mutes are disabled", {"field": "duration"})

                previous = session.exec(
                    select(TaskMute).where(
                        TaskMute.user_id == user_id,
                        TaskMute.task_id == task_id,
                        TaskMute.status == "active",
                    )
                ).all()
                for old in previous:
                    old.status = "cancelled"
                    old.updated_at = now
                    session.add(old)

                mute = TaskMute(
                    user_id=user_id,
                    task_id=task_id,
                    duration=duration.value,
                    mute_until=resolve_mute_until(duration, now, prefs.timezone),
                    reason=reason,
                    created_at=now,
                    updated_at=now,
                )
                session.add(mute)
                session.commit()
                session.refresh(mute)

            held = self._hold_pending(user_id, task_id, "muted", "cancelled")

        logger.info(
            "Task muted",
            user_id=user_id,
            task_id=task_id,
            duration=duration.value,
            superseded=len(previous),
            cancelled=len(held),
        )
        return MuteResult(mute, len(previous), [n.id for n in held])

    def extend_mute(self, user_id: str, mute_id: str, duration: Union[str, MuteDuration]) -> TaskMute:
        duration = parse_mute_duration(duration)
        with self.locks.hold(user_id):
            now = self.clock()
            with store_session(self.engine) as session:
                mute = self._owned(session, TaskMute, mute_id, user_id, "Mute")
                if mute.status != "active":
                    raise ValidationError("Mute is not active", {"mute_id": mute_id, "status": mute.status})
                prefs = self.get_preferences(user_id, session)
                if duration is MuteDuration.PERMANENT and not prefs.allow_permanent_mute:
                    raise ValidationError("Permanent mutes are disabled", {"field": "duration"})
                mute.duration = duration.value
                mute.mute_until = resolve_mute_until(duration, now, prefs.timezone)
                mute.updated_at = now
                session.add(mute)
                session.commit()
                session.refresh(mute)
        return mute

    def cancel_mute(self, user_id: str, mute_id: str) -> TaskMute:
        with self.locks.hold(user_id):
            now = self.clock()
            with store_session(self.engine) as session:
                mute = self._owned(session, TaskMute, mute_id, user_id, "Mute")
                was_active = mute.status == "active"
                if was_active:
                    mute.status = "cancelled"
                    mute.updated_at = now
                    session.add(mute)
                    session.commit()
                    session.refresh(mute)
            if was_active:
                self._reenter_muted(user_id, mute.task_id, mute.created_at, now)
        return mute

    def unmute_task(self, user_id: str, task_id: str) -> int:
        """End every active mute of a task; returns how many were ended."""
        with self.locks.hold(user_id):
            now = self.clock()
            with store_session(self.engine) as session:
                mutes = session.exec(
                    select(TaskMute).where(
                        TaskMute.user_id == user_id,
                        TaskMute.task_id == task_id,
                        TaskMute.status == "active",
                    )
                ).all()
                since = min((m.created_at for m in mutes), default=now)
                for mute in mutes:
                    mute.status = "cancelled"
                    mute.updated_at = now
                    session.add(mute)
                session.commit()
                count = len(mutes)
            if count:
                self._reenter_muted(user_id, task_id, since, now)

        logger.info("Task unmuted", user_id=user_id, task_id=task_id, count=count)
        return count

    def list_mutes(self, user_id: str, active_only: bool = True) -> List[TaskMute]:
        with store_session(self.engine) as session:
            statement = select(TaskMute).where(TaskMute.user_id == user_id)
            if active_only:
                now = self.clock()
                statement = statement.where(
                    TaskMute.status == "active",
                    (TaskMute.mute_until.is_(None)) | (TaskMute.mute_until > now),
                )
            statement = statement.order_by(TaskMute.created_at.desc())
            return list(session.exec(statement).all())

    def expire_mutes(self, now: Optional[datetime] = None) -> int:
        """Mark lapsed mutes expired and re-enter the notifications they held."""
        now = now or self.clock()
        with store_session(self.engine) as session:
            lapsed = session.exec(
                select(TaskMute).where(
                    TaskMute.status == "active",
                    TaskMute.mute_until.is_not(None),
                    TaskMute.mute_until <= now,
                )
            ).all()
            ended: Dict[tuple, datetime] = {}
            for mute in lapsed:
                mute.status = "expired"
                mute.updated_at = now
                session.add(mute)
                key = (mute.user_id, mute.task_id)
                ended[key] = min(ended.get(key, mute.created_at), mute.created_at)
            session.commit()
            count = len(lapsed)

        for (user_id, task_id), since in sorted(ended.items()):
            with self.locks.hold(user_id):
                self._reenter_muted(user_id, task_id, since, now)

        if count:
            logger.info("Mutes expired", count=count)
        return count

    # ------------------------------------------------------------------
    # Housekeeping and reporting
    # ------------------------------------------------------------------

    def purge_inactive(self, older_than: datetime) -> int:
        """Delete cancelled/expired snooze and mute rows last updated before `older_than`."""
        with store_session(self.engine) as session:
            snoozes = session.exec(
                delete(NotificationSnooze)
                .where(NotificationSnooze.status != "active")
                .where(NotificationSnooze.updated_at < older_than)
            )
            mutes = session.exec(
                delete(TaskMute)
                .where(TaskMute.status != "active")
                .where(TaskMute.updated_at < older_than)
            )
            session.commit()
            return (snoozes.rowcount or 0) + (mutes.rowcount or 0)

    def get_summary(self, user_id: str) -> Dict[str, int]:
        counts = self.history.counts_by_status(user_id)
        return {
            "total_notifications": sum(counts.values()),
            "delivered_notifications": counts.get("delivered", 0),
            "pending_notifications": counts.get("pending", 0) + counts.get("bundled", 0),
            "failed_notifications": counts.get("failed", 0),
            "snoozed_notifications": counts.get("snoozed", 0),
            "cancelled_notifications": counts.get("cancelled", 0),
            "expired_notifications": counts.get("expired", 0),
            "active_snoozes": len(self.list_snoozes(user_id)),
            "active_mutes": len(self.list_mutes(user_id)),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _owned(session: Session, model, record_id: str, user_id: str, label: str):
        record = session.get(model, record_id)
        if record is None or record.user_id != user_id:
            raise NotFoundError(f"{label} not found", {"id": record_id})
        return record

    @staticmethod
    def _active_mute(session: Session, user_id: str, task_id: str, now: datetime) -> Optional[TaskMute]:
        return session.exec(
            select(TaskMute).where(
                TaskMute.user_id == user_id,
                TaskMute.task_id == task_id,
                TaskMute.status == "active",
                (TaskMute.mute_until.is_(None)) | (TaskMute.mute_until > now),
            )
        ).first()

    def _extend_snooze_row(
        self,
        session: Session,
        snooze: NotificationSnooze,
        duration: SnoozeDuration,
        until: datetime,
        prefs: NotificationPreferences,
        now: datetime,
    ) -> None:
        if snooze.snooze_count >= prefs.max_snooze_count:
            raise LimitExceededError(
                "snooze_limit",
                "Maximum snooze count reached",
                {"snooze_id": snooze.id, "max_snooze_count": prefs.max_snooze_count}
            )
        snooze.snooze_until = until
        snooze.duration = duration.value
        snooze.snooze_count += 1
        snooze.updated_at = now
        session.add(snooze)

        # Per-notification snoozes of a task-wide snooze move with it
        if snooze.notification_id is None:
            siblings = session.exec(
                select(NotificationSnooze).where(
                    NotificationSnooze.user_id == snooze.user_id,
                    NotificationSnooze.task_id == snooze.task_id,
                    NotificationSnooze.notification_id.is_not(None),
                    NotificationSnooze.status == "active",
                )
            ).all()
            for sibling in siblings:
                sibling.snooze_until = until
                sibling.updated_at = now
                session.add(sibling)

    def _hold_pending(self, user_id: str, task_id: str, reason: str, history_status: str) -> List[Notification]:
        if self.scheduler is None:
            return []
        return self.scheduler.suppress_for_task(user_id, task_id, reason, history_status)

    def _reenter_snoozed(self, user_id: str, task_id: str, now: datetime) -> int:
        rows = self.history.list_for_user(user_id, status="snoozed", task_id=task_id, limit=500)
        return self._reenter(rows, now)

    def _reenter_muted(self, user_id: str, task_id: str, since: datetime, now: datetime) -> int:
        rows = [
            row for row in self.history.list_for_user(user_id, status="cancelled", task_id=task_id, limit=500)
            if row.cancel_reason == "muted" and row.updated_at >= since
        ]
        return self._reenter(rows, now)

    def _reenter(self, rows: List[NotificationHistory], now: datetime) -> int:
        """
        Re-evaluate held-back notifications once their suppression ended.

        Each is rescheduled when no mute or snooze still covers it and it is
        not older than the re-entry limit. Quiet hours push the new schedule
        to the end of the quiet window. Anything else is marked expired.
        """
        rescheduled = 0
        expired: List[str] = []
        for row in rows:
            notification = Notification.model_validate(row.payload)

            check = self.check_task(
                notification.user_id, notification.task_id, notification.type, notification.id, now
            )
            if check.suppressed and check.suppressed_by == "snooze":
                continue
            if check.suppressed or now - notification.scheduled_time > self.reentry_max_age:
                expired.append(notification.id)
                continue
            if self.scheduler is None:
                continue

            scheduled_time = now
            with store_session(self.engine) as session:
                quiet_end = quiet_hours_end(self.get_preferences(notification.user_id, session), now)
            if quiet_end is not None:
                scheduled_time = quiet_end + self.quiet_hours_tolerance

            self.scheduler.schedule_notification(
                notification.model_copy(update={"scheduled_time": scheduled_time})
            )
            rescheduled += 1

        if expired:
            self.history.update_status(expired, "expired", now)
        if rows:
            logger.info("Held notifications re-evaluated", rescheduled=rescheduled, expired=len(expired))
        return rescheduled
