"""
Geofence notification engine: the composition root.

Builds every component from Settings, wires their collaborators, and
exposes the use cases the HTTP layer calls. One instance per process,
created explicitly and attached to the FastAPI app during its lifespan.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.engine import Engine

from geonotify.config import Settings
from geonotify.db.config import build_engine
from geonotify.db.init import init_db
from geonotify.errors import GeonotifyError, NotFoundError, ProcessingError, ValidationError, error_payload
from geonotify.schemas.events import GeofenceEventIn
from geonotify.schemas.notifications import Notification, NotificationBundle
from geonotify.services.bundler import NotificationBundler
from geonotify.services.dedup_store import FingerprintStore
from geonotify.services.delivery import DeliveryProvider, build_provider
from geonotify.services.durations import SNOOZE_ACTIONS
from geonotify.services.event_processor import GeofenceEventProcessor
from geonotify.services.event_queue import EventRetryQueue
from geonotify.services.history import NotificationHistoryRepository
from geonotify.services.lookups import HttpPlaceLookup, NullPlaceLookup, PlaceLookup, TimedLookup
from geonotify.services.outbox import Outbox
from geonotify.services.scheduler import NotificationScheduler
from geonotify.services.suppression import SnoozeMuteManager
from geonotify.services.templates import build_notification
from geonotify.services.ticker import BackgroundTicker
from geonotify.utils.clock import Clock, utcnow
from geonotify.utils.logger import get_logger
from geonotify.utils.metrics import MetricsCollector

logger = get_logger(__name__)


class GeofenceEngine:
    """Owns and wires the processor, queue, suppression manager, scheduler and ticker."""

    def __init__(
        self,
        settings: Settings,
        db_engine: Optional[Engine] = None,
        clock: Clock = utcnow,
        provider: Optional[DeliveryProvider] = None,
        place_lookup: Optional[PlaceLookup] = None,
    ):
        self.settings = settings
        self.clock = clock
        self.metrics = MetricsCollector()
        self.db = db_engine or build_engine(settings.database_url, settings.store_timeout_seconds)
        self.started = False

        self.history = NotificationHistoryRepository(self.db)
        self.fingerprints = FingerprintStore(self.db, settings.dedup_window_minutes)
        self.suppression = SnoozeMuteManager(
            self.db,
            self.history,
            clock=clock,
            lock_timeout_seconds=settings.lock_timeout_seconds,
            quiet_hours_tolerance_minutes=settings.quiet_hours_tolerance_minutes,
            reentry_max_age_minutes=settings.reentry_max_age_minutes,
        )

        self.provider = provider or build_provider(settings.push_gateway_url, settings.push_timeout_seconds)
        self.scheduler = NotificationScheduler(
            self.history,
            self.provider,
            clock=clock,
            metrics=self.metrics,
            max_attempts=settings.max_delivery_attempts,
            retry_delay_minutes=settings.delivery_retry_delay_minutes,
            lock_timeout_seconds=settings.lock_timeout_seconds,
        )
        self.scheduler.gate = self.suppression.evaluate_for_delivery
        self.suppression.scheduler = self.scheduler

        self.processor = GeofenceEventProcessor(
            self.db,
            self.fingerprints,
            self.suppression,
            clock=clock,
            metrics=self.metrics,
            min_confidence=settings.min_confidence,
            lock_timeout_seconds=settings.lock_timeout_seconds,
            fingerprint_retention_hours=settings.fingerprint_retention_hours,
            event_retention_days=settings.event_retention_days,
        )
        self.processor.on_notify = self._publish_notification

        self.queue = EventRetryQueue(
            self.processor,
            clock=clock,
            metrics=self.metrics,
            max_attempts=settings.max_queue_attempts,
            max_per_user=settings.max_queue_per_user,
            lock_timeout_seconds=settings.lock_timeout_seconds,
        )

        self.bundler = NotificationBundler(settings.bundle_radius_meters, settings.bundle_window_minutes)
        self.outbox = Outbox(self.scheduler, self.bundler, self._bundling_enabled, settings.outbox_max_size)

        if place_lookup is None:
            if settings.place_lookup_url:
                place_lookup = HttpPlaceLookup(settings.place_lookup_url, settings.lookup_timeout_seconds)
            else:
                place_lookup = NullPlaceLookup()
        self.lookup = TimedLookup(place_lookup, settings.lookup_timeout_seconds)

        self.ticker = BackgroundTicker(
            [
                ("expire_snoozes", self.suppression.expire_snoozes),
                ("expire_mutes", self.suppression.expire_mutes),
                ("retry_queued_events", self.queue.process_pending),
                ("flush_outbox", lambda now: self.outbox.flush()),
                ("retry_deliveries", self.scheduler.process_due),
                ("evict_stale", self.evict_stale),
            ],
            clock=clock,
            metrics=self.metrics,
            interval_seconds=settings.tick_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Create the schema and open provider connections. Raises ConfigError on a broken store."""
        init_db(self.db)
        self.provider.initialize()
        self.started = True
        logger.info("Geofence engine started", environment=self.settings.environment)

    async def start_background(self) -> None:
        if self.settings.enable_ticker:
            await self.ticker.start()

    async def stop_background(self) -> None:
        await self.ticker.stop()

    def shutdown(self) -> None:
        """Flush what is still in the outbox and release resources."""
        self.outbox.flush()
        if len(self.outbox):
            logger.error("Notifications left unscheduled at shutdown", count=len(self.outbox))
        self.provider.cleanup()
        self.lookup.shutdown()
        self.started = False
        logger.info("Geofence engine stopped")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def submit_events(self, user_id: str, events: List[Union[GeofenceEventIn, Dict[str, Any]]]) -> Dict[str, Any]:
        """
        Process an API batch: immediate processing, retry queue on transient failure.

        Returns:
            {processed, queued, results, queuedEvents}
        """
        processed = 0
        results: List[Dict[str, Any]] = []
        queued_events: List[Dict[str, Any]] = []

        for event in events:
            event_id = event.id if isinstance(event, GeofenceEventIn) else event.get("id")
            try:
                result = self.processor.process_event(event, user_id)
            except ValidationError as e:
                self.metrics.increment_counter("events_failed_total")
                results.append({"eventId": event_id, "shouldNotify": False, "reason": "invalid", **error_payload(e)})
                continue
            except ProcessingError as e:
                results.append(self._enqueue_after_failure(user_id, event, event_id, e, queued_events))
                continue

            results.append(result.to_dict())
            if result.reason != "duplicate":
                processed += 1

        self.deliver_pending(user_id)
        return {
            "processed": processed,
            "queued": len(queued_events),
            "results": results,
            "queuedEvents": queued_events,
        }

    def sync_offline_events(self, user_id: str, events: List[Union[GeofenceEventIn, Dict[str, Any]]]) -> Dict[str, int]:
        stats = self.queue.sync_offline_events(user_id, events)
        self.deliver_pending(user_id)
        return stats

    def deliver_pending(self, user_id: Optional[str] = None) -> Dict[str, int]:
        """Move the outbox into the scheduler and deliver whatever is due."""
        self.outbox.flush()
        return self.scheduler.process_due(user_id=user_id)

    def _enqueue_after_failure(self, user_id, event, event_id, error, queued_events) -> Dict[str, Any]:
        try:
            queue_id = self.queue.enqueue_event(event, error=error.message, user_id=user_id)
        except GeonotifyError as overflow:
            self.metrics.increment_counter("events_failed_total")
            return {"eventId": event_id, "shouldNotify": False, "reason": "failed", **error_payload(overflow)}

        entry = next(e for e in self.queue.get_queued_events_for_user(user_id) if e.id == queue_id)
        queued_events.append(entry.to_dict())
        return {"eventId": event_id, "shouldNotify": False, "reason": "queued", "queueId": queue_id}

    def _publish_notification(self, event: GeofenceEventIn, notification_type: str) -> str:
        place = self.lookup.describe(event.user_id, event.task_id, event.geofence_id, event.location)
        notification = build_notification(event, notification_type, place, self.clock())
        self.outbox.publish(notification)
        return notification.id

    def _bundling_enabled(self, user_id: str) -> bool:
        return self.suppression.get_preferences(user_id).enable_bundling

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def handle_action(self, user_id: str, notification_id: str, action: str) -> Dict[str, Any]:
        """
        Apply a notification action button to the notification's task(s).

        Raises:
            NotFoundError: Unknown notification or not owned by the user
            ValidationError: Unknown action
        """
        row = self.history.get(notification_id, user_id)
        if row is None:
            raise NotFoundError("Notification not found", {"notification_id": notification_id})

        if row.kind == "bundle":
            bundle = NotificationBundle.model_validate(row.payload)
            task_ids = bundle.task_ids
            location = bundle.location
        else:
            notification = Notification.model_validate(row.payload)
            task_ids = [notification.task_id]
            location = notification.metadata.location

        response: Dict[str, Any] = {"notification_id": notification_id, "action": action, "task_ids": task_ids}
        if action == "complete":
            for task_id in task_ids:
                self.suppression.cancel_task_snoozes(user_id, task_id)
                self.scheduler.suppress_for_task(user_id, task_id, "completed")
        elif action in SNOOZE_ACTIONS:
            results = [
                self.suppression.snooze_task_notifications(user_id, task_id, SNOOZE_ACTIONS[action])
                for task_id in task_ids
            ]
            response["snooze_until"] = max(r.snooze.snooze_until for r in results).isoformat()
        elif action == "mute":
            prefs = self.suppression.get_preferences(user_id)
            results = [
                self.suppression.mute_task(user_id, task_id, prefs.default_mute_duration)
                for task_id in task_ids
            ]
            mute_until = results[0].mute.mute_until
            response["mute_until"] = mute_until.isoformat() if mute_until else None
        elif action == "open_map":
            response["location"] = location.model_dump()
        else:
            raise ValidationError(f"Unknown action: {action}", {"field": "action"})

        logger.info("Notification action handled", user_id=user_id, notification_id=notification_id, action=action)
        return response

    def bundle_for_user(self, user_id: str, notifications: List[Notification]) -> List[NotificationBundle]:
        own = [n for n in notifications if n.user_id == user_id]
        if not own:
            raise ValidationError("No notifications for this user", {"received": len(notifications)})
        if len(own) < len(notifications):
            logger.info("Ignoring notifications of other users", user_id=user_id,
                        ignored=len(notifications) - len(own))
        return self.bundler.bundle_notifications(own)

    # ------------------------------------------------------------------
    # Housekeeping and reporting
    # ------------------------------------------------------------------

    def evict_stale(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Drop data past its retention window across every component."""
        now = now or self.clock()
        settings = self.settings
        evicted = self.processor.evict_stale(now)
        evicted["failed_queue_entries"] = self.queue.clear_old_failed(
            now - timedelta(hours=settings.failed_queue_retention_hours)
        )
        evicted["scheduled_entries"] = self.scheduler.cleanup_old(
            now - timedelta(hours=settings.scheduled_retention_hours)
        )
        evicted["suppressions"] = self.suppression.purge_inactive(
            now - timedelta(days=settings.suppression_retention_days)
        )
        evicted["history"] = self.history.purge_terminal_before(
            now - timedelta(days=settings.event_retention_days)
        )
        return evicted

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy" if self.started else "starting",
            "environment": self.settings.environment,
            "ticker": {"running": self.ticker.running, "tick_count": self.ticker.tick_count},
            "outbox_size": len(self.outbox),
            "queue": self.queue.get_queue_stats(),
            "scheduled": self.scheduler.get_stats(),
        }
