"""
Outbox: the bounded hand-off between the event processor and the scheduler.

The processor publishes notifications here; a flush (end of an API batch or
a ticker pass) drains it, bundles per user when the user allows bundling,
and schedules the result. A full outbox makes the publisher flush inline.
Notifications the scheduler could not take stay in the outbox until a later
flush succeeds.
"""
from collections import OrderedDict
from typing import Callable, Dict, List
import queue
import threading

from geonotify.errors import GeonotifyError
from geonotify.schemas.notifications import Notification
from geonotify.services.bundler import NotificationBundler
from geonotify.services.scheduler import NotificationScheduler
from geonotify.utils.logger import get_logger

logger = get_logger(__name__)


class Outbox:
    """Bounded notification queue with per-user bundling on flush."""

    def __init__(
        self,
        scheduler: NotificationScheduler,
        bundler: NotificationBundler,
        bundling_enabled: Callable[[str], bool],
        max_size: int = 1000,
    ):
        self.scheduler = scheduler
        self.bundler = bundler
        self.bundling_enabled = bundling_enabled
        self._queue: "queue.Queue[Notification]" = queue.Queue(maxsize=max_size)
        self._flush_lock = threading.Lock()
        self._retry: List[Notification] = []

    def __len__(self) -> int:
        return self._queue.qsize() + len(self._retry)

    def publish(self, notification: Notification) -> None:
        """Enqueue a notification, flushing inline while the outbox is full."""
        while True:
            try:
                self._queue.put_nowait(notification)
                return
            except queue.Full:
                logger.warning("Outbox full, flushing inline", size=self._queue.qsize())
                self.flush()

    def flush(self) -> Dict[str, int]:
        """
        Drain the outbox into the scheduler.

        Notifications whose scheduling fails are kept and tried again, ahead of
        newer ones, on the next flush.

        Returns:
            Counts of drained notifications, bundles and singles scheduled, and failures
        """
        stats = {"drained": 0, "bundles": 0, "singles": 0, "failed": 0}
        with self._flush_lock:
            pending, self._retry = self._retry, []
            while True:
                try:
                    pending.append(self._queue.get_nowait())
                except queue.Empty:
                    break

            by_user: "OrderedDict[str, List[Notification]]" = OrderedDict()
            for notification in pending:
                by_user.setdefault(notification.user_id, []).append(notification)
                stats["drained"] += 1

            for user_id, notifications in by_user.items():
                self._schedule_user(user_id, notifications, stats)

        if stats["drained"]:
            logger.info("Outbox flushed", **stats)
        return stats

    def _schedule_user(self, user_id: str, notifications: List[Notification], stats: Dict[str, int]) -> None:
        try:
            bundling = len(notifications) > 1 and self.bundling_enabled(user_id)
        except GeonotifyError as e:
            self._keep_for_retry(user_id, notifications, e)
            stats["failed"] += len(notifications)
            return

        if bundling:
            bundles, singles = self.bundler.partition(notifications)
        else:
            bundles, singles = [], notifications

        for bundle in bundles:
            try:
                self.scheduler.schedule_bundle(bundle)
            except GeonotifyError as e:
                self._keep_for_retry(user_id, bundle.notifications, e)
                stats["failed"] += len(bundle.notifications)
                continue
            stats["bundles"] += 1
        for notification in singles:
            try:
                self.scheduler.schedule_notification(notification)
            except GeonotifyError as e:
                self._keep_for_retry(user_id, [notification], e)
                stats["failed"] += 1
                continue
            stats["singles"] += 1

    def _keep_for_retry(self, user_id: str, notifications: List[Notification], error: GeonotifyError) -> None:
        self._retry.extend(notifications)
        logger.error(
            "Scheduling from outbox failed, will retry",
            user_id=user_id,
            count=len(notifications),
            error=error.message,
        )
