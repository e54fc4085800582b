"""Notification Bundler: collapses nearby, near-simultaneous reminders into one notification."""
from datetime import timedelta
from typing import List, Tuple
import uuid

from geonotify.schemas.notifications import Notification, NotificationBundle
from geonotify.services.geo import center_point, haversine_meters
from geonotify.services.templates import bundle_actions

MIN_BUNDLE_SIZE = 2


class NotificationBundler:
    """
    Greedy spatial/temporal clustering.

    Notifications are walked in scheduled-time order. Each one not yet taken
    seeds a cluster and pulls in every later notification of the same user
    within `radius_meters` of the seed and `window_minutes` of it. Clusters
    of at least two become bundles. Inputs are never modified.
    """

    def __init__(self, radius_meters: float = 500.0, window_minutes: int = 5):
        self.radius_meters = radius_meters
        self.window = timedelta(minutes=window_minutes)

    def bundle_notifications(self, notifications: List[Notification]) -> List[NotificationBundle]:
        bundles, _ = self.partition(notifications)
        return bundles

    def partition(self, notifications: List[Notification]) -> Tuple[List[NotificationBundle], List[Notification]]:
        """
        Split notifications into bundles and the ones left on their own.

        Returns:
            (bundles, singles), singles in scheduled-time order
        """
        ordered = sorted(notifications, key=lambda n: n.scheduled_time)
        taken = [False] * len(ordered)
        bundles: List[NotificationBundle] = []
        singles: List[Notification] = []

        for i, seed in enumerate(ordered):
            if taken[i]:
                continue
            taken[i] = True
            cluster = [seed]
            for j in range(i + 1, len(ordered)):
                candidate = ordered[j]
                if taken[j] or candidate.user_id != seed.user_id:
                    continue
                if abs(candidate.scheduled_time - seed.scheduled_time) > self.window:
                    continue
                distance = haversine_meters(seed.metadata.location, candidate.metadata.location)
                if distance <= self.radius_meters:
                    taken[j] = True
                    cluster.append(candidate)

            if len(cluster) >= MIN_BUNDLE_SIZE:
                bundles.append(self._make_bundle(cluster))
            else:
                singles.append(seed)

        return bundles, singles

    def _make_bundle(self, cluster: List[Notification]) -> NotificationBundle:
        count = len(cluster)
        task_count = len({n.task_id for n in cluster})
        if task_count == 1:
            body = f"You have {count} reminders for this area"
        else:
            body = f"You have {count} reminders for {task_count} tasks in this area"

        return NotificationBundle(
            id=f"bundle_{uuid.uuid4().hex}",
            user_id=cluster[0].user_id,
            notifications=list(cluster),
            title=f"{count} reminders nearby",
            body=body,
            actions=bundle_actions(),
            location=center_point(n.metadata.location for n in cluster),
            radius=self.radius_meters,
            scheduled_time=min(n.scheduled_time for n in cluster),
        )
