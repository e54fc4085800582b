"""Tests for spatial/temporal bundling and the outbox hand-off."""
from datetime import timedelta

from geonotify.schemas.events import GeofenceEventIn
from geonotify.services.bundler import NotificationBundler
from geonotify.services.geo import haversine_meters
from geonotify.schemas.events import Location
from geonotify.services.templates import build_notification

from conftest import START, USER

SF = {"latitude": 37.7749, "longitude": -122.4194}
# About 110 m north of SF
SF_NEARBY = {"latitude": 37.7759, "longitude": -122.4194}
OAKLAND = {"latitude": 37.8044, "longitude": -122.2712}


def _notification(make_event, scheduled_time=START, user_id=USER, **overrides):
    event = GeofenceEventIn.model_validate(make_event(**overrides)).stamped(user_id, scheduled_time)
    return build_notification(event, "arrival", None, scheduled_time)


def test_haversine_distance():
    distance = haversine_meters(Location(**SF), Location(**OAKLAND))
    assert 13000 < distance < 14000


def test_three_nearby_notifications_make_one_bundle(make_event):
    notifications = [
        _notification(make_event, task_id="task-1", location=SF),
        _notification(make_event, START + timedelta(minutes=2), task_id="task-2", location=SF_NEARBY),
        _notification(make_event, START + timedelta(minutes=4), task_id="task-3", location=SF),
    ]

    bundles = NotificationBundler().bundle_notifications(notifications)

    assert len(bundles) == 1
    bundle = bundles[0]
    assert bundle.title == "3 reminders nearby"
    assert bundle.body == "You have 3 reminders for 3 tasks in this area"
    assert bundle.task_ids == ["task-1", "task-2", "task-3"]
    assert bundle.scheduled_time == START
    assert bundle.id.startswith("bundle_")
    assert [a.type for a in bundle.actions] == ["complete", "snooze_1h", "open_map", "mute"]


def test_single_task_bundle_wording(make_event):
    notifications = [_notification(make_event), _notification(make_event)]

    bundle = NotificationBundler().bundle_notifications(notifications)[0]

    assert bundle.body == "You have 2 reminders for this area"


def test_single_notification_is_not_bundled(make_event):
    assert NotificationBundler().bundle_notifications([_notification(make_event)]) == []


def test_far_apart_notifications_stay_single(make_event):
    notifications = [
        _notification(make_event, location=SF),
        _notification(make_event, location=OAKLAND),
    ]

    bundles, singles = NotificationBundler().partition(notifications)

    assert bundles == []
    assert len(singles) == 2


def test_window_is_measured_from_the_seed(make_event):
    notifications = [
        _notification(make_event, task_id="task-1"),
        _notification(make_event, START + timedelta(minutes=4), task_id="task-2"),
        _notification(make_event, START + timedelta(minutes=8), task_id="task-3"),
    ]

    bundles, singles = NotificationBundler(window_minutes=5).partition(notifications)

    assert bundles[0].task_ids == ["task-1", "task-2"]
    assert [n.task_id for n in singles] == ["task-3"]


def test_other_users_are_never_bundled_together(make_event):
    notifications = [
        _notification(make_event, user_id="user-1"),
        _notification(make_event, user_id="user-2"),
    ]
    assert NotificationBundler().bundle_notifications(notifications) == []


def test_inputs_are_left_untouched(make_event):
    notifications = [_notification(make_event), _notification(make_event)]
    snapshot = [n.model_dump() for n in notifications]

    NotificationBundler().bundle_notifications(notifications)

    assert [n.model_dump() for n in notifications] == snapshot


def test_outbox_flush_bundles_per_user(geo, make_event):
    for i in range(3):
        geo.outbox.publish(_notification(make_event, task_id=f"task-{i}"))

    stats = geo.outbox.flush()

    assert stats == {"drained": 3, "bundles": 1, "singles": 0, "failed": 0}
    assert len(geo.outbox) == 0
    assert geo.scheduler.get_stats(USER)["pending"] == 1


def test_outbox_respects_disabled_bundling(geo, make_event):
    geo.suppression.update_preferences(USER, {"enable_bundling": False})
    for i in range(3):
        geo.outbox.publish(_notification(make_event, task_id=f"task-{i}"))

    stats = geo.outbox.flush()

    assert stats["bundles"] == 0
    assert stats["singles"] == 3


def test_full_outbox_flushes_inline(settings, clock, provider, make_event):
    from geonotify.services.engine import GeofenceEngine

    engine = GeofenceEngine(settings.with_overrides(outbox_max_size=2), clock=clock, provider=provider)
    engine.start()
    try:
        engine.suppression.update_preferences(USER, {"enable_bundling": False})
        for i in range(3):
            engine.outbox.publish(_notification(make_event, task_id=f"task-{i}"))

        assert len(engine.outbox) == 1
        assert engine.scheduler.get_stats(USER)["pending"] == 2
    finally:
        engine.shutdown()
