"""Tests for notification wording and place lookups."""
import threading

import httpx

from geonotify.schemas.events import GeofenceEventIn, Location
from geonotify.services.lookups import HttpPlaceLookup, PlaceInfo, PlaceLookup, StaticPlaceLookup, TimedLookup
from geonotify.services.templates import build_notification, render_text

from conftest import START, USER

GROCERY = PlaceInfo(name="Green Grocer", task_title="Buy milk", distance_meters=4000)


def test_approach_far_away_mentions_miles():
    text = render_text("approach", GROCERY)

    assert text["title"] == "Approaching Green Grocer"
    assert text["body"].startswith("You're 2.5 miles from Green Grocer")


def test_approach_close_by():
    text = render_text("approach", PlaceInfo(name="Green Grocer", task_title="Buy milk", distance_meters=300))
    assert text["title"] == "Near Green Grocer"


def test_generic_wording_without_place():
    assert render_text("arrival", None)["title"] == "Arrived at your destination"
    assert render_text("post_arrival", None)["title"] == "Still at your destination"
    assert render_text("completion", None)["title"] == "Leaving your destination"


def test_actions_follow_notification_type(make_event):
    event = GeofenceEventIn.model_validate(make_event(geofence_type="post_arrival")).stamped(USER, START)

    notification = build_notification(event, "post_arrival", GROCERY, START)

    assert [a.type for a in notification.actions] == ["complete", "snooze_1h", "snooze_today", "mute"]
    assert notification.metadata.place_name == "Green Grocer"
    assert notification.event_id == event.id
    assert notification.id.startswith("notif_")


def test_static_lookup_feeds_notifications(settings, clock, provider, make_event):
    from geonotify.services.engine import GeofenceEngine

    lookup = StaticPlaceLookup({("task-1", "geo-1"): GROCERY})
    engine = GeofenceEngine(settings, clock=clock, provider=provider, place_lookup=lookup)
    engine.start()
    try:
        engine.submit_events(USER, [make_event()])
    finally:
        engine.shutdown()

    assert provider.sent[0]["title"] == "Arrived at Green Grocer"


class _StuckLookup(PlaceLookup):
    def __init__(self):
        self.release = threading.Event()

    def describe(self, user_id, task_id, geofence_id, location):
        self.release.wait(5)
        return GROCERY


def test_timed_lookup_gives_up_after_deadline():
    stuck = _StuckLookup()
    timed = TimedLookup(stuck, timeout_seconds=0.05)
    try:
        assert timed.describe(USER, "task-1", "geo-1", Location(latitude=0, longitude=0)) is None
    finally:
        stuck.release.set()
        timed.shutdown()


def test_http_lookup():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/places/geo-1":
            return httpx.Response(200, json={"name": "Green Grocer", "task_title": "Buy milk"})
        return httpx.Response(404)

    lookup = HttpPlaceLookup("http://places.local/")
    lookup.client = httpx.Client(transport=httpx.MockTransport(handler))
    location = Location(latitude=0, longitude=0)

    assert lookup.describe(USER, "task-1", "geo-1", location).name == "Green Grocer"
    assert lookup.describe(USER, "task-1", "geo-2", location) is None
    lookup.close()
