"""Tests for event scoring, dedup and the suppression gates."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select, func

from geonotify.errors import ProcessingError, ValidationError
from geonotify.models.geofence_event import EventFingerprint, GeofenceEventRecord
from geonotify.schemas.events import GeofenceEventIn
from geonotify.services.dedup_store import compute_fingerprint
from geonotify.services.event_processor import classify_event

from conftest import START, USER


def _count(geo, model) -> int:
    with Session(geo.db) as session:
        return session.exec(select(func.count()).select_from(model)).one()


@pytest.mark.parametrize(
    "geofence_type,event_type,expected",
    [
        ("approach_5mi", "enter", "approach"),
        ("approach_1mi", "exit", None),
        ("arrival", "enter", "arrival"),
        ("arrival", "exit", "completion"),
        ("post_arrival", "enter", "post_arrival"),
    ],
)
def test_classify_event(make_event, geofence_type, event_type, expected):
    event = GeofenceEventIn.model_validate(make_event(geofence_type=geofence_type, event_type=event_type))
    assert classify_event(event) == expected


def test_fingerprint_uses_fifteen_minute_buckets(make_event):
    base = GeofenceEventIn.model_validate(make_event()).stamped(USER, START + timedelta(minutes=1))
    same_bucket = base.model_copy(update={"id": "other", "timestamp": START + timedelta(minutes=14)})
    next_bucket = base.model_copy(update={"timestamp": START + timedelta(minutes=15)})

    assert compute_fingerprint(base, 15) == compute_fingerprint(same_bucket, 15)
    assert compute_fingerprint(base, 15) != compute_fingerprint(next_bucket, 15)


def test_first_event_notifies(geo, make_event):
    result = geo.processor.process_event(make_event(), USER)

    assert result.should_notify
    assert result.reason == "notify"
    assert result.notification_type == "arrival"
    assert result.notification_id.startswith("notif_")
    assert len(geo.outbox) == 1


def test_duplicate_event_is_dropped(geo, make_event):
    first = geo.processor.process_event(make_event(), USER)
    second = geo.processor.process_event(make_event(), USER)

    assert first.reason == "notify"
    assert second.reason == "duplicate"
    assert not second.should_notify
    assert _count(geo, GeofenceEventRecord) == 1
    assert _count(geo, EventFingerprint) == 1


def test_event_in_next_window_notifies_again(geo, clock, make_event):
    geo.processor.process_event(make_event(), USER)
    clock.advance(minutes=16)

    assert geo.processor.process_event(make_event(), USER).reason == "notify"


def test_low_confidence_event(geo, make_event):
    result = geo.processor.process_event(make_event(confidence=0.2), USER)

    assert result.reason == "low_confidence"
    assert _count(geo, EventFingerprint) == 0


def test_approach_exit_is_not_actionable(geo, make_event):
    result = geo.processor.process_event(make_event(geofence_type="approach_3mi", event_type="exit"), USER)
    assert result.reason == "not_actionable"


def test_invalid_event_raises_validation_error(geo, make_event):
    with pytest.raises(ValidationError):
        geo.processor.process_event(make_event(location={"latitude": 123.0, "longitude": 0.0}), USER)
    with pytest.raises(ValidationError):
        geo.processor.process_event(make_event(event_type="hover"), USER)


def test_event_without_user_is_rejected(geo, make_event):
    with pytest.raises(ValidationError):
        geo.processor.process_event(make_event())


def test_store_failure_leaves_fingerprint_unmarked(geo, make_event, monkeypatch):
    def broken(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(geo.fingerprints, "stage_mark", broken)
    with pytest.raises(ProcessingError):
        geo.processor.process_event(make_event(), USER)
    assert _count(geo, GeofenceEventRecord) == 0

    monkeypatch.undo()
    assert geo.processor.process_event(make_event(), USER).reason == "notify"


def test_rate_limit(geo, make_event):
    geo.suppression.update_preferences(USER, {"max_notifications_per_hour": 5})

    reasons = [
        geo.processor.process_event(make_event(task_id=f"task-{i}", geofence_id=f"geo-{i}"), USER).reason
        for i in range(6)
    ]

    assert reasons == ["notify"] * 5 + ["rate_limited"]


def test_rate_limit_window_slides(geo, clock, make_event):
    geo.suppression.update_preferences(USER, {"max_notifications_per_hour": 1})
    geo.processor.process_event(make_event(geofence_id="geo-a"), USER)
    assert geo.processor.process_event(make_event(geofence_id="geo-b"), USER).reason == "rate_limited"

    clock.advance(minutes=61)
    assert geo.processor.process_event(make_event(geofence_id="geo-b"), USER).reason == "notify"


def test_quiet_hours_wrap_midnight(geo, clock, make_event):
    geo.suppression.update_preferences(USER, {"quiet_hours_start": "22:00", "quiet_hours_end": "07:00"})

    clock.set(datetime(2026, 3, 2, 23, 30))
    assert geo.processor.process_event(make_event(), USER).reason == "quiet_hours"

    clock.set(datetime(2026, 3, 3, 7, 30))
    assert geo.processor.process_event(make_event(), USER).reason == "notify"


def test_quiet_hours_follow_user_timezone(geo, clock, make_event):
    geo.suppression.update_preferences(USER, {
        "timezone": "America/New_York",
        "quiet_hours_start": "22:00",
        "quiet_hours_end": "07:00",
    })

    # 03:00 UTC is 22:00 in New York (EST)
    clock.set(datetime(2026, 3, 3, 3, 0))
    assert geo.processor.process_event(make_event(), USER).reason == "quiet_hours"


def test_snoozed_task_is_suppressed(geo, make_event):
    geo.suppression.snooze_task_notifications(USER, "task-1", "15m")

    result = geo.processor.process_event(make_event(), USER)

    assert result.reason == "suppressed"
    assert result.suppressed_by == "snooze"
    assert _count(geo, EventFingerprint) == 0


def test_mute_wins_over_snooze(geo, make_event):
    geo.suppression.snooze_task_notifications(USER, "task-1", "1h")
    geo.suppression.mute_task(USER, "task-1", "4h")

    result = geo.processor.process_event(make_event(), USER)

    assert result.reason == "suppressed"
    assert result.suppressed_by == "mute"


def test_permanent_mute_outlasts_an_expired_snooze(geo, clock, provider, make_event):
    geo.suppression.mute_task(USER, "task-1", "permanent")
    geo.suppression.snooze_task_notifications(USER, "task-1", "1h")

    clock.advance(hours=2)
    geo.ticker.tick()

    muted = geo.submit_events(USER, [make_event()])["results"][0]
    assert muted["reason"] == "suppressed"
    assert muted["suppressedBy"] == "mute"
    assert provider.sent == []

    assert geo.suppression.unmute_task(USER, "task-1") == 1

    assert geo.submit_events(USER, [make_event(geofence_id="geo-2")])["results"][0]["reason"] == "notify"
    assert len(provider.sent) == 1


def test_other_tasks_are_not_suppressed(geo, make_event):
    geo.suppression.mute_task(USER, "task-1", "1h")
    assert geo.processor.process_event(make_event(task_id="task-2"), USER).reason == "notify"


def test_process_batch_isolates_failures(geo, make_event):
    items = geo.processor.process_batch(
        [make_event(geofence_id="geo-a"), make_event(confidence=4.0), make_event(geofence_id="geo-b")],
        USER,
    )

    assert [item.result.reason if item.result else None for item in items] == ["notify", None, "notify"]
    assert isinstance(items[1].error, ValidationError)


def test_processing_stats(geo, make_event):
    geo.processor.process_event(make_event(), USER)
    geo.processor.process_event(make_event(), USER)
    geo.processor.process_event(make_event(confidence=0.1, geofence_id="geo-2"), USER)

    stats = geo.processor.get_processing_stats(USER)

    assert stats["notified_events"] == 1
    assert stats["by_notification_type"] == {"arrival": 1}
    assert stats["outcomes_since_start"] == {"notify": 1, "duplicate": 1, "low_confidence": 1}


def test_evict_stale_forgets_fingerprints(geo, clock, make_event):
    geo.processor.process_event(make_event(), USER)
    clock.advance(hours=49)

    evicted = geo.processor.evict_stale()

    assert evicted["fingerprints"] == 1
    assert _count(geo, EventFingerprint) == 0
