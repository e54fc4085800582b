"""Tests for delivery, retries, deferral and cancellation in the scheduler."""
from datetime import datetime, timedelta

from geonotify.schemas.events import GeofenceEventIn
from geonotify.services.templates import build_notification

from conftest import START, USER


def _notification(make_event, scheduled_time=START, **overrides):
    event = GeofenceEventIn.model_validate(make_event(**overrides)).stamped(USER, scheduled_time)
    return build_notification(event, "arrival", None, scheduled_time)


def test_due_notification_is_delivered(geo, provider, make_event):
    entry = geo.scheduler.schedule_notification(_notification(make_event))

    stats = geo.scheduler.process_due()

    assert stats == {"due": 1, "delivered": 1, "not_delivered": 0}
    assert entry.status == "delivered"
    assert entry.attempts == 1
    assert provider.sent[0]["title"] == "Arrived at your destination"
    row = geo.history.get(entry.notification.id)
    assert row.status == "delivered"
    assert row.delivered_time == START


def test_future_notification_waits(geo, clock, provider, make_event):
    geo.scheduler.schedule_notification(_notification(make_event, START + timedelta(minutes=10)))

    assert geo.scheduler.process_due()["due"] == 0
    clock.advance(minutes=10)
    assert geo.scheduler.process_due()["delivered"] == 1


def test_failed_delivery_retries_then_fails(geo, clock, provider, make_event):
    provider.fail_next = 10
    entry = geo.scheduler.schedule_notification(_notification(make_event))

    geo.scheduler.process_due()
    assert entry.status == "pending"
    assert entry.attempts == 1
    assert entry.next_attempt_at == START + timedelta(minutes=5)

    # Not due again before the retry delay
    assert geo.scheduler.process_due()["due"] == 0

    clock.advance(minutes=5)
    geo.scheduler.process_due()
    clock.advance(minutes=5)
    geo.scheduler.process_due()

    assert entry.status == "failed"
    assert entry.attempts == 3
    assert entry.error == "gateway unavailable"
    assert geo.history.get(entry.notification.id).status == "failed"
    assert geo.metrics.get_metrics()["counters"]["notifications_failed_total"] == 1


def test_retry_after_transient_failure_succeeds(geo, clock, provider, make_event):
    provider.fail_next = 1
    entry = geo.scheduler.schedule_notification(_notification(make_event))

    geo.scheduler.process_due()
    clock.advance(minutes=5)
    geo.scheduler.process_due()

    assert entry.status == "delivered"
    assert entry.attempts == 2
    assert len(provider.sent) == 1


def test_cancel_pending_notification(geo, provider, make_event):
    entry = geo.scheduler.schedule_notification(_notification(make_event))

    assert geo.scheduler.cancel_notification(entry.id, USER)
    assert geo.scheduler.process_due()["due"] == 0
    assert provider.sent == []
    assert geo.history.get(entry.notification.id).status == "cancelled"


def test_cancel_requires_ownership(geo, make_event):
    entry = geo.scheduler.schedule_notification(_notification(make_event))

    assert not geo.scheduler.cancel_notification(entry.id, "someone-else")
    assert entry.status == "pending"


def test_cancel_during_delivery_is_refused(geo, provider, make_event):
    entry = geo.scheduler.schedule_notification(_notification(make_event))
    outcomes = []
    provider.before_send = lambda scheduled: outcomes.append(geo.scheduler.cancel_notification(scheduled.id))

    geo.scheduler.process_due()

    assert outcomes == [False]
    assert entry.status == "delivered"
    assert not entry.in_flight


def test_finished_notification_cannot_be_cancelled(geo, make_event):
    entry = geo.scheduler.schedule_notification(_notification(make_event))
    geo.scheduler.process_due()

    assert not geo.scheduler.cancel_notification(entry.id)


def test_quiet_hours_defer_without_using_an_attempt(geo, clock, provider, make_event):
    entry = geo.scheduler.schedule_notification(_notification(make_event))
    geo.suppression.update_preferences(USER, {"quiet_hours_start": "11:00", "quiet_hours_end": "13:00"})

    geo.scheduler.process_due()

    assert entry.status == "pending"
    assert entry.attempts == 0
    assert entry.next_attempt_at == datetime(2026, 3, 2, 13, 5)

    clock.set(datetime(2026, 3, 2, 13, 5))
    geo.scheduler.process_due()
    assert entry.status == "delivered"


def test_gate_cancels_muted_task(geo, provider, make_event, monkeypatch):
    entry = geo.scheduler.schedule_notification(_notification(make_event))
    # Mute without sweeping pending entries so the delivery gate has to catch it
    monkeypatch.setattr(geo.suppression, "scheduler", None)
    geo.suppression.mute_task(USER, "task-1", "1h")
    monkeypatch.undo()

    geo.scheduler.process_due()

    assert entry.status == "cancelled"
    assert entry.cancel_reason == "muted"
    assert provider.sent == []


def test_suppress_for_task_splits_bundles(geo, make_event):
    first = _notification(make_event, task_id="task-1")
    second = _notification(make_event, task_id="task-2")
    bundle = geo.bundler.bundle_notifications([first, second])[0]
    entry = geo.scheduler.schedule_bundle(bundle)

    held = geo.scheduler.suppress_for_task(USER, "task-1", "snoozed", "snoozed")

    assert [n.id for n in held] == [first.id]
    assert entry.status == "cancelled"
    pending = geo.scheduler.get_scheduled_notifications(USER, "pending")
    assert [e.notification.id for e in pending] == [second.id]
    assert geo.history.get(first.id).status == "snoozed"
    assert geo.history.get(second.id).status == "pending"


def test_bundle_delivery_marks_members(geo, provider, make_event):
    first = _notification(make_event, task_id="task-1")
    second = _notification(make_event, task_id="task-2")
    bundle = geo.bundler.bundle_notifications([first, second])[0]
    geo.scheduler.schedule_bundle(bundle)

    geo.scheduler.process_due()

    assert provider.sent[0]["kind"] == "bundle"
    assert geo.history.get(bundle.id).status == "delivered"
    assert geo.history.get(first.id).status == "delivered"


def test_cleanup_old_keeps_pending(geo, clock, make_event):
    done = geo.scheduler.schedule_notification(_notification(make_event))
    geo.scheduler.process_due()
    waiting = geo.scheduler.schedule_notification(_notification(make_event, START + timedelta(days=2)))

    clock.advance(hours=25)
    removed = geo.scheduler.cleanup_old(clock() - timedelta(hours=24))

    assert removed == 1
    assert geo.scheduler.get(done.id) is None
    assert geo.scheduler.get(waiting.id) is not None
