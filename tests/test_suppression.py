"""Tests for snoozes, mutes, preferences and re-entry of held notifications."""
from datetime import datetime, timedelta

import pytest

from geonotify.errors import LimitExceededError, NotFoundError, ValidationError
from geonotify.services.durations import (
    MuteDuration,
    SnoozeDuration,
    parse_snooze_duration,
    resolve_mute_until,
    resolve_snooze_until,
)

from conftest import START, USER


def _pending_notification(geo, make_event, **overrides):
    """Process an event and schedule its notification without delivering it."""
    result = geo.processor.process_event(make_event(**overrides), USER)
    geo.outbox.flush()
    return result.notification_id


def _history_status(geo, notification_id):
    return geo.history.get(notification_id).status


class TestDurations:
    def test_fixed_offsets(self):
        assert resolve_snooze_until(SnoozeDuration.FIFTEEN_MINUTES, START) == START + timedelta(minutes=15)
        assert resolve_mute_until(MuteDuration.EIGHT_HOURS, START) == START + timedelta(hours=8)
        assert resolve_mute_until(MuteDuration.ONE_DAY, START) == START + timedelta(hours=24)

    def test_snooze_today_ends_at_local_midnight(self):
        # 12:00 UTC is 07:00 in New York; local midnight is 05:00 UTC next day
        assert resolve_snooze_until(SnoozeDuration.TODAY, START, "America/New_York") == datetime(2026, 3, 3, 5, 0)
        assert resolve_snooze_until(SnoozeDuration.TODAY, START) == datetime(2026, 3, 3, 0, 0)

    def test_until_tomorrow_resumes_at_nine_local(self):
        assert resolve_mute_until(MuteDuration.UNTIL_TOMORROW, START) == datetime(2026, 3, 3, 9, 0)
        assert resolve_mute_until(MuteDuration.UNTIL_TOMORROW, START, "Europe/Berlin") == datetime(2026, 3, 3, 8, 0)

    def test_permanent_mute_has_no_end(self):
        assert resolve_mute_until(MuteDuration.PERMANENT, START) is None

    def test_unknown_duration(self):
        with pytest.raises(ValidationError):
            parse_snooze_duration("2h")


class TestSnoozes:
    def test_snooze_holds_pending_notifications(self, geo, make_event):
        notification_id = _pending_notification(geo, make_event)

        result = geo.suppression.snooze_task_notifications(USER, "task-1", "15m")

        assert result.snoozed_notifications == [notification_id]
        assert _history_status(geo, notification_id) == "snoozed"
        assert geo.scheduler.get_stats(USER)["cancelled"] == 1
        # One task-wide snooze plus one for the held notification
        assert len(geo.suppression.list_snoozes(USER)) == 2

    def test_snooze_without_pending_notifications(self, geo):
        result = geo.suppression.snooze_task_notifications(USER, "task-9", "1h")

        assert result.snoozed_notifications == []
        assert result.snooze.snooze_until == START + timedelta(hours=1)

    def test_snoozed_notification_reenters_after_expiry(self, geo, clock, provider, make_event):
        notification_id = _pending_notification(geo, make_event)
        geo.suppression.snooze_task_notifications(USER, "task-1", "15m")

        clock.advance(minutes=16)
        outcome = geo.ticker.tick()

        assert outcome["steps"]["expire_snoozes"]["result"] == 2
        assert [p["notification_id"] for p in provider.sent] == [notification_id]
        assert _history_status(geo, notification_id) == "delivered"

    def test_stale_snoozed_notification_expires(self, geo, clock, provider, make_event):
        notification_id = _pending_notification(geo, make_event)
        geo.suppression.snooze_task_notifications(USER, "task-1", "1h")

        clock.advance(hours=3)
        geo.ticker.tick()

        assert provider.sent == []
        assert _history_status(geo, notification_id) == "expired"

    def test_repeat_snooze_extends_until_limit(self, geo):
        geo.suppression.update_preferences(USER, {"max_snooze_count": 2})

        first = geo.suppression.snooze_task_notifications(USER, "task-1", "15m")
        second = geo.suppression.snooze_task_notifications(USER, "task-1", "1h")

        assert second.extended
        assert second.snooze.id == first.snooze.id
        assert second.snooze.snooze_count == 2
        assert second.snooze.snooze_until == START + timedelta(hours=1)
        with pytest.raises(LimitExceededError) as exc:
            geo.suppression.snooze_task_notifications(USER, "task-1", "15m")
        assert exc.value.reason == "snooze_limit"

    def test_cancel_snooze_releases_notifications(self, geo, provider, make_event):
        notification_id = _pending_notification(geo, make_event)
        geo.suppression.snooze_task_notifications(USER, "task-1", "1h")

        assert geo.suppression.cancel_task_snoozes(USER, "task-1") == 2
        geo.scheduler.process_due()

        assert [p["notification_id"] for p in provider.sent] == [notification_id]

    def test_cancel_snooze_of_other_user(self, geo):
        snooze = geo.suppression.snooze_task_notifications(USER, "task-1", "15m").snooze

        with pytest.raises(NotFoundError):
            geo.suppression.cancel_snooze("someone-else", snooze.id)

    def test_extend_snooze(self, geo):
        snooze = geo.suppression.snooze_task_notifications(USER, "task-1", "15m").snooze

        extended = geo.suppression.extend_snooze(USER, snooze.id, "today")

        assert extended.snooze_until == datetime(2026, 3, 3, 0, 0)
        assert extended.snooze_count == 2


class TestMutes:
    def test_mute_cancels_pending_notifications(self, geo, make_event):
        notification_id = _pending_notification(geo, make_event)

        result = geo.suppression.mute_task(USER, "task-1", "4h")

        assert result.cancelled_notifications == [notification_id]
        row = geo.history.get(notification_id)
        assert row.status == "cancelled"
        assert row.cancel_reason == "muted"

    def test_new_mute_supersedes_previous(self, geo):
        geo.suppression.mute_task(USER, "task-1", "1h")
        result = geo.suppression.mute_task(USER, "task-1", "8h")

        assert result.superseded == 1
        mutes = geo.suppression.list_mutes(USER)
        assert len(mutes) == 1
        assert mutes[0].mute_until == START + timedelta(hours=8)

    def test_permanent_mute_can_be_disabled(self, geo):
        geo.suppression.update_preferences(USER, {"allow_permanent_mute": False})

        with pytest.raises(ValidationError):
            geo.suppression.mute_task(USER, "task-1", "permanent")

    def test_unmute_reenters_cancelled_notifications(self, geo, provider, make_event):
        notification_id = _pending_notification(geo, make_event)
        geo.suppression.mute_task(USER, "task-1", "permanent")

        assert geo.suppression.unmute_task(USER, "task-1") == 1
        assert _history_status(geo, notification_id) == "pending"

        geo.scheduler.process_due()
        assert [p["notification_id"] for p in provider.sent] == [notification_id]

    def test_expired_mute_reenters_into_quiet_hours(self, geo, clock, make_event):
        notification_id = _pending_notification(geo, make_event)
        geo.suppression.mute_task(USER, "task-1", "1h")
        geo.suppression.update_preferences(USER, {"quiet_hours_start": "13:00", "quiet_hours_end": "14:00"})

        clock.advance(minutes=61)
        geo.suppression.expire_mutes()

        pending = geo.scheduler.get_scheduled_notifications(USER, "pending")
        assert [e.notification.id for e in pending] == [notification_id]
        assert pending[0].scheduled_time == datetime(2026, 3, 2, 14, 5)


class TestPreferences:
    def test_defaults_for_unknown_user(self, geo):
        prefs = geo.suppression.get_preferences("new-user")

        assert prefs.timezone == "UTC"
        assert prefs.max_notifications_per_hour == 10
        assert prefs.enable_bundling

    def test_rejects_unknown_timezone(self, geo):
        with pytest.raises(ValidationError):
            geo.suppression.update_preferences(USER, {"timezone": "Mars/Olympus"})

    def test_quiet_hours_must_be_paired(self, geo):
        with pytest.raises(ValidationError):
            geo.suppression.update_preferences(USER, {"quiet_hours_start": "22:00"})

    def test_summary_counts(self, geo, make_event):
        _pending_notification(geo, make_event)
        geo.suppression.snooze_task_notifications(USER, "task-1", "15m")
        geo.suppression.mute_task(USER, "task-2", "1h")

        summary = geo.suppression.get_summary(USER)

        assert summary["snoozed_notifications"] == 1
        assert summary["active_snoozes"] == 2
        assert summary["active_mutes"] == 1
