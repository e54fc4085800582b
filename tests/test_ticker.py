"""Tests for the background ticker."""
import asyncio

from geonotify.services.ticker import BackgroundTicker
from geonotify.utils.metrics import MetricsCollector

from conftest import START


def test_steps_run_in_order(clock):
    calls = []
    ticker = BackgroundTicker(
        [(name, lambda now, name=name: calls.append((name, now))) for name in ("first", "second", "third")],
        clock=clock,
    )

    outcome = ticker.tick()

    assert [name for name, _ in calls] == ["first", "second", "third"]
    assert all(now == START for _, now in calls)
    assert not outcome["skipped"]
    assert ticker.tick_count == 1


def test_failing_step_does_not_stop_the_tick(clock):
    calls = []

    def broken(now):
        raise RuntimeError("boom")

    ticker = BackgroundTicker(
        [("broken", broken), ("after", lambda now: calls.append(now) or "ok")],
        clock=clock,
    )

    outcome = ticker.tick()

    assert outcome["steps"]["broken"] == {"ok": False, "error": "boom"}
    assert outcome["steps"]["after"] == {"ok": True, "result": "ok"}
    assert calls == [START]


def test_overlapping_tick_is_skipped(clock):
    metrics = MetricsCollector()
    nested = []
    ticker = BackgroundTicker([], clock=clock, metrics=metrics)
    ticker.steps = [("reenter", lambda now: nested.append(ticker.tick()))]

    ticker.tick()

    assert nested == [{"skipped": True}]
    assert metrics.get_metrics()["counters"]["ticks_skipped_total"] == 1
    assert not ticker.busy


def test_engine_tick_runs_every_housekeeping_step(geo):
    outcome = geo.ticker.tick()

    assert list(outcome["steps"]) == [
        "expire_snoozes",
        "expire_mutes",
        "retry_queued_events",
        "flush_outbox",
        "retry_deliveries",
        "evict_stale",
    ]
    assert all(step["ok"] for step in outcome["steps"].values())


def test_periodic_loop_start_and_stop(clock):
    ticks = []
    ticker = BackgroundTicker([("count", ticks.append)], clock=clock, interval_seconds=0.01)

    async def scenario():
        await ticker.start(wait_first=False)
        assert ticker.running
        await asyncio.sleep(0.05)
        await ticker.stop()

    asyncio.run(scenario())

    assert not ticker.running
    assert ticks
