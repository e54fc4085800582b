"""
Background Ticker.

One tick runs the housekeeping steps in a fixed order. Ticks never overlap:
a tick that finds another one running returns {"skipped": True}. A failing
step is logged and recorded, and the remaining steps still run.

The periodic loop runs on the event loop; each tick body runs in a worker
thread because every step is blocking.
"""
import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import threading
import time

from geonotify.utils.clock import Clock, utcnow
from geonotify.utils.logger import get_logger
from geonotify.utils.metrics import MetricsCollector

logger = get_logger(__name__)

Step = Tuple[str, Callable[[datetime], Any]]


class BackgroundTicker:
    """Runs ordered housekeeping steps, once at a time."""

    def __init__(
        self,
        steps: List[Step],
        clock: Clock = utcnow,
        metrics: Optional[MetricsCollector] = None,
        interval_seconds: float = 120.0,
    ):
        self.steps = list(steps)
        self.clock = clock
        self.metrics = metrics or MetricsCollector()
        self.interval_seconds = interval_seconds
        self._tick_lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None
        self.last_tick: Optional[Dict[str, Any]] = None
        self.tick_count = 0

    def tick(self) -> Dict[str, Any]:
        """
        Run every step once, in order.

        Returns:
            {"skipped": True} when a tick is already running, otherwise the
            per-step outcome
        """
        if not self._tick_lock.acquire(blocking=False):
            self.metrics.increment_counter("ticks_skipped_total")
            logger.warning("Tick skipped, previous tick still running")
            return {"skipped": True}

        try:
            now = self.clock()
            started = time.monotonic()
            outcome: Dict[str, Any] = {"skipped": False, "started_at": now.isoformat(), "steps": {}}
            for name, step in self.steps:
                try:
                    outcome["steps"][name] = {"ok": True, "result": step(now)}
                except Exception as e:
                    logger.exception("Tick step failed", step=name, error=str(e))
                    outcome["steps"][name] = {"ok": False, "error": str(e)}

            outcome["duration_seconds"] = round(time.monotonic() - started, 4)
            self.metrics.increment_counter("ticks_total")
            self.metrics.record_timer("tick_duration_seconds", outcome["duration_seconds"])
            self.tick_count += 1
            self.last_tick = outcome
            return outcome
        finally:
            self._tick_lock.release()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return self._tick_lock.locked()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "busy": self.busy,
            "interval_seconds": self.interval_seconds,
            "tick_count": self.tick_count,
            "steps": [name for name, _ in self.steps],
            "last_tick": self.last_tick,
        }

    async def start(self, wait_first: bool = True) -> None:
        """Start the periodic loop on the running event loop."""
        if self.running:
            return

        async def _runner() -> None:
            if wait_first:
                await asyncio.sleep(self.interval_seconds)
            while True:
                try:
                    await asyncio.to_thread(self.tick)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception("Periodic tick failed", error=str(e))
                await asyncio.sleep(self.interval_seconds)

        self._task = asyncio.create_task(_runner(), name="geonotify-ticker")
        logger.info("Background ticker started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await asyncio.gather(self._task, return_exceptions=True)
        finally:
            self._task = None
            logger.info("Background ticker stopped")
