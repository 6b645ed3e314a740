"""Daily rebuild trigger and the threading scheduler loop that drives it.

┌──────────────────────────────────────────────────────────────────────────────┐
│  REBUILD SCHEDULING                                                           │
│                                                                               │
│  ThreadSchedulerBackend controls WHEN ticks happen; the tick callback         │
│  (DateSpineScheduler.tick) controls WHAT happens on each tick:                │
│                                                                               │
│   ┌─────────────────────────┐     tick()     ┌─────────────────────────────┐  │
│   │ ThreadSchedulerBackend  │ ─────────────► │ DateSpineScheduler          │  │
│   │ daemon thread,          │                │  - DailyRebuildTrigger due? │  │
│   │ stop_event.wait(30s)    │                │    → coordinator.rebuild()  │  │
│   └─────────────────────────┘                │  - resolver.purge_idle()    │  │
│                                              └─────────────────────────────┘  │
│                                                                               │
│  The trigger fires at most once per UTC day, on the first tick at or after   │
│  the configured wall-clock time. A failed rebuild is not retried by the      │
│  trigger; the previous generation keeps serving and an operator may          │
│  re-trigger through the admin endpoint.                                      │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, date, datetime, time
from typing import Any

from datespine.core.errors import RebuildFailed, RebuildInProgress

logger = logging.getLogger(__name__)

TickCallback = Callable[[], None]


class DailyRebuildTrigger:
    """Decides whether the daily rebuild is due.

    Example:
        >>> trigger = DailyRebuildTrigger(time(6, 0))
        >>> trigger.is_due(datetime(2025, 8, 6, 6, 0, 30, tzinfo=UTC))
        True
    """

    def __init__(
        self,
        run_at: time,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.run_at = run_at
        self._clock = clock
        self._last_run: date | None = None

    @property
    def last_run(self) -> date | None:
        return self._last_run

    def now(self) -> datetime:
        return self._clock()

    def is_due(self, now: datetime | None = None) -> bool:
        now = now or self._clock()
        if self._last_run == now.date():
            return False
        return now.time().replace(tzinfo=None) >= self.run_at

    def mark_ran(self, now: datetime | None = None) -> None:
        """Record that today's rebuild happened (or was attempted)."""
        self._last_run = (now or self._clock()).date()

    def mark_ran_if_past(self, now: datetime | None = None) -> None:
        """Suppress today's trigger when a startup rebuild already ran after ``run_at``."""
        now = now or self._clock()
        if now.time().replace(tzinfo=None) >= self.run_at:
            self._last_run = now.date()


class DateSpineScheduler:
    """Tick logic: run the daily rebuild when due, purge idle entitlements."""

    def __init__(
        self,
        trigger: DailyRebuildTrigger,
        rebuild: Callable[[str], Any],
        purge: Callable[[], int] | None = None,
    ) -> None:
        self.trigger = trigger
        self._rebuild = rebuild
        self._purge = purge

    def tick(self) -> None:
        now = self.trigger.now()
        if self.trigger.is_due(now):
            self.trigger.mark_ran(now)
            try:
                self._rebuild("schedule")
            except RebuildInProgress:
                logger.info("Scheduled rebuild skipped: a rebuild is already running")
            except RebuildFailed as e:
                # Already alerted by the coordinator
                logger.warning(f"Scheduled rebuild failed: {e}")
        if self._purge is not None:
            self._purge()


class ThreadSchedulerBackend:
    """Threading-based scheduler loop.

    Example:
        >>> backend = ThreadSchedulerBackend()
        >>> backend.start(scheduler.tick, interval_seconds=30.0)
        >>> # ... later ...
        >>> backend.stop()
    """

    name = "thread"

    def __init__(self) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 30.0
        self._started = False
        self._lock = threading.Lock()

    def start(
        self,
        tick_callback: TickCallback,
        interval_seconds: float = 30.0,
    ) -> None:
        """Start the scheduler loop in a daemon thread.

        Args:
            tick_callback: Function to call on each tick.
            interval_seconds: How often to tick (default: 30s).
        """
        if self._started:
            logger.warning("ThreadSchedulerBackend already started")
            return

        self._interval = interval_seconds
        self._stop_event.clear()

        def _loop() -> None:
            logger.info(f"ThreadSchedulerBackend started (interval={interval_seconds}s)")
            while not self._stop_event.wait(interval_seconds):
                with self._lock:
                    self._tick_count += 1
                    self._last_tick = datetime.now(UTC)

                try:
                    tick_callback()
                except Exception as e:
                    logger.exception(f"Tick failed: {e}")

            logger.info("ThreadSchedulerBackend stopped")

        self._thread = threading.Thread(target=_loop, daemon=True, name="datespine-scheduler")
        self._thread.start()
        self._started = True

    def stop(self) -> None:
        """Stop the scheduler loop; waits up to 5 seconds for the current tick."""
        if not self._started:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("Scheduler thread did not stop cleanly")

        self._started = False
        logger.info("ThreadSchedulerBackend shutdown complete")

    def health(self) -> dict[str, Any]:
        return {
            "healthy": self.is_running,
            "backend": self.name,
            "tick_count": self._tick_count,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "interval_seconds": self._interval,
        }

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def tick_count(self) -> int:
        return self._tick_count


__all__ = [
    "DailyRebuildTrigger",
    "DateSpineScheduler",
    "ThreadSchedulerBackend",
]
