"""
Wall-clock scheduler for the engine's periodic tasks.

Each task has its own timer thread that sleeps until the next fire time and
then starts the task body on a worker thread. A task is single-flight: a
trigger that arrives while the previous run is still going is skipped, not
queued. `stop()` wakes the timers, waits for them, then waits for every
in-flight run to return; task bodies receive the stop event so long runs can
finish the current batch and return early.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, time, timedelta
from typing import Any, Callable
from zoneinfo import ZoneInfo

from .config import ADVISORY_TIME, CLEANUP_TIME, SWEEP_INTERVAL_MINUTES, TIMEZONE
from .models import utcnow

logger = logging.getLogger(__name__)

TaskBody = Callable[[threading.Event], Any]
NextRun = Callable[[datetime], datetime]


def next_interval_run(now: datetime, minutes: int) -> datetime:
    """Next wall-clock boundary that is a multiple of `minutes` past the hour."""
    base = now.replace(second=0, microsecond=0)
    slot = (base.minute // minutes + 1) * minutes
    return base.replace(minute=0) + timedelta(minutes=slot)


def next_daily_run(now: datetime, at: time, tz: ZoneInfo) -> datetime:
    """Next occurrence of local time `at` in `tz`, strictly after `now`."""
    local = now.astimezone(tz)
    candidate = datetime.combine(local.date(), at, tzinfo=tz)
    if candidate <= local:
        candidate = datetime.combine(local.date() + timedelta(days=1), at, tzinfo=tz)
    return candidate


def every(minutes: int) -> NextRun:
    return lambda now: next_interval_run(now, minutes)


def daily_at(at: time, timezone_name: str = TIMEZONE) -> NextRun:
    tz = ZoneInfo(timezone_name)
    return lambda now: next_daily_run(now, at, tz)


class PeriodicTask:
    def __init__(self, name: str, body: TaskBody, next_run: NextRun, clock: Callable = utcnow):
        self.name = name
        self.body = body
        self.next_run = next_run
        self.clock = clock
        self._guard = threading.Lock()
        self.next_fire: datetime | None = None
        self.last_started: datetime | None = None
        self.last_finished: datetime | None = None
        self.last_error: str | None = None
        self.runs = 0
        self.skipped = 0

    @property
    def running(self) -> bool:
        return self._guard.locked()

    def try_claim(self) -> bool:
        if self._guard.acquire(blocking=False):
            return True
        self.skipped += 1
        logger.warning("Task %s is still running, skipping this trigger", self.name)
        return False

    def run_claimed(self, stop_event: threading.Event) -> None:
        """Run the body; the caller must hold the claim. Never raises."""
        self.last_started = self.clock()
        logger.info("Task %s started", self.name)
        try:
            self.body(stop_event)
            self.last_error = None
        except Exception as exc:
            self.last_error = str(exc)
            logger.exception("Task %s failed", self.name)
        finally:
            self.last_finished = self.clock()
            self.runs += 1
            self._guard.release()
        logger.info("Task %s finished", self.name)

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "next_run": self.next_fire,
            "last_started": self.last_started,
            "last_finished": self.last_finished,
            "last_error": self.last_error,
            "runs": self.runs,
            "skipped": self.skipped,
        }


class Scheduler:
    def __init__(self, clock: Callable = utcnow):
        self.clock = clock
        self.tasks: dict[str, PeriodicTask] = {}
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._timers: list[threading.Thread] = []
        self._workers: list[threading.Thread] = []
        self.started = False

    def add_task(self, name: str, body: TaskBody, next_run: NextRun) -> PeriodicTask:
        task = PeriodicTask(name, body, next_run, clock=self.clock)
        self.tasks[name] = task
        return task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self.started:
                logger.warning("Scheduler already started")
                return
            self.started = True
            self._stop.clear()
            self._timers = [
                threading.Thread(target=self._timer_loop, args=(task,), name=f"timer-{task.name}", daemon=True)
                for task in self.tasks.values()
            ]
        for thread in self._timers:
            thread.start()
        logger.info("Scheduler started with tasks: %s", ", ".join(self.tasks))

    def stop(self, timeout: float | None = None) -> None:
        """Cancel future triggers and wait for in-flight runs to finish."""
        with self._lock:
            self._stop.set()
        for thread in self._timers:
            thread.join(timeout)
        with self._lock:
            workers = list(self._workers)
        for thread in workers:
            thread.join(timeout)
        with self._lock:
            self._timers = []
            self._workers = [t for t in self._workers if t.is_alive()]
            was_started, self.started = self.started, False
        if was_started:
            logger.info("Scheduler stopped")

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def _timer_loop(self, task: PeriodicTask) -> None:
        while not self._stop.is_set():
            now = self.clock()
            # an early wake-up must not land in the slot that just fired
            after = now if task.next_fire is None else max(now, task.next_fire)
            task.next_fire = task.next_run(after)
            delay = max(0.0, (task.next_fire - now).total_seconds())
            logger.debug("Task %s next run at %s", task.name, task.next_fire.isoformat())
            if self._stop.wait(delay):
                break
            self._launch(task)

    def _launch(self, task: PeriodicTask) -> bool:
        with self._lock:
            if self._stop.is_set() or not task.try_claim():
                return False
            worker = threading.Thread(
                target=task.run_claimed, args=(self._stop,), name=f"task-{task.name}", daemon=True
            )
            self._workers = [t for t in self._workers if t.is_alive()]
            self._workers.append(worker)
        worker.start()
        return True

    def trigger(self, name: str) -> bool:
        """Start `name` now, off schedule. False if it is already running."""
        if name not in self.tasks:
            raise KeyError(f"unknown task {name!r}")
        return self._launch(self.tasks[name])

    def status(self) -> dict[str, Any]:
        return {
            "running": self.started,
            "tasks": {name: task.status() for name, task in self.tasks.items()},
        }


def build_scheduler(engine, timezone_name: str = TIMEZONE, clock: Callable = utcnow) -> Scheduler:
    scheduler = Scheduler(clock=clock)
    scheduler.add_task("weather_sweep", engine.run_weather_sweep, every(SWEEP_INTERVAL_MINUTES))
    scheduler.add_task("daily_advisories", engine.run_daily_advisories, daily_at(ADVISORY_TIME, timezone_name))
    scheduler.add_task("cleanup", engine.run_cleanup, daily_at(CLEANUP_TIME, timezone_name))
    return scheduler
