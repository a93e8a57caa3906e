import logging
import threading
import time as _time
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from weather_alert_engine.scheduler import Scheduler, build_scheduler, every, next_daily_run, next_interval_run

IST = ZoneInfo("Asia/Kolkata")


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def wait_until(predicate, timeout=5.0):
    deadline = _time.monotonic() + timeout
    while _time.monotonic() < deadline:
        if predicate():
            return True
        _time.sleep(0.01)
    return False


@pytest.mark.parametrize(
    "now, expected",
    [
        (utc(2024, 1, 15, 10, 7, 12), utc(2024, 1, 15, 10, 30)),
        (utc(2024, 1, 15, 10, 30, 0), utc(2024, 1, 15, 11, 0)),
        (utc(2024, 1, 15, 23, 59, 59), utc(2024, 1, 16, 0, 0)),
    ],
)
def test_next_interval_run_aligns_to_half_hours(now, expected):
    assert next_interval_run(now, 30) == expected


def test_next_daily_run_in_local_timezone():
    # 00:00 UTC is 05:30 IST, so 06:00 IST is still ahead today
    first = next_daily_run(utc(2024, 1, 15, 0, 0), time(6, 0), IST)
    assert first == datetime(2024, 1, 15, 6, 0, tzinfo=IST)
    assert first.astimezone(timezone.utc) == utc(2024, 1, 15, 0, 30)

    # 01:00 UTC is 06:30 IST, so the next one is tomorrow
    assert next_daily_run(utc(2024, 1, 15, 1, 0), time(6, 0), IST) == datetime(2024, 1, 16, 6, 0, tzinfo=IST)


def test_next_daily_run_exactly_at_fire_time_moves_to_tomorrow():
    now = datetime(2024, 1, 15, 0, 0, tzinfo=IST)
    assert next_daily_run(now, time(0, 0), IST) == datetime(2024, 1, 16, 0, 0, tzinfo=IST)


def test_trigger_while_running_is_skipped_not_queued():
    release = threading.Event()
    calls = []

    def body(stop_event):
        calls.append(1)
        release.wait(5)

    scheduler = Scheduler()
    task = scheduler.add_task("sweep", body, lambda now: now + timedelta(days=1))

    assert scheduler.trigger("sweep")
    assert wait_until(lambda: task.running)
    assert not scheduler.trigger("sweep")
    assert task.skipped == 1

    release.set()
    assert wait_until(lambda: not task.running)
    assert calls == [1]
    assert task.runs == 1


def test_stop_waits_for_in_flight_run():
    finished = threading.Event()

    def body(stop_event):
        stop_event.wait(5)
        _time.sleep(0.05)
        finished.set()

    scheduler = Scheduler()
    task = scheduler.add_task("advisories", body, lambda now: now + timedelta(days=1))
    scheduler.start()
    scheduler.trigger("advisories")
    assert wait_until(lambda: task.running)

    scheduler.stop()

    assert finished.is_set()
    assert not scheduler.started
    assert not scheduler.trigger("advisories")


def test_timer_fires_on_schedule_and_failures_do_not_escape(caplog):
    def body(stop_event):
        raise RuntimeError("store unreachable")

    scheduler = Scheduler()
    task = scheduler.add_task("cleanup", body, lambda now: now + timedelta(milliseconds=20))
    with caplog.at_level(logging.ERROR, logger="weather_alert_engine.scheduler"):
        scheduler.start()
        assert wait_until(lambda: task.runs >= 2)
        scheduler.stop()

    assert task.last_error == "store unreachable"
    assert any("Task cleanup failed" in r.getMessage() for r in caplog.records)


def test_early_wake_up_does_not_fire_the_same_slot_twice():
    # the wall clock never reaches the slot, as after a wait that returns early
    frozen = utc(2024, 1, 15, 10, 29, 59, 950000)
    scheduler = Scheduler(clock=lambda: frozen)
    task = scheduler.add_task("weather_sweep", lambda stop_event: None, every(30))
    scheduler.start()
    try:
        assert wait_until(lambda: task.runs >= 1)
        _time.sleep(0.3)
        assert task.runs == 1
        assert task.next_fire == utc(2024, 1, 15, 11, 0)
    finally:
        scheduler.stop()


def test_start_twice_only_warns(caplog):
    scheduler = Scheduler()
    scheduler.add_task("sweep", lambda stop_event: None, lambda now: now + timedelta(days=1))
    scheduler.start()
    with caplog.at_level(logging.WARNING, logger="weather_alert_engine.scheduler"):
        scheduler.start()
    scheduler.stop()
    assert any("already started" in r.getMessage() for r in caplog.records)


def test_unknown_task_trigger_raises():
    with pytest.raises(KeyError):
        Scheduler().trigger("nope")


def test_build_scheduler_registers_three_tasks():
    class Engine:
        def run_weather_sweep(self, stop_event=None):
            pass

        def run_daily_advisories(self, stop_event=None):
            pass

        def run_cleanup(self, stop_event=None):
            pass

    scheduler = build_scheduler(Engine())
    assert set(scheduler.tasks) == {"weather_sweep", "daily_advisories", "cleanup"}

    now = utc(2024, 1, 15, 0, 10)
    assert scheduler.tasks["weather_sweep"].next_run(now) == utc(2024, 1, 15, 0, 30)
    assert scheduler.tasks["daily_advisories"].next_run(now) == datetime(2024, 1, 15, 6, 0, tzinfo=IST)
    assert scheduler.tasks["cleanup"].next_run(now) == datetime(2024, 1, 16, 0, 0, tzinfo=IST)

    status = scheduler.status()
    assert status["running"] is False
    assert status["tasks"]["cleanup"]["runs"] == 0
