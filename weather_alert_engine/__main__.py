"""
Command-line entry point.

  python -m weather_alert_engine run                 start the scheduler until Ctrl+C / SIGTERM
  python -m weather_alert_engine sweep               one weather sweep
  python -m weather_alert_engine advisories          one daily advisory pass
  python -m weather_alert_engine cleanup             one retention pass
  python -m weather_alert_engine check FARMER_ID     sweep pipeline for one farmer
  python -m weather_alert_engine status              schedule, thresholds and collaborators
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import asdict

from .config import Settings
from .engine import WeatherAlertEngine
from .models import utcnow
from .scheduler import build_scheduler

logger = logging.getLogger(__name__)

COMMANDS = ("run", "sweep", "advisories", "cleanup", "check", "status")


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str, ensure_ascii=False))


def _run_forever(engine: WeatherAlertEngine, settings: Settings) -> int:
    scheduler = build_scheduler(engine, settings.timezone)
    stop_requested = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_requested.set())

    scheduler.start()
    try:
        while not stop_requested.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        logger.info("Stopping scheduler, waiting for running tasks…")
        scheduler.stop()
    return 0


def _status(engine: WeatherAlertEngine, settings: Settings) -> dict:
    scheduler = build_scheduler(engine, settings.timezone)
    now = utcnow()
    return {
        "store": type(engine.store).__name__,
        "text_generator": engine.deduplicator.text is not None,
        "email": engine.dispatcher.email is not None,
        "timezone": settings.timezone,
        "next_runs": {name: task.next_run(now).isoformat() for name, task in scheduler.tasks.items()},
        "thresholds": engine.thresholds,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="weather-alert-engine",
        description="Weather alert & daily advisory engine for registered farmers.",
    )
    parser.add_argument("command", choices=COMMANDS)
    parser.add_argument("farmer_id", nargs="?", help="farmer id for the `check` command")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "check" and not args.farmer_id:
        parser.error("check needs a FARMER_ID")

    engine = WeatherAlertEngine.from_settings(settings)

    if args.command == "run":
        return _run_forever(engine, settings)
    if args.command == "sweep":
        _print_json(asdict(engine.run_weather_sweep()))
        return 0
    if args.command == "advisories":
        _print_json(asdict(engine.run_daily_advisories()))
        return 0
    if args.command == "cleanup":
        report = engine.run_cleanup()
        _print_json(asdict(report))
        return 0 if report.ok else 1
    if args.command == "check":
        check = engine.check_farmer(args.farmer_id)
        if check is None:
            print(f"Farmer {args.farmer_id} could not be checked (see log).")
            return 1
        _print_json(
            {
                "farmer_id": check.farmer_id,
                "events": [e.model_dump() for e in check.events],
                "alerts": [a.model_dump() for a in check.alerts],
            }
        )
        return 0
    _print_json(_status(engine, settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
