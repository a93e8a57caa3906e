"""
Weather alert & advisory engine: the three scheduled task bodies.

  run_weather_sweep()     every 30 min: fetch, evaluate rules, dedup, notify
  run_daily_advisories()  once a day: one advisory per farmer
  run_cleanup()           once a day: retention deletes

plus `check_farmer()` to run the sweep pipeline for one farmer on demand.
Each task catches its own failures and returns a report; none raises.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from .advisories import AdvisoryGenerator, AdvisoryReport
from .alerts import AlertDeduplicator
from .cleanup import CleanupReport, RetentionJob
from .config import ALERT_THRESHOLDS, TIMEZONE, Settings
from .exceptions import EngineError, StoreError
from .fetcher import BatchWeatherFetcher, FarmerWeather
from .models import Alert, ConditionEvent, Farmer, utcnow
from .notifications import DispatchReport, NotificationDispatcher
from .rules import evaluate
from .utils import ChatTextGenerator, CropMapper, EmailChannel, InAppChannel, OpenMeteoClient, get_store

logger = logging.getLogger(__name__)


@dataclass
class FarmerCheck:
    farmer_id: str
    events: list[ConditionEvent] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    notifications: list[DispatchReport] = field(default_factory=list)


@dataclass
class SweepReport:
    farmers: int = 0
    checked: int = 0
    events: int = 0
    alerts_created: int = 0
    notified: int = 0


class WeatherAlertEngine:
    def __init__(
        self,
        store,
        weather_source,
        crop_mapper,
        text_generator=None,
        email_channel=None,
        timezone_name: str = TIMEZONE,
        clock: Callable = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.fetcher = BatchWeatherFetcher(weather_source, crop_mapper, sleep=sleep)
        self.deduplicator = AlertDeduplicator(store, text_generator, clock=clock)
        self.advisories = AdvisoryGenerator(
            store, self.fetcher, text_generator, timezone_name=timezone_name, clock=clock, sleep=sleep
        )
        self.dispatcher = NotificationDispatcher(InAppChannel(store), email_channel)
        self.retention = RetentionJob(store, clock=clock)

    @classmethod
    def from_settings(cls, settings: Settings, store=None) -> "WeatherAlertEngine":
        text_generator = None
        if settings.llm_api_key:
            text_generator = ChatTextGenerator(settings.llm_api_key, settings.llm_base_url, settings.llm_model)
        else:
            logger.warning("LLM_API_KEY not set, all alert and advisory text will use fallbacks")
        email = EmailChannel.from_settings(settings)
        if email is None:
            logger.info("SMTP not configured, notifications are in-app only")
        return cls(
            store if store is not None else get_store(settings),
            OpenMeteoClient(timezone_name=settings.timezone),
            CropMapper(),
            text_generator=text_generator,
            email_channel=email,
            timezone_name=settings.timezone,
        )

    @property
    def thresholds(self) -> dict:
        return ALERT_THRESHOLDS

    def _load_farmers(self) -> list[Farmer] | None:
        try:
            return self.store.find_active_farmers()
        except StoreError as exc:
            logger.error("Could not load farmers: %s", exc)
            return None

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def process_weather(self, fw: FarmerWeather) -> FarmerCheck:
        """Rules -> dedup -> notify for one farmer's fresh reading."""
        check = FarmerCheck(farmer_id=fw.farmer.farmer_id)
        check.events = evaluate(fw.reading, fw.tomorrow)
        for event in check.events:
            alert = self.deduplicator.process(fw.farmer, event, fw.reading, fw.coordinates, fw.crops)
            if alert is None:
                continue
            check.alerts.append(alert)
            if self.dispatcher.should_notify(alert):
                check.notifications.append(self.dispatcher.dispatch(fw.farmer, alert))
        return check

    def run_weather_sweep(self, stop_event: threading.Event | None = None) -> SweepReport:
        started = time.monotonic()
        farmers = self._load_farmers()
        if farmers is None:
            return SweepReport()

        logger.info("Weather sweep: checking %d farmers", len(farmers))
        checks = self.fetcher.for_each(farmers, self.process_weather, stop_event)
        report = SweepReport(
            farmers=len(farmers),
            checked=len(checks),
            events=sum(len(c.events) for c in checks),
            alerts_created=sum(len(c.alerts) for c in checks),
            notified=sum(len(c.notifications) for c in checks),
        )
        logger.info(
            "Weather sweep done in %.1fs: %d/%d checked, %d events, %d alerts created, %d notified",
            time.monotonic() - started, report.checked, report.farmers, report.events,
            report.alerts_created, report.notified,
        )
        return report

    def check_farmer(self, farmer: Farmer | str) -> FarmerCheck | None:
        """Run the sweep pipeline for a single farmer now. None if they cannot be checked."""
        if isinstance(farmer, str):
            try:
                found = self.store.find_farmer(farmer)
            except StoreError as exc:
                logger.warning("Could not load farmer %s: %s", farmer, exc)
                return None
            if found is None:
                logger.warning("Farmer %s not found or has no usable location", farmer)
                return None
            farmer = found
        try:
            fw = self.fetcher.fetch_one(farmer)
        except EngineError as exc:
            logger.warning("Weather check failed for farmer %s: %s", farmer.farmer_id, exc)
            return None
        return self.process_weather(fw)

    # ------------------------------------------------------------------
    # Daily tasks
    # ------------------------------------------------------------------

    def run_daily_advisories(self, stop_event: threading.Event | None = None) -> AdvisoryReport:
        farmers = self._load_farmers()
        if farmers is None:
            return AdvisoryReport(date=self.advisories.today())
        return self.advisories.run(farmers, stop_event)

    def run_cleanup(self, stop_event: threading.Event | None = None) -> CleanupReport:
        return self.retention.run()
