"""
Daily advisory generator.

One advisory per farmer per calendar day (in the engine's timezone). The
daily pass skips farmers who already have today's advisory, fetches weather
once per location cluster, then asks the text generator for a short
narrative. When generation fails the advisory still gets written, with a
rule-based sentence and provenance `fallback`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence
from zoneinfo import ZoneInfo

from .config import (
    ADVISORY_BATCH_DELAY_S,
    ADVISORY_BATCH_SIZE,
    ADVISORY_FORECAST_DAYS,
    ADVISORY_MAX_WORKERS,
    ADVISORY_VALIDITY,
    TIMEZONE,
)
from .exceptions import StoreError, TextGenerationError
from .fetcher import BatchWeatherFetcher, FarmerWeather, run_in_batches
from .models import (
    AdviceText,
    Advisory,
    AdvisoryLocation,
    AgriculturalInsights,
    Farmer,
    ForecastDay,
    Provenance,
    WeatherReading,
    WeatherSnapshot,
    utcnow,
)
from .results import Fallback, Ok, Outcome, Skip
from .rules import evaluate, highest_severity

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Fallback text
# ---------------------------------------------------------------------------

FALLBACK_ADVICE = {
    "en": {
        "rain": "Rain expected - postpone pesticide spraying and ensure proper drainage.",
        "hot": "High temperature - increase irrigation frequency and provide shade to crops.",
        "cold": "Cold weather - protect crops from frost and reduce watering.",
        "windy": "Strong winds expected - secure tall crops and avoid spraying.",
        "default": "Monitor your crops regularly and follow weather-appropriate farming practices.",
    },
    "hi": {
        "rain": "बारिश होने वाली है - कीटनाशक छिड़काव बंद करें और पानी की निकासी सुनिश्चित करें।",
        "hot": "अधिक गर्मी - सिंचाई बढ़ाएं और फसलों को छाया प्रदान करें।",
        "cold": "ठंड का मौसम - फसलों को पाले से बचाएं और पानी कम दें।",
        "windy": "तेज़ हवा चलने वाली है - लंबी फसलों को सहारा दें और छिड़काव न करें।",
        "default": "अपनी फसलों की नियमित जांच करें और मौसम के अनुसार खेती करें।",
    },
}

FALLBACK_TIPS = {
    "en": ["Check weather updates regularly.", "Contact local agriculture office if needed."],
    "hi": ["मौसम की जानकारी नियमित रूप से देखें।", "ज़रूरत हो तो स्थानीय कृषि कार्यालय से संपर्क करें।"],
}


def fallback_kind(reading: WeatherReading) -> str:
    """rain > hot > cold > windy > default, first match wins."""
    if reading.precipitation > 2:
        return "rain"
    if reading.temperature > 35:
        return "hot"
    if reading.temperature < 10:
        return "cold"
    if reading.wind_speed > 20:
        return "windy"
    return "default"


def fallback_advice(reading: WeatherReading, language: str = "en") -> AdviceText:
    table = language if language in FALLBACK_ADVICE else "en"
    return AdviceText(
        primary_advice=FALLBACK_ADVICE[table][fallback_kind(reading)],
        tips=list(FALLBACK_TIPS[table]),
        provenance=Provenance.FALLBACK,
        language=language,
    )


# ---------------------------------------------------------------------------
# Insights
# ---------------------------------------------------------------------------

def build_insights(reading: WeatherReading, forecast: list[ForecastDay]) -> AgriculturalInsights:
    tomorrow = forecast[1] if len(forecast) > 1 else None
    rain_ahead = sum(day.precipitation for day in forecast[1:])
    return AgriculturalInsights(
        irrigation_recommended=reading.precipitation < 1 and rain_ahead < 5 and reading.temperature >= 30,
        spraying_recommended=(
            reading.precipitation == 0
            and reading.wind_speed < 15
            and (tomorrow is None or tomorrow.precipitation <= 5)
        ),
        field_work_suitable=reading.precipitation < 5 and reading.wind_speed < 25,
        crop_risk_level=highest_severity(evaluate(reading, tomorrow)),
    )


@dataclass
class AdvisoryReport:
    date: str
    farmers: int = 0
    generated: int = 0
    ai: int = 0
    fallback: int = 0
    skipped: int = 0
    failed: int = 0


class AdvisoryGenerator:
    def __init__(
        self,
        store,
        fetcher: BatchWeatherFetcher,
        text_generator=None,
        timezone_name: str = TIMEZONE,
        clock: Callable = utcnow,
        batch_size: int = ADVISORY_BATCH_SIZE,
        max_workers: int = ADVISORY_MAX_WORKERS,
        delay_s: float = ADVISORY_BATCH_DELAY_S,
        forecast_days: int = ADVISORY_FORECAST_DAYS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.fetcher = fetcher
        self.text = text_generator
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.delay_s = delay_s
        self.forecast_days = forecast_days
        self.sleep = sleep

    def today(self) -> str:
        return self.clock().astimezone(self.tz).date().isoformat()

    def advice(self, fw: FarmerWeather) -> Ok[AdviceText] | Fallback[AdviceText]:
        language = fw.farmer.language
        if self.text is None:
            return Fallback(fallback_advice(fw.reading, language), "text generator not configured")
        try:
            return Ok(
                self.text.generate_advisory(fw.reading, fw.farmer.state, fw.farmer.district, fw.crops, language)
            )
        except TextGenerationError as exc:
            return Fallback(fallback_advice(fw.reading, language), str(exc))

    def build(self, fw: FarmerWeather, date: str) -> Ok[Advisory] | Fallback[Advisory]:
        advice = self.advice(fw)
        now = self.clock()
        r = fw.reading
        advisory = Advisory(
            farmer_id=fw.farmer.farmer_id,
            date=date,
            location=AdvisoryLocation(state=fw.farmer.state, district=fw.farmer.district, coordinates=fw.coordinates),
            weather=WeatherSnapshot(
                temperature=r.temperature,
                precipitation=r.precipitation,
                humidity=r.humidity,
                wind_speed=r.wind_speed,
                condition=r.condition,
                weather_code=r.weather_code,
            ),
            crops=fw.crops,
            advice=advice.value,
            insights=build_insights(r, fw.forecast),
            valid_until=now + ADVISORY_VALIDITY,
            created_at=now,
        )
        if isinstance(advice, Fallback):
            return Fallback(advisory, advice.reason)
        return Ok(advisory)

    def generate_for(self, fw: FarmerWeather, date: str | None = None) -> Outcome[Advisory]:
        """Build and upsert one farmer's advisory for `date` (default: today)."""
        date = date or self.today()
        farmer_id = fw.farmer.farmer_id
        if self.store.advisory_exists(farmer_id, date):
            return Skip(f"advisory for {farmer_id} on {date} already exists")

        outcome = self.build(fw, date)
        if isinstance(outcome, Fallback) and self.text is not None:
            logger.warning("Advisory fallback for farmer %s: %s", farmer_id, outcome.reason)
        if not self.store.upsert_advisory(outcome.value):
            return Skip(f"advisory for {farmer_id} on {date} written concurrently")
        return outcome

    def _pending(self, farmers: Sequence[Farmer], date: str) -> list[Farmer]:
        pending = []
        for farmer in farmers:
            try:
                if not self.store.advisory_exists(farmer.farmer_id, date):
                    pending.append(farmer)
            except StoreError as exc:
                logger.warning("Skipping farmer %s: %s", farmer.farmer_id, exc)
        return pending

    def run(self, farmers: Sequence[Farmer], stop_event: threading.Event | None = None) -> AdvisoryReport:
        date = self.today()
        report = AdvisoryReport(date=date, farmers=len(farmers))
        pending = self._pending(farmers, date)
        report.skipped = len(farmers) - len(pending)
        if not pending:
            logger.info("All %d farmers already have an advisory for %s", len(farmers), date)
            return report

        weather = self.fetcher.fetch_clustered(pending, self.forecast_days, stop_event)
        outcomes = run_in_batches(
            weather,
            lambda fw: self.generate_for(fw, date),
            self.batch_size,
            self.max_workers,
            self.delay_s,
            sleep=self.sleep,
            stop_event=stop_event,
            describe=lambda fw: f"farmer {fw.farmer.farmer_id}",
        )
        for outcome in outcomes:
            if isinstance(outcome, Ok):
                report.ai += 1
            elif isinstance(outcome, Fallback):
                report.fallback += 1
            elif isinstance(outcome, Skip):
                report.skipped += 1
        report.generated = report.ai + report.fallback
        report.failed = len(pending) - report.generated - sum(isinstance(o, Skip) for o in outcomes)

        logger.info(
            "Advisories for %s: %d generated (%d ai, %d fallback), %d skipped, %d failed",
            date, report.generated, report.ai, report.fallback, report.skipped, report.failed,
        )
        return report
