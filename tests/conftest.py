from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from weather_alert_engine.exceptions import LocationNotFoundError, TextGenerationError, WeatherSourceError
from weather_alert_engine.models import (
    AdviceText,
    Coordinates,
    CropInfo,
    Farmer,
    ForecastDay,
    Provenance,
    WeatherReading,
)
from weather_alert_engine.utils.store import MemoryStore

DELHI = Coordinates(latitude=28.61, longitude=77.21)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


def make_reading(coordinates: Coordinates = DELHI, **overrides) -> WeatherReading:
    values = dict(
        timestamp=datetime(2024, 1, 15, 6, 0, tzinfo=timezone.utc),
        temperature=25.0,
        precipitation=0.0,
        wind_speed=5.0,
        humidity=50.0,
        weather_code=1,
        description="Mainly clear",
        condition="clear",
        coordinates=coordinates,
    )
    values.update(overrides)
    return WeatherReading(**values)


def make_forecast_day(date: str = "2024-01-16", **overrides) -> ForecastDay:
    values = dict(date=date, temperature_max=28.0, temperature_min=15.0, precipitation=0.0, weather_code=1)
    values.update(overrides)
    return ForecastDay(**values)


def farmer_doc(farmer_id: str, lat: float | None = 28.61, lon: float | None = 77.21, **extra) -> dict:
    doc = {
        "_id": farmer_id,
        "name": f"Farmer {farmer_id}",
        "isActive": True,
        "state": "Punjab",
        "district": "Ludhiana",
        "preferredLanguage": "en",
        "actualCrops": ["Wheat"],
    }
    if lat is not None:
        doc["farmLocation"] = {"coordinates": {"latitude": lat, "longitude": lon}}
    doc.update(extra)
    return doc


def make_farmer(farmer_id: str = "f-1", **kwargs) -> Farmer:
    return Farmer.from_document(farmer_doc(farmer_id, **kwargs))


class FakeWeatherSource:
    """Returns the same reading everywhere unless told otherwise."""

    def __init__(self, reading: WeatherReading | None = None, forecast: list[ForecastDay] | None = None):
        self.reading = reading or make_reading()
        self.forecast = forecast if forecast is not None else [make_forecast_day("2024-01-15"), make_forecast_day()]
        self.places: dict[str, Coordinates] = {"ludhiana": Coordinates(latitude=30.9, longitude=75.85)}
        self.failing_coordinates: set[tuple[float, float]] = set()
        self.forecast_fails = False
        self.current_calls: list[tuple[float, float]] = []
        self.geocode_calls: list[str] = []
        self._lock = threading.Lock()

    def get_current_weather(self, latitude, longitude):
        with self._lock:
            self.current_calls.append((latitude, longitude))
        if (latitude, longitude) in self.failing_coordinates:
            raise WeatherSourceError(f"timeout for ({latitude}, {longitude})")
        return self.reading.model_copy(update={"coordinates": Coordinates(latitude=latitude, longitude=longitude)})

    def get_forecast(self, latitude, longitude, days=1):
        if self.forecast_fails:
            raise WeatherSourceError("forecast down")
        return list(self.forecast[:days])

    def get_coordinates(self, district, state="", country="India"):
        with self._lock:
            self.geocode_calls.append(district)
        try:
            return self.places[district.lower()]
        except KeyError:
            raise LocationNotFoundError(f"Location not found: {district}, {state}, {country}") from None


class FakeCropMapper:
    def get_recommended_crops(self, state, farmer_crops=None):
        return [CropInfo(name=name) for name in (farmer_crops or ["Wheat"])]


class FakeTextGenerator:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.advisory_calls = 0
        self.alert_calls = 0

    def generate_advisory(self, reading, state, district, crops, language="en"):
        self.advisory_calls += 1
        if self.fail:
            raise TextGenerationError("quota exceeded")
        return AdviceText(
            primary_advice="Irrigate wheat lightly in the evening.",
            tips=["Check soil moisture before watering."],
            provenance=Provenance.AI,
            language=language,
        )

    def generate_alert_text(self, condition, reading, crops, language="en"):
        self.alert_calls += 1
        if self.fail:
            raise TextGenerationError("timed out")
        return f"Generated warning about {condition.value}."


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 15, 6, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def weather():
    return FakeWeatherSource()


@pytest.fixture
def crop_mapper():
    return FakeCropMapper()


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep():
    return RecordingSleep()
