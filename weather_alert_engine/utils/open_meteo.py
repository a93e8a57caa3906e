"""
Open-Meteo forecast + geocoding client.

Three calls, no API key required:
  - current conditions      GET /v1/forecast?current=...
  - daily forecast          GET /v1/forecast?daily=...&forecast_days=N
  - place -> coordinates    GET geocoding-api /v1/search?name=...

Every request carries a bounded timeout. Failures surface as
`WeatherSourceError` (transient: timeout, 5xx, malformed body) or
`LocationNotFoundError` (geocoder returned no match), so callers can tell a
farmer with a bad address from a flaky upstream.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

import pandas as pd
import requests
from pydantic import ValidationError

from ..config import GEOCODING_TIMEOUT_S, TIMEZONE, WEATHER_TIMEOUT_S
from ..exceptions import LocationNotFoundError, WeatherSourceError
from ..models import Coordinates, ForecastDay, WeatherReading

logger = logging.getLogger(__name__)

FORECAST_URL = "https://api.open-meteo.com/v1/forecast"
GEOCODING_URL = "https://geocoding-api.open-meteo.com/v1/search"

CURRENT_VARIABLES = [
    "temperature_2m",
    "relative_humidity_2m",
    "precipitation",
    "weather_code",
    "wind_speed_10m",
    "wind_gusts_10m",
]

DAILY_VARIABLES = [
    "weather_code",
    "temperature_2m_max",
    "temperature_2m_min",
    "precipitation_sum",
    "precipitation_probability_max",
    "wind_speed_10m_max",
    "wind_gusts_10m_max",
]

# WMO weather interpretation codes
WEATHER_CODE_DESCRIPTIONS = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Fog",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    56: "Light freezing drizzle",
    57: "Dense freezing drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    66: "Light freezing rain",
    67: "Heavy freezing rain",
    71: "Slight snow fall",
    73: "Moderate snow fall",
    75: "Heavy snow fall",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}


def describe_weather_code(code: int) -> str:
    return WEATHER_CODE_DESCRIPTIONS.get(code, "Unknown weather condition")


def weather_condition(code: int) -> str:
    """Collapse a WMO code into clear / cloudy / fog / rain / snow / thunderstorm."""
    if code in (0, 1):
        return "clear"
    if code in (2, 3):
        return "cloudy"
    if 45 <= code <= 48:
        return "fog"
    if 51 <= code <= 67 or 80 <= code <= 82:
        return "rain"
    if 71 <= code <= 86:
        return "snow"
    if 95 <= code <= 99:
        return "thunderstorm"
    return "cloudy"


def _round1(value: Any) -> float | None:
    if value is None:
        return None
    return round(float(value), 1)


class OpenMeteoClient:
    """Weather source backed by the public Open-Meteo endpoints."""

    def __init__(
        self,
        timeout: float = WEATHER_TIMEOUT_S,
        geocoding_timeout: float = GEOCODING_TIMEOUT_S,
        timezone_name: str = TIMEZONE,
        retries: int = 2,
        backoff: float = 1.0,
        session: requests.Session | None = None,
    ):
        self.timeout = timeout
        self.geocoding_timeout = geocoding_timeout
        self.timezone_name = timezone_name
        self.retries = max(1, retries)
        self.backoff = backoff
        self.session = session or requests.Session()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _get_json(self, url: str, params: dict[str, Any], timeout: float) -> dict[str, Any]:
        """
        GET with retries. 429 responses honour Retry-After (capped) and use up
        an attempt like any other failure.
        """
        last_exc: Exception | None = None
        for attempt in range(self.retries):
            try:
                resp = self.session.get(url, params=params, timeout=timeout)
                if resp.status_code == 429:
                    retry_after = min(int(resp.headers.get("Retry-After", 5)), 30)
                    logger.warning("Rate limited (429) by %s, sleeping %ds", url, retry_after)
                    last_exc = WeatherSourceError(f"rate limited by {url}")
                    if attempt < self.retries - 1:
                        time.sleep(retry_after)
                    continue
                resp.raise_for_status()
                return resp.json()
            except (requests.exceptions.RequestException, ValueError) as exc:
                last_exc = exc
                if attempt < self.retries - 1:
                    wait = self.backoff * (2**attempt)
                    logger.debug("Retry %d for %s: %s", attempt + 1, url, exc)
                    time.sleep(wait)
        raise WeatherSourceError(f"request to {url} failed: {last_exc}") from last_exc

    # ------------------------------------------------------------------
    # Weather source interface
    # ------------------------------------------------------------------

    def get_current_weather(self, latitude: float, longitude: float) -> WeatherReading:
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "current": ",".join(CURRENT_VARIABLES),
            "timezone": self.timezone_name,
            "forecast_days": 1,
        }
        data = self._get_json(FORECAST_URL, params, self.timeout)
        current = data.get("current")
        if not current:
            raise WeatherSourceError(f"no current block for ({latitude}, {longitude})")

        code = int(current.get("weather_code") or 0)
        try:
            return WeatherReading(
                timestamp=datetime.now(timezone.utc),
                temperature=_round1(current.get("temperature_2m")),
                precipitation=current.get("precipitation") or 0.0,
                wind_speed=_round1(current.get("wind_speed_10m")) or 0.0,
                wind_gusts=current.get("wind_gusts_10m"),
                humidity=current.get("relative_humidity_2m"),
                weather_code=code,
                description=describe_weather_code(code),
                condition=weather_condition(code),
                coordinates=Coordinates(latitude=latitude, longitude=longitude),
            )
        except ValidationError as exc:
            raise WeatherSourceError(f"malformed current weather for ({latitude}, {longitude}): {exc}") from exc

    def get_forecast(self, latitude: float, longitude: float, days: int = 1) -> list[ForecastDay]:
        """Daily forecast, today first."""
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "daily": ",".join(DAILY_VARIABLES),
            "timezone": self.timezone_name,
            "forecast_days": days,
        }
        data = self._get_json(FORECAST_URL, params, self.timeout)
        daily_raw = data.get("daily") or {}
        if "time" not in daily_raw:
            raise WeatherSourceError(f"no daily block for ({latitude}, {longitude})")

        try:
            df = pd.DataFrame(daily_raw)
        except ValueError as exc:
            raise WeatherSourceError(f"ragged daily forecast for ({latitude}, {longitude})") from exc
        df = df.astype(object).where(df.notna(), None)

        forecast = []
        try:
            for row in df.to_dict("records"):
                forecast.append(
                    ForecastDay(
                        date=str(row["time"]),
                        temperature_max=row.get("temperature_2m_max"),
                        temperature_min=row.get("temperature_2m_min"),
                        precipitation=row.get("precipitation_sum"),
                        precipitation_probability=row.get("precipitation_probability_max"),
                        wind_speed_max=_round1(row.get("wind_speed_10m_max")),
                        wind_gusts_max=row.get("wind_gusts_10m_max"),
                        weather_code=int(row.get("weather_code") or 0),
                    )
                )
        except ValidationError as exc:
            raise WeatherSourceError(f"malformed forecast for ({latitude}, {longitude}): {exc}") from exc
        return forecast

    def get_coordinates(self, district: str, state: str = "", country: str = "India") -> Coordinates:
        query = ", ".join(part for part in (district, state, country) if part)
        params = {"name": query, "count": 1, "language": "en", "format": "json"}
        data = self._get_json(GEOCODING_URL, params, self.geocoding_timeout)
        results = data.get("results") or []
        if not results:
            raise LocationNotFoundError(f"Location not found: {query}")
        top = results[0]
        logger.debug("Geocoded %r -> (%s, %s)", query, top.get("latitude"), top.get("longitude"))
        try:
            return Coordinates(latitude=top["latitude"], longitude=top["longitude"])
        except (KeyError, ValidationError) as exc:
            raise WeatherSourceError(f"malformed geocoding result for {query}") from exc
