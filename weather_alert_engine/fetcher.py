"""
Batch weather fetcher.

Farmers are split into fixed-size batches. Batches run one after another
with a short pause between them; within a batch a small thread pool fetches
concurrently. A farmer whose location cannot be resolved or whose fetch
fails is logged and skipped; the rest of the batch carries on.

Two entry points:
  for_each()        fetch per farmer, then hand the result to `handle`
                    inside the same worker (the 30-minute sweep)
  fetch_clustered() resolve every farmer, group by rounded lat/lon and fetch
                    once per group (the daily advisory pass)
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence, TypeVar

import pandas as pd

from .config import (
    LOCATION_BUCKET_DECIMALS,
    SWEEP_BATCH_DELAY_S,
    SWEEP_BATCH_SIZE,
    SWEEP_MAX_WORKERS,
)
from .exceptions import EngineError, LocationNotFoundError
from .models import Coordinates, CropInfo, Farmer, ForecastDay, WeatherReading

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

SWEEP_FORECAST_DAYS = 2  # today + tomorrow


@dataclass
class FarmerWeather:
    farmer: Farmer
    coordinates: Coordinates
    reading: WeatherReading
    forecast: list[ForecastDay] = field(default_factory=list)
    crops: list[CropInfo] = field(default_factory=list)

    @property
    def tomorrow(self) -> ForecastDay | None:
        return self.forecast[1] if len(self.forecast) > 1 else None


def batched(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def run_in_batches(
    items: Sequence[T],
    work: Callable[[T], R],
    batch_size: int,
    max_workers: int,
    delay_s: float,
    sleep: Callable[[float], None] = time.sleep,
    stop_event: threading.Event | None = None,
    describe: Callable[[T], str] = str,
) -> list[R | None]:
    """
    Run `work` over `items` batch by batch with bounded parallelism.

    Results keep the order of `items`; an item whose work raised, or that was
    never started because `stop_event` was set, yields None.
    """
    results: list[R | None] = [None] * len(items)
    if not items:
        return results

    def _guarded(item: T) -> R | None:
        try:
            return work(item)
        except LocationNotFoundError as exc:
            logger.warning("Skipping %s: %s", describe(item), exc)
        except EngineError as exc:
            logger.warning("Failed %s: %s", describe(item), exc)
        except Exception:
            logger.exception("Unexpected error for %s", describe(item))
        return None

    n_batches = (len(items) + batch_size - 1) // batch_size
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, batch_size))) as executor:
        for i, batch in enumerate(batched(items, batch_size)):
            if stop_event is not None and stop_event.is_set():
                logger.info("Stop requested, %d of %d batches not started", n_batches - i, n_batches)
                break
            offset = i * batch_size
            futures = [executor.submit(_guarded, item) for item in batch]
            for j, future in enumerate(futures):
                results[offset + j] = future.result()
            if i < n_batches - 1 and delay_s > 0:
                sleep(delay_s)
    return results


class GeocodeCache:
    """
    District lookups for one run. Misses are remembered as well as hits, and
    each district has its own lock so distinct districts resolve in parallel
    while a repeated district is looked up once.
    """

    def __init__(self, lookup: Callable[[str, str], Coordinates]):
        self._lookup = lookup
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._known: dict[tuple[str, str], Coordinates | LocationNotFoundError] = {}

    def get(self, district: str, state: str) -> Coordinates:
        key = (district.strip().lower(), state.strip().lower())
        with self._guard:
            key_lock = self._locks.setdefault(key, threading.Lock())
        with key_lock:
            if key not in self._known:
                try:
                    self._known[key] = self._lookup(district, state)
                except LocationNotFoundError as exc:
                    self._known[key] = exc
            hit = self._known[key]
        if isinstance(hit, LocationNotFoundError):
            raise LocationNotFoundError(str(hit))
        return hit


class BatchWeatherFetcher:
    def __init__(
        self,
        weather_source,
        crop_mapper,
        batch_size: int = SWEEP_BATCH_SIZE,
        max_workers: int = SWEEP_MAX_WORKERS,
        delay_s: float = SWEEP_BATCH_DELAY_S,
        forecast_days: int = SWEEP_FORECAST_DAYS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.weather = weather_source
        self.crops = crop_mapper
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.delay_s = delay_s
        self.forecast_days = forecast_days
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Per farmer
    # ------------------------------------------------------------------

    def geocode_cache(self) -> GeocodeCache:
        return GeocodeCache(self.weather.get_coordinates)

    def resolve_coordinates(self, farmer: Farmer, cache: GeocodeCache | None = None) -> Coordinates:
        """Stored coordinates, else geocode "district, state". `cache` lives for one run."""
        if farmer.coordinates is not None:
            return farmer.coordinates
        if not (farmer.state and farmer.district):
            raise LocationNotFoundError(f"farmer {farmer.farmer_id} has no location")
        if cache is None:
            return self.weather.get_coordinates(farmer.district, farmer.state)
        return cache.get(farmer.district, farmer.state)

    def _forecast(self, coords: Coordinates, days: int) -> list[ForecastDay]:
        try:
            return self.weather.get_forecast(coords.latitude, coords.longitude, days)
        except EngineError as exc:
            # current conditions still drive most rules
            logger.warning("Forecast unavailable for (%s, %s): %s", coords.latitude, coords.longitude, exc)
            return []

    def fetch_one(self, farmer: Farmer, geocode_cache: GeocodeCache | None = None) -> FarmerWeather:
        coords = self.resolve_coordinates(farmer, geocode_cache)
        reading = self.weather.get_current_weather(coords.latitude, coords.longitude)
        forecast = self._forecast(coords, self.forecast_days)
        crops = self.crops.get_recommended_crops(farmer.state, farmer.crops)
        return FarmerWeather(farmer, coords, reading, forecast, crops)

    # ------------------------------------------------------------------
    # Whole population
    # ------------------------------------------------------------------

    def _run(self, items, work, stop_event, describe) -> list:
        return run_in_batches(
            items,
            work,
            self.batch_size,
            self.max_workers,
            self.delay_s,
            sleep=self.sleep,
            stop_event=stop_event,
            describe=describe,
        )

    def for_each(
        self,
        farmers: Sequence[Farmer],
        handle: Callable[[FarmerWeather], R],
        stop_event: threading.Event | None = None,
    ) -> list[R]:
        """Fetch each farmer's weather and pass it to `handle`. Skipped farmers are dropped."""
        cache = self.geocode_cache()

        def _one(farmer: Farmer) -> R:
            return handle(self.fetch_one(farmer, cache))

        results = self._run(list(farmers), _one, stop_event, lambda f: f"farmer {f.farmer_id}")
        done = [r for r in results if r is not None]
        skipped = len(farmers) - len(done)
        logger.info("Weather fetched for %d/%d farmers (%d skipped)", len(done), len(farmers), skipped)
        return done

    def fetch_all(self, farmers: Sequence[Farmer], stop_event: threading.Event | None = None) -> list[FarmerWeather]:
        return self.for_each(farmers, lambda fw: fw, stop_event)

    def locate(
        self, farmers: Sequence[Farmer], stop_event: threading.Event | None = None
    ) -> list[tuple[Farmer, Coordinates]]:
        """Resolve coordinates, geocoding in rate-limited batches. Unlocatable farmers are dropped."""
        located: list[tuple[Farmer, Coordinates]] = [(f, f.coordinates) for f in farmers if f.coordinates is not None]
        pending = [f for f in farmers if f.coordinates is None]
        if pending:
            cache = self.geocode_cache()
            coords = self._run(
                pending, lambda f: self.resolve_coordinates(f, cache), stop_event, lambda f: f"farmer {f.farmer_id}"
            )
            located.extend((f, c) for f, c in zip(pending, coords) if c is not None)
        return located

    def fetch_clustered(
        self,
        farmers: Sequence[Farmer],
        days: int,
        stop_event: threading.Event | None = None,
        decimals: int = LOCATION_BUCKET_DECIMALS,
    ) -> list[FarmerWeather]:
        """
        One current + forecast fetch per location bucket, fanned out to every
        farmer in the bucket. Farmers that cannot be located are skipped.
        """
        located = self.locate(farmers, stop_event)
        if not located:
            return []

        df = pd.DataFrame(
            [
                {"idx": i, "lat": c.bucket(decimals)[0], "lon": c.bucket(decimals)[1]}
                for i, (_, c) in enumerate(located)
            ]
        )
        groups = [(float(lat), float(lon), list(g["idx"])) for (lat, lon), g in df.groupby(["lat", "lon"], sort=False)]
        logger.info("Clustered %d farmers into %d locations", len(located), len(groups))

        def _fetch_bucket(group) -> tuple[WeatherReading, list[ForecastDay]]:
            lat, lon, _ = group
            reading = self.weather.get_current_weather(lat, lon)
            forecast = self._forecast(Coordinates(latitude=lat, longitude=lon), days)
            return reading, forecast

        fetched = self._run(groups, _fetch_bucket, stop_event, lambda g: f"location ({g[0]}, {g[1]})")

        out = []
        for group, result in zip(groups, fetched):
            if result is None:
                continue
            reading, forecast = result
            for idx in group[2]:
                farmer, coords = located[idx]
                crops = self.crops.get_recommended_crops(farmer.state, farmer.crops)
                out.append(FarmerWeather(farmer, coords, reading, forecast, crops))
        logger.info("Weather resolved for %d/%d farmers", len(out), len(farmers))
        return out
