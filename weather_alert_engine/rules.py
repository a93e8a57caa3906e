"""
Condition rule engine.

Every agronomic threshold is one `ConditionRule`: a predicate on the current
reading (or tomorrow's forecast), the value it reports, and a severity
function. `evaluate()` runs the whole table and returns one event per rule
that fires. Rules are independent: a cold, humid reading yields both
`extreme_cold` and `frost`.

Thresholds live in `config.ALERT_THRESHOLDS`:

  heavy_rain      precipitation > 25 mm                      high
  extreme_heat    temperature > 40 C  (> 45 C critical)      high / critical
  extreme_cold    temperature < 5 C   (< 0 C critical)       high / critical
  strong_winds    wind speed > 25 km/h (> 40 km/h high)      medium / high
  frost           temperature < 4 C and humidity > 80 %      high
  hail            WMO code 96 / 99                           critical
  upcoming_rain   tomorrow's precipitation > 25 mm           medium
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .config import ALERT_THRESHOLDS
from .models import Condition, ConditionEvent, ForecastDay, Severity, Timing, WeatherReading

Predicate = Callable[[WeatherReading, "ForecastDay | None"], bool]
ValueOf = Callable[[WeatherReading, "ForecastDay | None"], float]


@dataclass(frozen=True)
class ConditionRule:
    condition: Condition
    triggers: Predicate
    value: ValueOf
    severity: Callable[[float], Severity]
    message: Callable[[float], str]
    timing: Timing = Timing.NOW

    def apply(self, reading: WeatherReading, tomorrow: ForecastDay | None = None) -> ConditionEvent | None:
        if not self.triggers(reading, tomorrow):
            return None
        value = self.value(reading, tomorrow)
        return ConditionEvent(
            condition=self.condition,
            severity=self.severity(value),
            value=value,
            timing=self.timing,
            message=self.message(value),
        )


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def is_heavy_rain(reading: WeatherReading, tomorrow: ForecastDay | None = None) -> bool:
    return reading.precipitation > ALERT_THRESHOLDS["heavy_rain_mm"]


def is_extreme_heat(reading: WeatherReading, tomorrow: ForecastDay | None = None) -> bool:
    return reading.temperature > ALERT_THRESHOLDS["extreme_heat_c"]["high"]


def is_extreme_cold(reading: WeatherReading, tomorrow: ForecastDay | None = None) -> bool:
    return reading.temperature < ALERT_THRESHOLDS["extreme_cold_c"]["high"]


def is_strong_wind(reading: WeatherReading, tomorrow: ForecastDay | None = None) -> bool:
    return reading.wind_speed > ALERT_THRESHOLDS["strong_wind_kmh"]["medium"]


def is_frost(reading: WeatherReading, tomorrow: ForecastDay | None = None) -> bool:
    frost = ALERT_THRESHOLDS["frost"]
    return reading.temperature < frost["temp_c"] and reading.humidity > frost["humidity_pct"]


def is_hail(reading: WeatherReading, tomorrow: ForecastDay | None = None) -> bool:
    return reading.weather_code in ALERT_THRESHOLDS["hail_weather_codes"]


def is_upcoming_rain(reading: WeatherReading, tomorrow: ForecastDay | None = None) -> bool:
    return tomorrow is not None and tomorrow.precipitation > ALERT_THRESHOLDS["upcoming_rain_mm"]


# ---------------------------------------------------------------------------
# Severity classifiers
# ---------------------------------------------------------------------------

def heat_severity(temp_c: float) -> Severity:
    return Severity.CRITICAL if temp_c > ALERT_THRESHOLDS["extreme_heat_c"]["critical"] else Severity.HIGH


def cold_severity(temp_c: float) -> Severity:
    return Severity.CRITICAL if temp_c < ALERT_THRESHOLDS["extreme_cold_c"]["critical"] else Severity.HIGH


def wind_severity(speed_kmh: float) -> Severity:
    return Severity.HIGH if speed_kmh > ALERT_THRESHOLDS["strong_wind_kmh"]["high"] else Severity.MEDIUM


def _fixed(severity: Severity) -> Callable[[float], Severity]:
    return lambda _value: severity


RULES: tuple[ConditionRule, ...] = (
    ConditionRule(
        Condition.HEAVY_RAIN,
        is_heavy_rain,
        lambda r, t: r.precipitation,
        _fixed(Severity.HIGH),
        lambda v: f"Heavy rainfall of {v}mm detected",
    ),
    ConditionRule(
        Condition.EXTREME_HEAT,
        is_extreme_heat,
        lambda r, t: r.temperature,
        heat_severity,
        lambda v: f"Extreme heat of {v}°C",
    ),
    ConditionRule(
        Condition.EXTREME_COLD,
        is_extreme_cold,
        lambda r, t: r.temperature,
        cold_severity,
        lambda v: f"Extreme cold of {v}°C",
    ),
    ConditionRule(
        Condition.STRONG_WINDS,
        is_strong_wind,
        lambda r, t: r.wind_speed,
        wind_severity,
        lambda v: f"Strong winds of {v} km/h",
    ),
    ConditionRule(
        Condition.FROST,
        is_frost,
        lambda r, t: r.temperature,
        _fixed(Severity.HIGH),
        lambda v: f"Frost conditions: {v}°C with high humidity",
    ),
    ConditionRule(
        Condition.HAIL,
        is_hail,
        lambda r, t: float(r.weather_code),
        _fixed(Severity.CRITICAL),
        lambda v: "Hailstorm conditions detected",
    ),
    ConditionRule(
        Condition.UPCOMING_RAIN,
        is_upcoming_rain,
        lambda r, t: t.precipitation,
        _fixed(Severity.MEDIUM),
        lambda v: f"Heavy rain expected tomorrow: {v}mm",
        timing=Timing.NEXT_DAY,
    ),
)


def evaluate(
    reading: WeatherReading,
    tomorrow: ForecastDay | None = None,
    rules: tuple[ConditionRule, ...] = RULES,
) -> list[ConditionEvent]:
    """Return every condition event the reading (and tomorrow's forecast) triggers."""
    events = []
    for rule in rules:
        event = rule.apply(reading, tomorrow)
        if event is not None:
            events.append(event)
    return events


def highest_severity(events: list[ConditionEvent]) -> Severity:
    """Highest severity among `events`, LOW when there are none."""
    if not events:
        return Severity.LOW
    return max((e.severity for e in events), key=lambda s: s.rank)
