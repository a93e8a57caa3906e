"""
Records passed between the engine components.

Raw documents and API payloads are validated into these models at the
boundary where they enter the engine (store reads, weather responses,
generator output); everything downstream works with typed records only.

Persisted records (Alert, Advisory, NotificationRecord) expose
`to_document()` for the store. Enum members are `str` subclasses so they are
written as their plain values.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import DEFAULT_LANGUAGE, SUPPORTED_LANGUAGES


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def plain_values(value: Any) -> Any:
    """Enums -> their values, recursively, so documents hold only BSON-native types."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: plain_values(v) for k, v in value.items()}
    if isinstance(value, list):
        return [plain_values(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Condition(str, Enum):
    HEAVY_RAIN = "heavy_rain"
    EXTREME_HEAT = "extreme_heat"
    EXTREME_COLD = "extreme_cold"
    STRONG_WINDS = "strong_winds"
    FROST = "frost"
    HAIL = "hail"
    UPCOMING_RAIN = "upcoming_rain"

    @property
    def label(self) -> str:
        """'heavy_rain' -> 'HEAVY RAIN'"""
        return self.value.replace("_", " ").upper()


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class Timing(str, Enum):
    NOW = "now"
    NEXT_DAY = "next_day"


class Provenance(str, Enum):
    AI = "ai"
    FALLBACK = "fallback"


class Channel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"


_LANGUAGE_ALIASES = {"english": "en", "hindi": "hi", "punjabi": "pa"}


def normalize_language(value: Any) -> str:
    """Map 'hindi' / 'HI' / None etc. onto a supported language code."""
    if not value:
        return DEFAULT_LANGUAGE
    code = str(value).strip().lower()
    code = _LANGUAGE_ALIASES.get(code, code)
    return code if code in SUPPORTED_LANGUAGES else DEFAULT_LANGUAGE


# ---------------------------------------------------------------------------
# Farmer (read-only, owned by the account subsystem)
# ---------------------------------------------------------------------------

class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def bucket(self, decimals: int) -> tuple[float, float]:
        return round(self.latitude, decimals), round(self.longitude, decimals)


class Farmer(BaseModel):
    farmer_id: str
    name: str | None = None
    email: str | None = None
    state: str | None = None
    district: str | None = None
    coordinates: Coordinates | None = None
    language: str = DEFAULT_LANGUAGE
    crops: list[str] = Field(default_factory=list)

    @field_validator("language", mode="before")
    @classmethod
    def _language(cls, value: Any) -> str:
        return normalize_language(value)

    @field_validator("crops", mode="before")
    @classmethod
    def _crops(cls, value: Any) -> list[str]:
        return [str(c).strip() for c in (value or []) if c and str(c).strip()]

    @model_validator(mode="after")
    def _resolvable_location(self) -> "Farmer":
        if self.coordinates is None and not (self.state and self.district):
            raise ValueError("farmer needs coordinates or state + district")
        return self

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Farmer":
        """Build a Farmer from an account-subsystem document."""
        location = doc.get("farmLocation")
        if not isinstance(location, dict):
            location = {}
        coords = location.get("coordinates") or doc.get("coordinates")
        # GeoJSON pairs and other shapes fall back to district geocoding
        if not isinstance(coords, dict) or coords.get("latitude") is None or coords.get("longitude") is None:
            coords = None
        return cls(
            farmer_id=str(doc.get("_id") or doc.get("farmer_id")),
            name=doc.get("name"),
            email=doc.get("email"),
            state=location.get("state") or doc.get("state"),
            district=location.get("district") or doc.get("district"),
            coordinates=coords,
            language=doc.get("preferredLanguage") or doc.get("language"),
            crops=doc.get("actualCrops") or doc.get("currentCrops") or doc.get("crops"),
        )


# ---------------------------------------------------------------------------
# Weather (ephemeral)
# ---------------------------------------------------------------------------

class WeatherReading(BaseModel):
    timestamp: datetime
    temperature: float
    precipitation: float = 0.0
    wind_speed: float = 0.0
    wind_gusts: float | None = None
    humidity: float = Field(..., ge=0, le=100)
    weather_code: int = 0
    description: str = ""
    condition: str = "clear"
    coordinates: Coordinates

    @field_validator("precipitation", "wind_speed", mode="before")
    @classmethod
    def _none_is_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value


class ForecastDay(BaseModel):
    date: str
    temperature_max: float
    temperature_min: float
    precipitation: float = 0.0
    precipitation_probability: float = 0.0
    wind_speed_max: float = 0.0
    wind_gusts_max: float | None = None
    weather_code: int = 0

    @field_validator("precipitation", "precipitation_probability", "wind_speed_max", mode="before")
    @classmethod
    def _none_is_zero(cls, value: Any) -> Any:
        return 0.0 if value is None else value


class CropInfo(BaseModel):
    name: str
    local_name: str | None = None
    water_requirement: str | None = None
    season: str | None = None


class ConditionEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    condition: Condition
    severity: Severity
    value: float
    timing: Timing = Timing.NOW
    message: str = ""


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class AlertMetadata(BaseModel):
    value: float
    source: str = "automated"
    crops: list[str] = Field(default_factory=list)


class Alert(BaseModel):
    alert_id: str = Field(default_factory=new_id)
    farmer_id: str
    condition: Condition
    severity: Severity
    message: str
    recommendations: list[str] = Field(default_factory=list)
    coordinates: Coordinates | None = None
    valid_from: datetime
    valid_until: datetime
    is_read: bool = False
    provenance: Provenance = Provenance.FALLBACK
    metadata: AlertMetadata
    created_at: datetime

    def to_document(self) -> dict[str, Any]:
        doc = plain_values(self.model_dump())
        doc["_id"] = doc.pop("alert_id")
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Alert":
        doc = dict(doc)
        doc.setdefault("alert_id", str(doc.pop("_id", new_id())))
        return cls.model_validate(doc)


class AdviceText(BaseModel):
    primary_advice: str = Field(..., min_length=1)
    tips: list[str] = Field(default_factory=list, max_length=2)
    provenance: Provenance
    language: str = DEFAULT_LANGUAGE


class WeatherSnapshot(BaseModel):
    temperature: float
    precipitation: float
    humidity: float
    wind_speed: float
    condition: str
    weather_code: int


class AdvisoryLocation(BaseModel):
    state: str | None = None
    district: str | None = None
    coordinates: Coordinates | None = None


class AgriculturalInsights(BaseModel):
    irrigation_recommended: bool = False
    spraying_recommended: bool = False
    field_work_suitable: bool = True
    crop_risk_level: Severity = Severity.LOW


class Advisory(BaseModel):
    advisory_id: str = Field(default_factory=new_id)
    farmer_id: str
    date: str  # YYYY-MM-DD in the engine's timezone
    location: AdvisoryLocation
    weather: WeatherSnapshot
    crops: list[CropInfo] = Field(default_factory=list)
    advice: AdviceText
    insights: AgriculturalInsights = Field(default_factory=AgriculturalInsights)
    valid_until: datetime
    created_at: datetime

    def to_document(self) -> dict[str, Any]:
        doc = plain_values(self.model_dump())
        doc["_id"] = doc.pop("advisory_id")
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "Advisory":
        doc = dict(doc)
        doc.setdefault("advisory_id", str(doc.pop("_id", new_id())))
        return cls.model_validate(doc)


class NotificationRecord(BaseModel):
    notification_id: str = Field(default_factory=new_id)
    farmer_id: str
    alert_id: str | None = None
    channel: Channel
    kind: str = "weather_alert"
    title: str
    message: str
    severity: Severity
    data: dict[str, Any] = Field(default_factory=dict)
    delivered: bool = True
    error: str | None = None
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    def to_document(self) -> dict[str, Any]:
        doc = plain_values(self.model_dump())
        doc["_id"] = doc.pop("notification_id")
        return doc
