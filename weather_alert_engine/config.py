"""
Shared configuration for the weather alert & advisory engine.

Thresholds, windows and batch sizes are plain module constants; secrets and
connection strings come from the environment (a local `.env` is honoured).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import time, timedelta
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
ROOT = Path(__file__).parent

# State -> season -> crops table used by the crop mapping client
CROP_TABLE_JSON = ROOT / "data" / "state_crops.json"

# ---------------------------------------------------------------------------
# Alert thresholds
# ---------------------------------------------------------------------------

ALERT_THRESHOLDS = {
    "heavy_rain_mm": 25.0,
    "extreme_heat_c": {"high": 40.0, "critical": 45.0},
    "extreme_cold_c": {"high": 5.0, "critical": 0.0},
    "strong_wind_kmh": {"medium": 25.0, "high": 40.0},
    "frost": {"temp_c": 4.0, "humidity_pct": 80.0},
    # WMO codes: thunderstorm with slight / heavy hail
    "hail_weather_codes": (96, 99),
    "upcoming_rain_mm": 25.0,
}

# ---------------------------------------------------------------------------
# Windows and retention
# ---------------------------------------------------------------------------

DEDUP_WINDOW = timedelta(hours=6)
ALERT_VALIDITY = timedelta(hours=24)
ALERT_VALIDITY_NEXT_DAY = timedelta(hours=48)
ADVISORY_VALIDITY = timedelta(hours=24)

ALERT_RETENTION = timedelta(days=7)
ADVISORY_RETENTION = timedelta(days=30)

# ---------------------------------------------------------------------------
# Batching (be polite to the free Open-Meteo tier)
# ---------------------------------------------------------------------------

SWEEP_BATCH_SIZE = 10
SWEEP_MAX_WORKERS = 5
SWEEP_BATCH_DELAY_S = 1.0

# Smaller batches for the advisory pass: every farmer costs a generation call
ADVISORY_BATCH_SIZE = 5
ADVISORY_MAX_WORKERS = 5
ADVISORY_BATCH_DELAY_S = 2.0
ADVISORY_FORECAST_DAYS = 3

# 1 decimal of lat/lon is roughly an 11 km bucket
LOCATION_BUCKET_DECIMALS = 1

# Per-call timeouts (seconds)
WEATHER_TIMEOUT_S = 15
GEOCODING_TIMEOUT_S = 10
TEXT_TIMEOUT_S = 15
SMTP_TIMEOUT_S = 10

# ---------------------------------------------------------------------------
# Schedule
# ---------------------------------------------------------------------------

SWEEP_INTERVAL_MINUTES = 30
ADVISORY_TIME = time(6, 0)
CLEANUP_TIME = time(0, 0)
TIMEZONE = "Asia/Kolkata"

# ---------------------------------------------------------------------------
# Languages
# ---------------------------------------------------------------------------

SUPPORTED_LANGUAGES = ("en", "hi", "pa")
DEFAULT_LANGUAGE = "en"
LANGUAGE_NAMES = {"en": "English", "hi": "Hindi", "pa": "Punjabi"}

# ---------------------------------------------------------------------------
# Text generation defaults (OpenAI-compatible chat completions endpoint)
# ---------------------------------------------------------------------------

DEFAULT_LLM_BASE_URL = "https://api.chatanywhere.tech/v1"
DEFAULT_LLM_MODEL = "gpt-3.5-turbo"
ADVICE_MAX_TOKENS = 150
ALERT_MAX_TOKENS = 100


@dataclass(frozen=True)
class Settings:
    """Environment-derived settings for one engine process."""

    mongodb_uri: str | None = None
    mongodb_db: str = "krishi_sahayak"
    llm_api_key: str | None = None
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_model: str = DEFAULT_LLM_MODEL
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_sender: str | None = None
    log_level: str = "INFO"
    timezone: str = TIMEZONE

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mongodb_uri=os.getenv("MONGODB_URI") or None,
            mongodb_db=os.getenv("MONGODB_DB", "krishi_sahayak"),
            llm_api_key=os.getenv("LLM_API_KEY") or None,
            llm_base_url=os.getenv("LLM_BASE_URL", DEFAULT_LLM_BASE_URL),
            llm_model=os.getenv("LLM_MODEL", DEFAULT_LLM_MODEL),
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER") or None,
            smtp_password=os.getenv("SMTP_PASSWORD") or None,
            smtp_sender=os.getenv("SMTP_SENDER") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            timezone=os.getenv("ENGINE_TIMEZONE", TIMEZONE),
        )

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)
