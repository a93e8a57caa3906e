"""
Alert deduplication and creation.

For each condition event:
  1. skip if the farmer already has an alert for the condition inside the
     dedup window (cheap pre-check, saves a generation call)
  2. resolve the message: generated text, or the static fallback
  3. attach the condition's default recommendations
  4. insert atomically against the same window; a concurrent duplicate
     loses and is dropped

`process()` returns the created Alert, or None when nothing was created
(duplicate, or a store failure that is not retried this cycle).
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable

from .config import ALERT_VALIDITY, ALERT_VALIDITY_NEXT_DAY, DEDUP_WINDOW
from .exceptions import StoreError, TextGenerationError
from .models import (
    Alert,
    AlertMetadata,
    Condition,
    ConditionEvent,
    Coordinates,
    CropInfo,
    Farmer,
    Provenance,
    Timing,
    WeatherReading,
    utcnow,
)
from .results import Fallback, Ok

logger = logging.getLogger(__name__)

DEFAULT_RECOMMENDATIONS: dict[Condition, list[str]] = {
    Condition.HEAVY_RAIN: [
        "Postpone pesticide and fertilizer application",
        "Ensure proper field drainage",
        "Secure farm equipment and structures",
        "Monitor crop health after rainfall",
    ],
    Condition.EXTREME_HEAT: [
        "Increase irrigation frequency",
        "Provide shade to sensitive crops",
        "Avoid midday field operations",
        "Monitor crops for heat stress",
    ],
    Condition.EXTREME_COLD: [
        "Cover sensitive crops if possible",
        "Use water spray for frost protection",
        "Harvest mature crops immediately",
        "Monitor for cold damage",
    ],
    Condition.STRONG_WINDS: [
        "Provide support to tall crops",
        "Secure farm structures",
        "Postpone pesticide spraying",
        "Check for wind damage after storm",
    ],
    Condition.FROST: [
        "Use frost protection methods",
        "Light fires or use heaters if available",
        "Water spray early morning",
        "Cover young plants",
    ],
    Condition.HAIL: [
        "Seek immediate shelter",
        "Protect vehicles and equipment",
        "Document damage for insurance",
        "Check crop damage after hailstorm",
    ],
    Condition.UPCOMING_RAIN: [
        "Harvest mature crops before the rain",
        "Clear drainage channels in advance",
        "Postpone irrigation and fertilizer application",
    ],
}
GENERIC_RECOMMENDATIONS = ["Monitor weather conditions closely"]

FALLBACK_ALERT_TEXT: dict[str, dict[Condition, str]] = {
    "en": {
        Condition.HEAVY_RAIN: "Heavy rain alert! Avoid field work and ensure proper drainage.",
        Condition.STRONG_WINDS: "Strong wind alert! Secure crops and postpone spraying operations.",
        Condition.EXTREME_HEAT: "Heat wave alert! Increase irrigation and provide crop protection.",
        Condition.EXTREME_COLD: "Cold wave alert! Cover sensitive crops and irrigate lightly in the evening.",
        Condition.FROST: "Frost alert! Protect sensitive crops with covering or water spray.",
        Condition.HAIL: "Hail storm alert! Move to safe place and protect crops if possible.",
        Condition.UPCOMING_RAIN: "Heavy rain expected tomorrow! Finish harvesting and spraying today.",
    },
    "hi": {
        Condition.HEAVY_RAIN: "भारी बारिश की चेतावनी! खेत का काम बंद करें और जल निकासी सुनिश्चित करें।",
        Condition.STRONG_WINDS: "तेज़ हवा की चेतावनी! फसलों को सुरक्षित करें और छिड़काव न करें।",
        Condition.EXTREME_HEAT: "गर्मी की लहर! सिंचाई बढ़ाएं और फसलों को सुरक्षा प्रदान करें।",
        Condition.EXTREME_COLD: "शीत लहर की चेतावनी! संवेदनशील फसलों को ढकें और शाम को हल्की सिंचाई करें।",
        Condition.FROST: "पाला चेतावनी! संवेदनशील फसलों को ढकें या पानी का छिड़काव करें।",
        Condition.HAIL: "ओला चेतावनी! सुरक्षित स्थान पर जाएं और फसलों की रक्षा करें।",
        Condition.UPCOMING_RAIN: "कल भारी बारिश की संभावना! आज ही कटाई और छिड़काव पूरा करें।",
    },
}


def default_recommendations(condition: Condition) -> list[str]:
    return list(DEFAULT_RECOMMENDATIONS.get(condition, GENERIC_RECOMMENDATIONS))


def fallback_alert_message(event: ConditionEvent, language: str = "en") -> str:
    """Static alert text; languages without a table use English."""
    if language in FALLBACK_ALERT_TEXT and language != "en":
        return FALLBACK_ALERT_TEXT[language][event.condition]
    return f"{event.message}. {FALLBACK_ALERT_TEXT['en'][event.condition]}"


def alert_validity(event: ConditionEvent) -> timedelta:
    return ALERT_VALIDITY_NEXT_DAY if event.timing == Timing.NEXT_DAY else ALERT_VALIDITY


class AlertDeduplicator:
    def __init__(
        self,
        store,
        text_generator=None,
        window: timedelta = DEDUP_WINDOW,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.text = text_generator
        self.window = window
        self.clock = clock

    def alert_text(
        self,
        event: ConditionEvent,
        reading: WeatherReading,
        crops: list[CropInfo],
        language: str,
    ) -> Ok[str] | Fallback[str]:
        if self.text is None:
            return Fallback(fallback_alert_message(event, language), "text generator not configured")
        try:
            return Ok(self.text.generate_alert_text(event.condition, reading, crops, language))
        except TextGenerationError as exc:
            return Fallback(fallback_alert_message(event, language), str(exc))

    def process(
        self,
        farmer: Farmer,
        event: ConditionEvent,
        reading: WeatherReading,
        coordinates: Coordinates | None,
        crops: list[CropInfo],
    ) -> Alert | None:
        now = self.clock()
        since = now - self.window
        try:
            if self.store.has_recent_alert(farmer.farmer_id, event.condition, since):
                logger.debug("Suppressed duplicate %s for farmer %s", event.condition.value, farmer.farmer_id)
                return None
        except StoreError as exc:
            logger.warning("Dedup check failed for farmer %s: %s", farmer.farmer_id, exc)
            return None

        text = self.alert_text(event, reading, crops, farmer.language)
        if isinstance(text, Fallback) and self.text is not None:
            logger.warning("Alert text fallback for %s (farmer %s): %s", event.condition.value, farmer.farmer_id, text.reason)

        alert = Alert(
            farmer_id=farmer.farmer_id,
            condition=event.condition,
            severity=event.severity,
            message=text.value,
            recommendations=default_recommendations(event.condition),
            coordinates=coordinates,
            valid_from=now,
            valid_until=now + alert_validity(event),
            provenance=Provenance.AI if isinstance(text, Ok) else Provenance.FALLBACK,
            metadata=AlertMetadata(value=event.value, crops=[c.name for c in crops]),
            created_at=now,
        )
        try:
            created = self.store.insert_alert_if_absent(alert, since)
        except StoreError as exc:
            logger.warning("Dropping %s alert for farmer %s this cycle: %s", event.condition.value, farmer.farmer_id, exc)
            return None
        if not created:
            logger.debug("Lost dedup race for %s, farmer %s", event.condition.value, farmer.farmer_id)
            return None

        logger.info("Created %s alert (%s) for farmer %s", event.condition.value, event.severity.value, farmer.farmer_id)
        return alert
