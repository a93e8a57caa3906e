"""
Short farming text from an OpenAI-compatible chat-completions endpoint.

Two prompts:
  - daily advisory: 2-3 practical tips for today's weather and crops
  - alert text:     1-2 urgent sentences for a detected condition

Any failure (missing key, timeout, HTTP error, quota, unparseable reply)
raises `TextGenerationError`; the engine owns the static fallback.
"""

from __future__ import annotations

import logging
import re
from typing import Any

import requests

from ..config import (
    ADVICE_MAX_TOKENS,
    ALERT_MAX_TOKENS,
    DEFAULT_LLM_BASE_URL,
    DEFAULT_LLM_MODEL,
    LANGUAGE_NAMES,
    TEXT_TIMEOUT_S,
)
from ..exceptions import TextGenerationError
from ..models import AdviceText, Condition, CropInfo, Provenance, WeatherReading

logger = logging.getLogger(__name__)

_BULLET = re.compile(r"^\s*(?:[-•*]|\d+[.)])\s*")
MIN_ADVICE_LINE = 10


def weather_summary(reading: WeatherReading) -> str:
    return (
        f"{reading.temperature}°C, {reading.description or reading.condition}, "
        f"humidity {reading.humidity}%, wind {reading.wind_speed} km/h, "
        f"rain {reading.precipitation} mm"
    )


def crop_names(crops: list[CropInfo]) -> str:
    return ", ".join(c.name for c in crops) or "mixed crops"


def build_advisory_prompt(
    reading: WeatherReading,
    state: str | None,
    district: str | None,
    crops: list[CropInfo],
    language: str,
) -> dict[str, str]:
    place = ", ".join(p for p in (district, state) if p) or "India"
    if language == "hi":
        system = "आप एक अनुभवी भारतीय कृषि सलाहकार हैं। सरल हिंदी में 2-3 छोटी व्यावहारिक सलाह दें।"
        user = (
            f"स्थान: {place}\n"
            f"मौसम: {weather_summary(reading)}\n"
            f"फसलें: {crop_names(crops)}\n"
            "मुझे आज की खेती के लिए व्यावहारिक सलाह दें। हर सलाह नई पंक्ति में लिखें।"
        )
    else:
        system = (
            "You are an experienced Indian agricultural advisor. Give 2-3 short, practical "
            f"farming tips in simple {LANGUAGE_NAMES.get(language, 'English')}."
        )
        user = (
            f"Location: {place}\n"
            f"Weather: {weather_summary(reading)}\n"
            f"Crops: {crop_names(crops)}\n"
            "Give me practical farming advice for today, one tip per line. "
            "Avoid technical jargon."
        )
    return {"system": system, "user": user}


def build_alert_prompt(condition: Condition, reading: WeatherReading, crops: list[CropInfo], language: str) -> dict[str, str]:
    label = condition.value.replace("_", " ")
    if language == "hi":
        system = f"आप एक कृषि चेतावनी विशेषज्ञ हैं। {label} के बारे में 1-2 छोटे वाक्यों में अत्यावश्यक सलाह दें।"
        user = f"{label} की स्थिति में {crop_names(crops)} फसल के लिए तुरंत क्या करना चाहिए? मौसम: {weather_summary(reading)}"
    else:
        system = (
            f"You are an agricultural alert specialist. Give urgent advice about {label} "
            f"in 1-2 short sentences, in {LANGUAGE_NAMES.get(language, 'English')}."
        )
        user = (
            f"What should be done immediately for {crop_names(crops)} crops during {label}? "
            f"Weather: {weather_summary(reading)}"
        )
    return {"system": system, "user": user}


def parse_advice(text: str, language: str) -> AdviceText:
    lines = [_BULLET.sub("", line).strip() for line in text.splitlines()]
    lines = [line for line in lines if len(line) > MIN_ADVICE_LINE]
    if not lines:
        raise TextGenerationError("advice reply had no usable lines")
    return AdviceText(
        primary_advice=lines[0],
        tips=lines[1:3],
        provenance=Provenance.AI,
        language=language,
    )


def parse_alert_message(text: str) -> str:
    message = _BULLET.sub("", text.strip()).strip()
    if not message:
        raise TextGenerationError("alert reply was empty")
    return message


class ChatTextGenerator:
    """Text generator over `POST {base_url}/chat/completions`."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_LLM_BASE_URL,
        model: str = DEFAULT_LLM_MODEL,
        timeout: float = TEXT_TIMEOUT_S,
        session: requests.Session | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _complete(self, prompt: dict[str, str], max_tokens: int, temperature: float) -> str:
        if not self.api_key:
            raise TextGenerationError("text generator API key not configured")

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": prompt["system"]},
                {"role": "user", "content": prompt["user"]},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            resp = self.session.post(
                f"{self.base_url}/chat/completions", json=payload, headers=headers, timeout=self.timeout
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.exceptions.Timeout as exc:
            raise TextGenerationError(f"text generation timed out after {self.timeout}s") from exc
        except requests.exceptions.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            raise TextGenerationError(f"text generation API error {status}") from exc
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise TextGenerationError(f"text generation request failed: {exc}") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise TextGenerationError("invalid completion response format") from exc
        if not isinstance(content, str) or not content.strip():
            raise TextGenerationError("completion was empty")
        logger.debug("Completion from %s: %d chars", self.model, len(content))
        return content.strip()

    def generate_advisory(
        self,
        reading: WeatherReading,
        state: str | None,
        district: str | None,
        crops: list[CropInfo],
        language: str = "en",
    ) -> AdviceText:
        prompt = build_advisory_prompt(reading, state, district, crops, language)
        text = self._complete(prompt, max_tokens=ADVICE_MAX_TOKENS, temperature=0.7)
        return parse_advice(text, language)

    def generate_alert_text(
        self,
        condition: Condition,
        reading: WeatherReading,
        crops: list[CropInfo],
        language: str = "en",
    ) -> str:
        prompt = build_alert_prompt(condition, reading, crops, language)
        text = self._complete(prompt, max_tokens=ALERT_MAX_TOKENS, temperature=0.6)
        return parse_alert_message(text)
