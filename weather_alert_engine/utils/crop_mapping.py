"""
State-wise crop lookup.

Maps a farmer's state and self-reported crop names onto entries of the
bundled state -> season -> crops table. When none of the farmer's crops is
known for the state (or the farmer listed none), the state's three largest
crops by area share for the current season stand in.

Seasons:
  kharif  June - November
  rabi    December - March
  zaid    April - May
"""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import date
from pathlib import Path
from typing import Any

from ..config import CROP_TABLE_JSON
from ..models import CropInfo

logger = logging.getLogger(__name__)

MAJOR_CROP_COUNT = 3


def current_season(today: date | None = None) -> str:
    month = (today or date.today()).month
    if 6 <= month <= 11:
        return "kharif"
    if month == 12 or month <= 3:
        return "rabi"
    return "zaid"


def normalize_state_name(state: str | None) -> str:
    """'uttar pradesh' -> 'Uttar_Pradesh'"""
    if not state:
        return ""
    words = re.sub(r"[^a-zA-Z0-9_]", "", re.sub(r"\s+", "_", state.strip())).split("_")
    return "_".join(w[:1].upper() + w[1:].lower() for w in words if w)


class CropMapper:
    """Crop-mapping collaborator backed by a JSON table loaded once."""

    def __init__(self, table_path: str | Path = CROP_TABLE_JSON, today=None):
        self.table_path = Path(table_path)
        self._today = today or date.today
        self._table: dict[str, Any] | None = None
        self._lock = threading.Lock()

    def _load(self) -> dict[str, Any]:
        with self._lock:
            if self._table is None:
                try:
                    self._table = json.loads(self.table_path.read_text(encoding="utf-8"))
                    logger.info("Loaded crop table for %d states from %s", len(self._table), self.table_path)
                except (OSError, ValueError) as exc:
                    logger.warning("Could not load crop table %s: %s", self.table_path, exc)
                    self._table = {}
            return self._table

    def crops_for_state(self, state: str | None, season: str | None = None) -> list[dict[str, Any]]:
        table = self._load()
        key = normalize_state_name(state)
        season = season or current_season(self._today())
        season_data = table.get(key, {}).get(season) or {}
        crops = season_data.get("crops") or []
        if not crops:
            logger.debug("No crops for state %r in %s season", state, season)
        return [dict(c, season=season) for c in crops]

    def major_crops(self, state: str | None, season: str | None = None) -> list[dict[str, Any]]:
        crops = self.crops_for_state(state, season)
        crops.sort(key=lambda c: c.get("area_percentage") or 0, reverse=True)
        return crops[:MAJOR_CROP_COUNT]

    @staticmethod
    def _matches(entry: dict[str, Any], wanted: str) -> bool:
        names = (entry.get("name"), entry.get("local_name"), entry.get("hindi_name"))
        if any(n and n.lower() == wanted for n in names):
            return True
        return any(wanted in v.lower() for v in entry.get("varieties") or [])

    def get_recommended_crops(self, state: str | None, farmer_crops: list[str] | None = None) -> list[CropInfo]:
        """Crops relevant to a farmer: their own matched crops, else the state's majors."""
        state_crops = self.crops_for_state(state)
        matched = []
        for crop_name in farmer_crops or []:
            wanted = crop_name.strip().lower()
            found = next((c for c in state_crops if self._matches(c, wanted)), None)
            if found is not None and found not in matched:
                matched.append(found)

        if not matched:
            if farmer_crops:
                logger.debug("No matching crops for %s in %s", ", ".join(farmer_crops), state)
            matched = self.major_crops(state)
        if not matched:
            # state unknown to the table: keep what the farmer told us
            return [CropInfo(name=name) for name in farmer_crops or []]

        return [
            CropInfo(
                name=c["name"],
                local_name=c.get("local_name"),
                water_requirement=c.get("water_requirement"),
                season=c.get("season"),
            )
            for c in matched
        ]
