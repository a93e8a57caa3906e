"""
Persistent store for farmers (read-only), alerts, advisories and notifications.

Two implementations share one interface:
  - MongoStore   the platform's MongoDB database (pymongo)
  - MemoryStore  in-process lists, used when MONGODB_URI is unset and in tests

`get_store()` picks one from the settings.

Alert dedup is atomic in both: MongoStore claims a per-(farmer, condition)
slot document with a conditional upsert whose `_id` uniqueness rejects a
second claim inside the window; MemoryStore holds one lock across check and
insert.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any

from bson import ObjectId
from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..config import Settings
from ..exceptions import StoreError
from ..models import Advisory, Alert, Condition, Farmer, NotificationRecord

logger = logging.getLogger(__name__)

FARMERS = "farmers"
ALERTS = "weatheralerts"
ALERT_SLOTS = "alert_slots"
ADVISORIES = "weatheradvisories"
NOTIFICATIONS = "notifications"

# Active farmers with either stored coordinates or a state + district to geocode
ACTIVE_FARMER_QUERY = {
    "isActive": True,
    "$or": [
        {"farmLocation.coordinates": {"$exists": True}},
        {"$and": [{"state": {"$exists": True}}, {"district": {"$exists": True}}]},
        {"$and": [{"farmLocation.state": {"$exists": True}}, {"farmLocation.district": {"$exists": True}}]},
    ],
}
FARMER_PROJECTION = ["_id", "name", "email", "state", "district", "farmLocation", "preferredLanguage", "actualCrops"]


def slot_id(farmer_id: str, condition: Condition) -> str:
    return f"{farmer_id}:{condition.value}"


def parse_farmers(docs) -> list[Farmer]:
    """Validate raw farmer documents, skipping any that cannot be located."""
    farmers = []
    for doc in docs:
        try:
            farmers.append(Farmer.from_document(doc))
        except ValidationError as exc:
            logger.warning("Skipping farmer %s: %s", doc.get("_id"), exc.errors()[0].get("msg"))
        except (TypeError, AttributeError, ValueError) as exc:
            logger.warning("Skipping malformed farmer document %s: %s", doc.get("_id"), exc)
    return farmers


# ---------------------------------------------------------------------------
# MongoDB
# ---------------------------------------------------------------------------

class MongoStore:
    def __init__(self, db):
        self.db = db

    @classmethod
    def from_uri(cls, uri: str, db_name: str) -> "MongoStore":
        client = MongoClient(uri, tz_aware=True, serverSelectionTimeoutMS=10_000)
        return cls(client[db_name])

    def ensure_indexes(self) -> None:
        try:
            self.db[ALERTS].create_index([("farmer_id", ASCENDING), ("condition", ASCENDING), ("created_at", DESCENDING)])
            self.db[ALERTS].create_index("created_at")
            self.db[ADVISORIES].create_index([("farmer_id", ASCENDING), ("date", ASCENDING)], unique=True)
            self.db[ADVISORIES].create_index("created_at")
            self.db[NOTIFICATIONS].create_index([("farmer_id", ASCENDING), ("created_at", DESCENDING)])
        except PyMongoError as exc:
            raise StoreError(f"could not create indexes: {exc}") from exc

    def find_active_farmers(self) -> list[Farmer]:
        try:
            docs = list(self.db[FARMERS].find(ACTIVE_FARMER_QUERY, FARMER_PROJECTION))
        except PyMongoError as exc:
            raise StoreError(f"could not load farmers: {exc}") from exc
        return parse_farmers(docs)

    def find_farmer(self, farmer_id: str) -> Farmer | None:
        try:
            key = ObjectId(farmer_id) if ObjectId.is_valid(farmer_id) else farmer_id
            doc = self.db[FARMERS].find_one({"_id": key}, FARMER_PROJECTION)
        except PyMongoError as exc:
            raise StoreError(f"could not load farmer {farmer_id}: {exc}") from exc
        found = parse_farmers([doc]) if doc else []
        return found[0] if found else None

    # -- alerts -------------------------------------------------------------

    def has_recent_alert(self, farmer_id: str, condition: Condition, since: datetime) -> bool:
        query = {"farmer_id": farmer_id, "condition": condition.value, "created_at": {"$gte": since}}
        try:
            return self.db[ALERTS].find_one(query, {"_id": 1}) is not None
        except PyMongoError as exc:
            raise StoreError(f"dedup lookup failed: {exc}") from exc

    def insert_alert_if_absent(self, alert: Alert, since: datetime) -> bool:
        """
        Insert `alert` unless the same (farmer, condition) produced one at or
        after `since`. Returns False when suppressed.

        A failed insert releases the slot claim and raises StoreError; the
        caller must not retry within the same cycle.
        """
        key = slot_id(alert.farmer_id, alert.condition)
        try:
            previous = self.db[ALERT_SLOTS].find_one_and_update(
                {"_id": key, "last_created_at": {"$lt": since}},
                {"$set": {"last_created_at": alert.created_at, "alert_id": alert.alert_id}},
                upsert=True,
                return_document=ReturnDocument.BEFORE,
            )
        except DuplicateKeyError:
            # slot exists and is still inside the window
            return False
        except PyMongoError as exc:
            raise StoreError(f"could not claim dedup slot {key}: {exc}") from exc

        try:
            self.db[ALERTS].insert_one(alert.to_document())
        except PyMongoError as exc:
            self._release_slot(key, alert.alert_id, previous)
            raise StoreError(f"could not insert alert for {key}: {exc}") from exc
        return True

    def _release_slot(self, key: str, alert_id: str, previous: dict[str, Any] | None) -> None:
        try:
            if previous is None:
                self.db[ALERT_SLOTS].delete_one({"_id": key, "alert_id": alert_id})
            else:
                self.db[ALERT_SLOTS].update_one(
                    {"_id": key, "alert_id": alert_id},
                    {"$set": {"last_created_at": previous["last_created_at"], "alert_id": previous.get("alert_id")}},
                )
        except PyMongoError as exc:
            logger.warning("Could not release dedup slot %s: %s", key, exc)

    def delete_alerts_before(self, cutoff: datetime) -> int:
        try:
            deleted = self.db[ALERTS].delete_many({"created_at": {"$lt": cutoff}}).deleted_count
        except PyMongoError as exc:
            raise StoreError(f"alert cleanup failed: {exc}") from exc
        try:
            self.db[ALERT_SLOTS].delete_many({"last_created_at": {"$lt": cutoff}})
        except PyMongoError as exc:
            # stale slots only hold timestamps older than any dedup window
            logger.warning("Alert slot cleanup failed after deleting %d alerts: %s", deleted, exc)
        return deleted

    # -- advisories ---------------------------------------------------------

    def advisory_exists(self, farmer_id: str, date: str) -> bool:
        try:
            return self.db[ADVISORIES].find_one({"farmer_id": farmer_id, "date": date}, {"_id": 1}) is not None
        except PyMongoError as exc:
            raise StoreError(f"advisory lookup failed: {exc}") from exc

    def upsert_advisory(self, advisory: Advisory) -> bool:
        """Insert unless (farmer_id, date) already has one. Returns True if inserted."""
        doc = advisory.to_document()
        try:
            result = self.db[ADVISORIES].update_one(
                {"farmer_id": advisory.farmer_id, "date": advisory.date},
                {"$setOnInsert": doc},
                upsert=True,
            )
        except DuplicateKeyError:
            # concurrent upsert won the race on the unique index
            return False
        except PyMongoError as exc:
            raise StoreError(f"could not upsert advisory for {advisory.farmer_id}: {exc}") from exc
        return result.upserted_id is not None

    def delete_advisories_before(self, cutoff: datetime) -> int:
        try:
            return self.db[ADVISORIES].delete_many({"created_at": {"$lt": cutoff}}).deleted_count
        except PyMongoError as exc:
            raise StoreError(f"advisory cleanup failed: {exc}") from exc

    # -- notifications ------------------------------------------------------

    def insert_notification(self, record: NotificationRecord) -> None:
        try:
            self.db[NOTIFICATIONS].insert_one(record.to_document())
        except PyMongoError as exc:
            raise StoreError(f"could not write notification for {record.farmer_id}: {exc}") from exc


# ---------------------------------------------------------------------------
# In-process
# ---------------------------------------------------------------------------

class MemoryStore:
    """Same interface as MongoStore, held in lists. Nothing survives a restart."""

    def __init__(self, farmer_docs: list[dict[str, Any]] | None = None):
        self.farmer_docs = list(farmer_docs or [])
        self.alerts: list[Alert] = []
        self.advisories: dict[tuple[str, str], Advisory] = {}
        self.notifications: list[NotificationRecord] = []
        self._lock = threading.Lock()

    def ensure_indexes(self) -> None:
        pass

    def find_active_farmers(self) -> list[Farmer]:
        return parse_farmers(d for d in self.farmer_docs if d.get("isActive", True))

    def find_farmer(self, farmer_id: str) -> Farmer | None:
        docs = [d for d in self.farmer_docs if str(d.get("_id")) == farmer_id]
        found = parse_farmers(docs)
        return found[0] if found else None

    def _recent(self, farmer_id: str, condition: Condition, since: datetime) -> bool:
        return any(
            a.farmer_id == farmer_id and a.condition == condition and a.created_at >= since
            for a in self.alerts
        )

    def has_recent_alert(self, farmer_id: str, condition: Condition, since: datetime) -> bool:
        with self._lock:
            return self._recent(farmer_id, condition, since)

    def insert_alert_if_absent(self, alert: Alert, since: datetime) -> bool:
        with self._lock:
            if self._recent(alert.farmer_id, alert.condition, since):
                return False
            self.alerts.append(alert)
            return True

    def delete_alerts_before(self, cutoff: datetime) -> int:
        with self._lock:
            kept = [a for a in self.alerts if a.created_at >= cutoff]
            deleted = len(self.alerts) - len(kept)
            self.alerts = kept
        return deleted

    def advisory_exists(self, farmer_id: str, date: str) -> bool:
        with self._lock:
            return (farmer_id, date) in self.advisories

    def upsert_advisory(self, advisory: Advisory) -> bool:
        with self._lock:
            key = (advisory.farmer_id, advisory.date)
            if key in self.advisories:
                return False
            self.advisories[key] = advisory
            return True

    def delete_advisories_before(self, cutoff: datetime) -> int:
        with self._lock:
            kept = {k: a for k, a in self.advisories.items() if a.created_at >= cutoff}
            deleted = len(self.advisories) - len(kept)
            self.advisories = kept
        return deleted

    def insert_notification(self, record: NotificationRecord) -> None:
        with self._lock:
            self.notifications.append(record)


def get_store(settings: Settings):
    """MongoStore when MONGODB_URI is set, otherwise an in-process MemoryStore."""
    if settings.mongodb_uri:
        store = MongoStore.from_uri(settings.mongodb_uri, settings.mongodb_db)
        store.ensure_indexes()
        logger.info("Using MongoDB database %r", settings.mongodb_db)
        return store
    logger.warning("MONGODB_URI not set, using in-process store (nothing will be persisted)")
    return MemoryStore()
