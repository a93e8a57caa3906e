import logging
from datetime import datetime, timedelta, timezone
from unittest import mock

import pytest
from pymongo.errors import DuplicateKeyError, PyMongoError

from conftest import farmer_doc
from weather_alert_engine.config import Settings
from weather_alert_engine.exceptions import StoreError
from weather_alert_engine.models import (
    AdviceText,
    Advisory,
    AdvisoryLocation,
    Alert,
    AlertMetadata,
    Condition,
    Provenance,
    Severity,
    WeatherSnapshot,
)
from weather_alert_engine.utils.store import (
    ADVISORIES,
    ALERT_SLOTS,
    ALERTS,
    FARMERS,
    NOTIFICATIONS,
    MemoryStore,
    MongoStore,
    get_store,
    slot_id,
)

NOW = datetime(2024, 1, 15, 6, 0, tzinfo=timezone.utc)
SINCE = NOW - timedelta(hours=6)


def make_alert(farmer_id="f-1", condition=Condition.FROST, created_at=NOW):
    return Alert(
        farmer_id=farmer_id,
        condition=condition,
        severity=Severity.HIGH,
        message="Frost",
        valid_from=created_at,
        valid_until=created_at + timedelta(hours=24),
        metadata=AlertMetadata(value=2.0),
        created_at=created_at,
    )


def make_advisory(farmer_id="f-1", date="2024-01-15"):
    return Advisory(
        farmer_id=farmer_id,
        date=date,
        location=AdvisoryLocation(state="Punjab"),
        weather=WeatherSnapshot(
            temperature=25, precipitation=0, humidity=50, wind_speed=5, condition="clear", weather_code=1
        ),
        advice=AdviceText(primary_advice="Monitor crops.", provenance=Provenance.FALLBACK),
        valid_until=NOW + timedelta(hours=24),
        created_at=NOW,
    )


@pytest.fixture
def db():
    return {name: mock.MagicMock(name=name) for name in (FARMERS, ALERTS, ALERT_SLOTS, ADVISORIES, NOTIFICATIONS)}


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------

def test_memory_store_filters_inactive_and_unlocatable_farmers():
    store = MemoryStore(
        [
            farmer_doc("ok"),
            farmer_doc("inactive", isActive=False),
            farmer_doc("nowhere", lat=None, state=None, district=None),
        ]
    )
    assert [f.farmer_id for f in store.find_active_farmers()] == ["ok"]
    assert store.find_farmer("ok").language == "en"
    assert store.find_farmer("missing") is None


def test_memory_store_dedup_window():
    store = MemoryStore()
    assert store.insert_alert_if_absent(make_alert(), SINCE)
    assert not store.insert_alert_if_absent(make_alert(created_at=NOW + timedelta(hours=1)), SINCE)
    assert store.insert_alert_if_absent(make_alert(condition=Condition.HAIL), SINCE)
    assert store.has_recent_alert("f-1", Condition.FROST, SINCE)
    assert not store.has_recent_alert("f-2", Condition.FROST, SINCE)


def test_memory_store_advisory_upsert_once():
    store = MemoryStore()
    assert store.upsert_advisory(make_advisory())
    assert not store.upsert_advisory(make_advisory())
    assert store.advisory_exists("f-1", "2024-01-15")
    assert len(store.advisories) == 1


# ---------------------------------------------------------------------------
# MongoStore
# ---------------------------------------------------------------------------

def test_mongo_insert_claims_slot_then_inserts(db):
    store = MongoStore(db)
    alert = make_alert()
    db[ALERT_SLOTS].find_one_and_update.return_value = None

    assert store.insert_alert_if_absent(alert, SINCE)

    (query, update), kwargs = db[ALERT_SLOTS].find_one_and_update.call_args
    assert query == {"_id": slot_id("f-1", Condition.FROST), "last_created_at": {"$lt": SINCE}}
    assert update["$set"]["last_created_at"] == NOW
    assert kwargs["upsert"] is True
    inserted = db[ALERTS].insert_one.call_args.args[0]
    assert inserted["_id"] == alert.alert_id
    assert inserted["condition"] == "frost"


def test_mongo_slot_inside_window_suppresses(db):
    db[ALERT_SLOTS].find_one_and_update.side_effect = DuplicateKeyError("E11000 duplicate key")
    assert not MongoStore(db).insert_alert_if_absent(make_alert(), SINCE)
    db[ALERTS].insert_one.assert_not_called()


def test_mongo_failed_insert_releases_new_slot(db):
    alert = make_alert()
    db[ALERT_SLOTS].find_one_and_update.return_value = None
    db[ALERTS].insert_one.side_effect = PyMongoError("not primary")

    with pytest.raises(StoreError):
        MongoStore(db).insert_alert_if_absent(alert, SINCE)

    db[ALERT_SLOTS].delete_one.assert_called_once_with({"_id": "f-1:frost", "alert_id": alert.alert_id})


def test_mongo_failed_insert_restores_previous_slot(db):
    alert = make_alert()
    old = NOW - timedelta(days=1)
    db[ALERT_SLOTS].find_one_and_update.return_value = {"_id": "f-1:frost", "last_created_at": old, "alert_id": "a-0"}
    db[ALERTS].insert_one.side_effect = PyMongoError("not primary")

    with pytest.raises(StoreError):
        MongoStore(db).insert_alert_if_absent(alert, SINCE)

    query, update = db[ALERT_SLOTS].update_one.call_args.args
    assert query == {"_id": "f-1:frost", "alert_id": alert.alert_id}
    assert update == {"$set": {"last_created_at": old, "alert_id": "a-0"}}


def test_mongo_advisory_upsert_uses_set_on_insert(db):
    db[ADVISORIES].update_one.return_value = mock.Mock(upserted_id="x")
    store = MongoStore(db)

    assert store.upsert_advisory(make_advisory())

    query, update = db[ADVISORIES].update_one.call_args.args
    assert query == {"farmer_id": "f-1", "date": "2024-01-15"}
    assert set(update) == {"$setOnInsert"}
    assert db[ADVISORIES].update_one.call_args.kwargs["upsert"] is True

    db[ADVISORIES].update_one.return_value = mock.Mock(upserted_id=None)
    assert not store.upsert_advisory(make_advisory())


def test_mongo_find_active_farmers_skips_invalid(db):
    db[FARMERS].find.return_value = [farmer_doc("ok"), farmer_doc("bad", lat=None, state=None, district=None)]
    farmers = MongoStore(db).find_active_farmers()
    assert [f.farmer_id for f in farmers] == ["ok"]


def test_mongo_find_active_farmers_skips_malformed_documents(db):
    db[FARMERS].find.return_value = [
        farmer_doc("ok"),
        {"_id": "geojson", "isActive": True, "farmLocation": {"coordinates": [77.2, 28.6]}},
        {"_id": "string-location", "isActive": True, "farmLocation": "Karnal, Haryana"},
        {"_id": "bad-crops", "isActive": True, "state": "Punjab", "district": "Ludhiana", "actualCrops": 7},
        farmer_doc("also-ok"),
    ]
    farmers = MongoStore(db).find_active_farmers()
    assert [f.farmer_id for f in farmers] == ["ok", "also-ok"]


def test_mongo_alert_cleanup_reports_count_when_slot_purge_fails(db, caplog):
    db[ALERTS].delete_many.return_value = mock.Mock(deleted_count=4)
    db[ALERT_SLOTS].delete_many.side_effect = PyMongoError("timeout")
    with caplog.at_level(logging.WARNING, logger="weather_alert_engine.utils.store"):
        assert MongoStore(db).delete_alerts_before(NOW) == 4
    assert "slot cleanup failed" in caplog.text


def test_mongo_errors_become_store_errors(db):
    db[ALERTS].delete_many.side_effect = PyMongoError("timeout")
    with pytest.raises(StoreError):
        MongoStore(db).delete_alerts_before(NOW)

    db[ADVISORIES].delete_many.return_value = mock.Mock(deleted_count=3)
    assert MongoStore(db).delete_advisories_before(NOW) == 3


def test_get_store_without_uri_is_in_memory():
    assert isinstance(get_store(Settings()), MemoryStore)


def test_get_store_with_uri_builds_mongo():
    with mock.patch("weather_alert_engine.utils.store.MongoClient") as client_cls:
        store = get_store(Settings(mongodb_uri="mongodb://db:27017", mongodb_db="farm"))
    assert isinstance(store, MongoStore)
    client_cls.assert_called_once_with("mongodb://db:27017", tz_aware=True, serverSelectionTimeoutMS=10_000)
    client_cls.return_value.__getitem__.assert_called_once_with("farm")
