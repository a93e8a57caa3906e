from datetime import timedelta
from unittest import mock

import pytest

from conftest import FakeTextGenerator, FakeWeatherSource, farmer_doc, make_reading
from weather_alert_engine.config import ALERT_THRESHOLDS, Settings
from weather_alert_engine.engine import WeatherAlertEngine
from weather_alert_engine.exceptions import StoreError
from weather_alert_engine.models import Channel, Condition, Provenance, Severity
from weather_alert_engine.utils.store import MemoryStore


class DownStore(MemoryStore):
    def find_active_farmers(self):
        raise StoreError("connection refused")


@pytest.fixture
def make_engine(crop_mapper, clock, sleep):
    def _make(store, reading=None, text_generator=None, email=None):
        weather = FakeWeatherSource(reading or make_reading())
        return WeatherAlertEngine(
            store, weather, crop_mapper, text_generator=text_generator, email_channel=email, clock=clock, sleep=sleep
        )

    return _make


def test_sweep_creates_alerts_and_notifies_high_severity(make_engine):
    store = MemoryStore([farmer_doc("f-1"), farmer_doc("f-2")])
    engine = make_engine(store, make_reading(temperature=2, humidity=85, wind_speed=30))

    report = engine.run_weather_sweep()

    # extreme_cold (high) + frost (high) + strong_winds (medium) per farmer
    assert report.checked == 2
    assert report.events == 6
    assert report.alerts_created == 6
    assert report.notified == 4
    assert {n.title for n in store.notifications} == {"Weather Alert: EXTREME COLD", "Weather Alert: FROST"}
    assert all(n.channel == Channel.IN_APP for n in store.notifications)


def test_quiet_weather_creates_nothing(make_engine):
    store = MemoryStore([farmer_doc("f-1")])
    report = make_engine(store).run_weather_sweep()
    assert report.checked == 1
    assert report.alerts_created == 0
    assert store.alerts == []


def test_sweep_survives_store_outage(make_engine):
    report = make_engine(DownStore()).run_weather_sweep()
    assert report.farmers == 0
    assert report.alerts_created == 0


def test_sweep_skips_unlocatable_farmer(make_engine):
    store = MemoryStore([farmer_doc("f-1"), farmer_doc("f-2", lat=None, district="Nowhere")])
    report = make_engine(store, make_reading(precipitation=40)).run_weather_sweep()
    assert report.farmers == 2
    assert report.checked == 1
    assert [a.farmer_id for a in store.alerts] == ["f-1"]


def test_check_farmer_by_id(make_engine):
    store = MemoryStore([farmer_doc("f-1")])
    engine = make_engine(store, make_reading(weather_code=99), text_generator=FakeTextGenerator())

    check = engine.check_farmer("f-1")

    assert [e.condition for e in check.events] == [Condition.HAIL]
    (alert,) = check.alerts
    assert alert.severity == Severity.CRITICAL
    assert alert.provenance == Provenance.AI
    assert len(check.notifications) == 1


def test_check_unknown_farmer_returns_none(make_engine):
    assert make_engine(MemoryStore()).check_farmer("ghost") is None


def test_daily_advisories_and_cleanup(make_engine, clock):
    store = MemoryStore([farmer_doc("f-1"), farmer_doc("f-2", lat=19.07, lon=72.88)])
    engine = make_engine(store, text_generator=FakeTextGenerator(fail=True))

    report = engine.run_daily_advisories()
    assert report.generated == 2
    assert report.fallback == 2
    assert engine.run_daily_advisories().generated == 0

    clock.advance(timedelta(days=31))
    cleanup = engine.run_cleanup()
    assert cleanup.advisories_deleted == 2
    assert store.advisories == {}


def test_thresholds_exposed(make_engine):
    assert make_engine(MemoryStore()).thresholds is ALERT_THRESHOLDS


def test_from_settings_without_services_degrades():
    engine = WeatherAlertEngine.from_settings(Settings())
    assert isinstance(engine.store, MemoryStore)
    assert engine.deduplicator.text is None
    assert engine.dispatcher.email is None


def test_from_settings_with_key_builds_text_generator():
    with mock.patch("weather_alert_engine.engine.get_store", return_value=MemoryStore()):
        engine = WeatherAlertEngine.from_settings(Settings(llm_api_key="sk-test", smtp_host="h", smtp_user="u", smtp_password="p"))
    assert engine.deduplicator.text.api_key == "sk-test"
    assert engine.advisories.text is engine.deduplicator.text
    assert engine.dispatcher.email is not None


def test_sweep_tolerates_malformed_farmer_documents(make_engine):
    store = MemoryStore(
        [
            farmer_doc("f-1"),
            farmer_doc("f-2"),
            farmer_doc("geojson", lat=None, farmLocation={"coordinates": [77.2, 28.6]}),
            farmer_doc("text", lat=None, state=None, district=None, farmLocation="Karnal"),
            farmer_doc("f-3"),
        ]
    )
    report = make_engine(store, make_reading(precipitation=40)).run_weather_sweep()

    # the GeoJSON farmer is located through its district instead
    assert report.farmers == 4
    assert report.checked == 4
    assert {a.farmer_id for a in store.alerts} == {"f-1", "f-2", "f-3", "geojson"}
