import pytest
from pydantic import ValidationError

from weather_alert_engine.models import Condition, Farmer, Severity, normalize_language


@pytest.mark.parametrize(
    "raw, code",
    [("hindi", "hi"), ("HI", "hi"), ("Punjabi", "pa"), ("en", "en"), (None, "en"), ("tamil", "en")],
)
def test_normalize_language(raw, code):
    assert normalize_language(raw) == code


def test_farmer_from_account_document():
    farmer = Farmer.from_document(
        {
            "_id": "65a1",
            "farmLocation": {"state": "Haryana", "district": "Karnal", "coordinates": {"latitude": 29.69, "longitude": 76.99}},
            "preferredLanguage": "hindi",
            "actualCrops": ["Rice", " ", None, "Wheat "],
            "email": "kisan@example.com",
        }
    )
    assert farmer.farmer_id == "65a1"
    assert farmer.state == "Haryana"
    assert farmer.coordinates.latitude == 29.69
    assert farmer.language == "hi"
    assert farmer.crops == ["Rice", "Wheat"]


def test_farmer_with_partial_coordinates_falls_back_to_district():
    farmer = Farmer.from_document(
        {"_id": "x", "state": "Punjab", "district": "Ludhiana", "farmLocation": {"coordinates": {"latitude": 30.9}}}
    )
    assert farmer.coordinates is None
    assert farmer.district == "Ludhiana"


def test_farmer_without_any_location_is_rejected():
    with pytest.raises(ValidationError):
        Farmer.from_document({"_id": "x", "state": "Punjab"})


def test_enum_helpers():
    assert Condition.HEAVY_RAIN.label == "HEAVY RAIN"
    assert Severity.CRITICAL.at_least(Severity.HIGH)
    assert not Severity.MEDIUM.at_least(Severity.HIGH)


@pytest.mark.parametrize(
    "location",
    [{"coordinates": [77.2, 28.6]}, {"coordinates": "28.6,77.2"}, "Karnal, Haryana", ["Haryana"]],
)
def test_farmer_with_odd_location_shape_uses_district(location):
    farmer = Farmer.from_document({"_id": "x", "state": "Haryana", "district": "Karnal", "farmLocation": location})
    assert farmer.coordinates is None
    assert farmer.district == "Karnal"
