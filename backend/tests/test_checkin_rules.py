from __future__ import annotations

import datetime as dt
from zoneinfo import ZoneInfo

import pytest

from kartpass_core.checkin import (
    build_one_time_checkin,
    build_race_checkin,
    build_training_checkin,
    is_one_time_driver,
    race_checkin_amount,
    race_entry_fee,
)

NOW = dt.datetime(2024, 5, 1, 18, 30, 5, tzinfo=ZoneInfo("Europe/Oslo"))

RACE = {
    "id": "race-1",
    "name": "Vårløpet",
    "entryFee": 500,
    "campingFee": 200,
    "classFees": [{"klasse": "Mini", "fee": 300}],
}


def test_race_fee_prefers_class_fee_case_insensitively() -> None:
    assert race_entry_fee(RACE, "mini") == 300
    assert race_entry_fee(RACE, "Senior") == 500
    assert race_entry_fee(RACE, None) == 500


def test_race_amount_adds_camping_only_when_wanted() -> None:
    assert race_checkin_amount(RACE, {"driverKlasse": "Mini", "wantsCamping": True}) == 500
    assert race_checkin_amount(RACE, {"driverKlasse": "Mini", "wantsCamping": False}) == 300
    assert race_checkin_amount({"id": "r"}, {"wantsCamping": True}) == 0


def test_training_checkin_for_season_pass_is_free() -> None:
    driver = {"id": "d1", "name": "Alice", "klasse": "Mini", "hasSeasonPass": True}

    row = build_training_checkin(driver, NOW, price=250, amount=400)

    assert row["paymentStatus"] == "season_pass"
    assert row["amountPaid"] == 0
    assert row["checkinDate"] == "2024-05-01"
    assert row["checkinTime"] == "18:30:05"
    assert row["eventType"] == "training"


def test_training_checkin_uses_price_or_override() -> None:
    driver = {"id": "d1", "name": "Alice"}

    assert build_training_checkin(driver, NOW, price=300)["amountPaid"] == 300
    overridden = build_training_checkin(driver, NOW, price=300, amount=150)
    assert overridden["amountPaid"] == 150
    assert overridden["paymentStatus"] == "paid"


def test_one_time_checkin_gets_synthetic_driver() -> None:
    row = build_one_time_checkin(" Ola Nordmann ", "NMF-123", NOW, amount=200)

    assert is_one_time_driver(row["driverId"])
    assert row["driverId"] == f"onetime_{int(NOW.timestamp() * 1000)}"
    assert row["driverName"] == "Ola Nordmann"
    assert row["driverKlasse"] == "Engangslisens"
    assert row["paymentStatus"] == "one_time_license"
    assert row["licenseNumber"] == "NMF-123"
    assert row["amountPaid"] == 200


def test_one_time_checkin_requires_license() -> None:
    with pytest.raises(ValueError, match="Lisensnummer"):
        build_one_time_checkin("Ola", "  ", NOW)


def test_race_checkin_copies_event_and_fee() -> None:
    signup = {"raceId": "race-1", "driverId": "d1", "driverName": "Alice", "driverKlasse": "Mini", "wantsCamping": True}

    row = build_race_checkin(signup, RACE, NOW)

    assert row["eventType"] == "race"
    assert row["eventId"] == "race-1"
    assert row["eventName"] == "Vårløpet"
    assert row["paymentStatus"] == "paid"
    assert row["amountPaid"] == 500
    assert build_race_checkin(signup, RACE, NOW, amount=0)["amountPaid"] == 0


def test_race_checkin_rejects_signup_for_other_race() -> None:
    with pytest.raises(ValueError, match="tilhører ikke"):
        build_race_checkin({"raceId": "other", "driverId": "d1"}, RACE, NOW)


def test_regular_driver_is_not_one_time() -> None:
    assert not is_one_time_driver("d1")
    assert not is_one_time_driver("")
