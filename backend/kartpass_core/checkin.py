from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Optional

PAYMENT_STATUSES = ("paid", "unpaid", "season_pass", "one_time_license")
EVENT_TYPES = ("training", "race")

DEFAULT_TRAINING_PRICE = 250
ONE_TIME_PREFIX = "onetime_"
ONE_TIME_KLASSE = "Engangslisens"


def race_entry_fee(race: Dict[str, Any], klasse: Optional[str]) -> float:
    """Class fee when the race defines one for ``klasse``, otherwise the entry fee."""

    entry_fee = race.get("entryFee") or 0
    if not klasse:
        return entry_fee

    wanted = klasse.lower()
    for class_fee in race.get("classFees") or []:
        if not isinstance(class_fee, dict):
            continue
        if str(class_fee.get("klasse") or "").lower() == wanted:
            return class_fee.get("fee") or 0
    return entry_fee


def race_checkin_amount(race: Dict[str, Any], signup: Dict[str, Any]) -> float:
    amount = race_entry_fee(race, signup.get("driverKlasse"))
    camping_fee = race.get("campingFee")
    if signup.get("wantsCamping") and camping_fee:
        amount += camping_fee
    return amount


def _stamp(now: dt.datetime) -> Dict[str, str]:
    return {
        "checkinDate": now.date().isoformat(),
        "checkinTime": now.strftime("%H:%M:%S"),
    }


def build_training_checkin(
    driver: Dict[str, Any],
    now: dt.datetime,
    price: float = DEFAULT_TRAINING_PRICE,
    amount: Optional[float] = None,
) -> Dict[str, Any]:
    """History row for a registered driver arriving at training.

    Season-pass holders are never charged; everybody else is recorded as
    paid with either the supplied amount or the configured training price.
    """

    if driver.get("hasSeasonPass"):
        status = "season_pass"
        amount_paid: float = 0
    else:
        status = "paid"
        amount_paid = price if amount is None else amount

    return {
        "driverId": driver["id"],
        "driverName": driver.get("name") or "",
        "driverKlasse": driver.get("klasse"),
        **_stamp(now),
        "paymentStatus": status,
        "eventType": "training",
        "amountPaid": amount_paid,
    }


def build_one_time_checkin(
    name: str,
    license_number: str,
    now: dt.datetime,
    amount: Optional[float] = None,
) -> Dict[str, Any]:
    name = (name or "").strip()
    license_number = (license_number or "").strip()
    if not name:
        raise ValueError("Navn er påkrevd for engangslisens.")
    if not license_number:
        raise ValueError("Lisensnummer er påkrevd for engangslisens.")

    row: Dict[str, Any] = {
        "driverId": f"{ONE_TIME_PREFIX}{int(now.timestamp() * 1000)}",
        "driverName": name,
        "driverKlasse": ONE_TIME_KLASSE,
        **_stamp(now),
        "paymentStatus": "one_time_license",
        "eventType": "training",
        "licenseNumber": license_number,
    }
    if amount is not None:
        row["amountPaid"] = amount
    return row


def build_race_checkin(
    signup: Dict[str, Any],
    race: Dict[str, Any],
    now: dt.datetime,
    amount: Optional[float] = None,
) -> Dict[str, Any]:
    if signup.get("raceId") != race.get("id"):
        raise ValueError("Påmeldingen tilhører ikke dette løpet.")

    return {
        "driverId": signup["driverId"],
        "driverName": signup.get("driverName") or "",
        "driverKlasse": signup.get("driverKlasse"),
        **_stamp(now),
        "paymentStatus": "paid",
        "eventType": "race",
        "eventId": race["id"],
        "eventName": race.get("name") or "",
        "amountPaid": race_checkin_amount(race, signup) if amount is None else amount,
    }


def is_one_time_driver(driver_id: str) -> bool:
    return str(driver_id or "").startswith(ONE_TIME_PREFIX)
