from __future__ import annotations

import datetime as dt
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx

from . import checkin as checkin_rules
from .credentials import FIRESTORE_SCOPE, ServiceAccount
from .driver import normalize_rfid, parse_dob
from .firestore import (
    FIRESTORE_BASE_URL,
    build_structured_query,
    decode_document,
    encode_fields,
)
from .training import TrainingRule


logger = logging.getLogger(__name__)

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"

DRIVERS_COLLECTION = "drivers"
TRAINING_SIGNUPS_COLLECTION = "trainingSignups"
SETTINGS_COLLECTION = "settings"
TRAINING_SCHEDULE_DOC = "training_schedule"
SITE_CONFIG_DOC = "site_config"
RACES_COLLECTION = "races"
RACE_SIGNUPS_COLLECTION = "raceSignups"
CHECKIN_HISTORY_COLLECTION = "checkinHistory"
SECRETS_COLLECTION = "secrets"
AUTH_USERS_COLLECTION = "authUsers"

RACE_STATUSES = ("upcoming", "ongoing", "completed")

_DRIVER_OPTIONAL_FIELDS = (
    "email",
    "klasse",
    "startNr",
    "transponderNr",
    "chassiNr",
    "motorNr1",
    "motorNr2",
    "driverLicense",
    "vehicleLicense",
    "teamLicense",
)

_SIGNUP_ERRORS = {
    "EMAIL_EXISTS": "En bruker med denne e-postadressen finnes allerede.",
    "WEAK_PASSWORD": "Passordet må være på minst 6 tegn.",
    "INVALID_EMAIL": "E-postadressen er ugyldig.",
    "MISSING_PASSWORD": "Passord er påkrevd.",
}


class DataStore:
    """Club data kept in Cloud Firestore, or local JSON files when Firebase is not configured."""

    def __init__(self, data_dir: Path | None = None) -> None:
        """Initialize the DataStore.

        Args:
            data_dir: Directory for the local JSON fallback files
        """
        env_dir = os.getenv("KARTPASS_DATA_DIR")
        self.data_dir = data_dir or (Path(env_dir) if env_dir else Path(__file__).parent.parent / "data")

        # Firebase configuration
        self.firebase_project = os.getenv("FIREBASE_PROJECT_ID", "")
        self.firebase_api_key = os.getenv("FIREBASE_API_KEY", "")
        self.firebase_database = os.getenv("FIREBASE_DATABASE", "(default)")
        self.collection_prefix = os.getenv("KARTPASS_COLLECTION_PREFIX", "")
        self.timezone = ZoneInfo(os.getenv("KARTPASS_TIMEZONE", "Europe/Oslo"))
        self.credentials = ServiceAccount([FIRESTORE_SCOPE])
        self._local_mode_logged = False

    # ------------------------------------------------------------------
    # Drivers

    def fetch_drivers(self) -> List[Dict[str, Any]]:
        rows = self._query_documents(DRIVERS_COLLECTION, failure="Kunne ikke hente førere.")
        rows.sort(key=lambda row: str(row.get("name") or "").lower())
        return rows

    def fetch_driver(self, driver_id: str) -> Optional[Dict[str, Any]]:
        if not driver_id:
            return None
        return self._get_document(DRIVERS_COLLECTION, driver_id, failure="Kunne ikke hente fører.")

    def fetch_driver_by_rfid(self, rfid: str) -> Optional[Dict[str, Any]]:
        normalized = normalize_rfid(rfid)
        if not normalized:
            return None
        rows = self._query_documents(
            DRIVERS_COLLECTION,
            [("rfid", normalized)],
            failure="Kunne ikke hente fører med RFID.",
        )
        return rows[0] if rows else None

    def create_driver(self, payload: Dict[str, Any], uid: str) -> Dict[str, Any]:
        uid = str(uid or "").strip()
        if not uid:
            raise ValueError("Bruker-ID er påkrevd.")

        record = self._prepare_driver_payload(payload)
        self._ensure_rfid_free(record["rfid"], uid)

        existing = self.fetch_driver(uid)
        record["id"] = uid
        record["role"] = existing.get("role", "driver") if existing else "driver"

        return self._set_document(
            DRIVERS_COLLECTION,
            uid,
            record,
            failure="Kunne ikke legge til fører i databasen.",
        )

    def update_driver(self, driver_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.fetch_driver(driver_id)
        if not existing:
            raise ValueError("Fører ikke funnet")

        record = self._prepare_driver_payload(payload, existing)
        self._ensure_rfid_free(record["rfid"], driver_id)
        record["id"] = driver_id
        record["role"] = existing.get("role", "driver")

        return self._set_document(
            DRIVERS_COLLECTION,
            driver_id,
            record,
            failure="Kunne ikke oppdatere fører i databasen.",
        )

    def delete_driver(self, driver_id: str) -> None:
        # The Firebase Auth account is kept.
        self._delete_document(DRIVERS_COLLECTION, driver_id, failure="Kunne ikke slette fører fra databasen.")

    def create_auth_user(self, email: str, password: str) -> str:
        """Create a Firebase Auth account and return its uid."""

        email = (email or "").strip().lower()
        if not email:
            raise ValueError("E-postadressen er ugyldig.")
        if len(password or "") < 6:
            raise ValueError(_SIGNUP_ERRORS["WEAK_PASSWORD"])

        if not self._use_firestore():
            return self._create_auth_user_local(email)

        endpoint = f"{IDENTITY_TOOLKIT_URL}/accounts:signUp"
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(
                    endpoint,
                    params={"key": self.firebase_api_key},
                    json={"email": email, "password": password, "returnSecureToken": False},
                )
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            code = self._extract_firebase_error(exc.response)
            for prefix, message in _SIGNUP_ERRORS.items():
                if code and code.startswith(prefix):
                    raise ValueError(message) from exc
            logger.warning("Firebase sign-up failed (%s)", code or exc)
            raise RuntimeError(f"Kunne ikke opprette en ny autentisert bruker. Feilkode: {code or 'UKJENT'}") from exc
        except httpx.HTTPError as exc:
            logger.warning("Firebase sign-up unavailable (%s)", exc)
            raise RuntimeError("Kunne ikke opprette ny bruker.") from exc

        uid = str(payload.get("localId") or "").strip() if isinstance(payload, dict) else ""
        if not uid:
            raise RuntimeError("Uventet svar fra Firebase ved oppretting av bruker.")
        return uid

    def import_drivers(self, drivers: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Upsert drivers keyed by id; failures are collected rather than raised."""

        created = 0
        updated = 0
        errors: List[str] = []
        for driver in drivers:
            driver_id = str(driver.get("id") or "").strip()
            if not driver_id:
                continue
            try:
                if self.fetch_driver(driver_id):
                    self.update_driver(driver_id, driver)
                    updated += 1
                else:
                    # imported members have no card yet; the member id stands in for the RFID
                    self.create_driver({"rfid": driver_id, **driver}, driver_id)
                    created += 1
            except (ValueError, RuntimeError) as exc:
                logger.warning("Skipping imported driver %s: %s", driver_id, exc)
                errors.append(f"{driver_id}: {exc}")

        return {"created": created, "updated": updated, "errors": errors}

    # ------------------------------------------------------------------
    # Training signups & settings

    def create_training_signup(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        driver_id = str(payload.get("driverId") or "").strip()
        if not driver_id:
            raise ValueError("Fører-ID er påkrevd.")
        training_date = self._coerce_date(payload.get("trainingDate"))
        if not training_date:
            raise ValueError("Ugyldig treningsdato.")

        driver = self.fetch_driver(driver_id) or {}
        signup_id = f"{driver_id}_{training_date}"
        record = {
            "id": signup_id,
            "driverId": driver_id,
            "driverName": payload.get("driverName") or driver.get("name") or "",
            "driverKlasse": payload.get("driverKlasse") or driver.get("klasse"),
            "trainingDate": training_date,
            "signedUpAt": self._utc_now_iso(),
        }
        return self._create_document(
            TRAINING_SIGNUPS_COLLECTION,
            signup_id,
            record,
            failure="Kunne ikke legge til treningspåmelding.",
            exists="Føreren er allerede påmeldt denne treningen.",
        )

    def fetch_training_signups(self, training_date: str) -> List[Dict[str, Any]]:
        rows = self._query_documents(
            TRAINING_SIGNUPS_COLLECTION,
            [("trainingDate", training_date)],
            failure="En feil oppstod under henting av påmeldinger. Vennligst prøv igjen.",
        )
        rows.sort(key=lambda row: (row.get("driverKlasse") or "Ukjent Klasse", row.get("driverName") or ""))
        return rows

    def fetch_training_signups_by_driver(self, driver_id: str) -> List[Dict[str, Any]]:
        return self._query_documents(
            TRAINING_SIGNUPS_COLLECTION,
            [("driverId", driver_id)],
            failure="En feil oppstod under henting av påmeldinger for trening.",
        )

    def fetch_training_signup(self, signup_id: str) -> Optional[Dict[str, Any]]:
        if not signup_id:
            return None
        return self._get_document(TRAINING_SIGNUPS_COLLECTION, signup_id, failure="Kunne ikke hente påmelding.")

    def delete_training_signup(self, signup_id: str) -> None:
        self._delete_document(
            TRAINING_SIGNUPS_COLLECTION,
            signup_id,
            failure="Kunne ikke fjerne påmelding.",
        )

    def fetch_training_settings(self) -> Dict[str, Any]:
        settings = self._get_document(
            SETTINGS_COLLECTION,
            TRAINING_SCHEDULE_DOC,
            failure="Kunne ikke hente treningsinnstillinger.",
        )
        if settings:
            settings["id"] = "main"
            settings.setdefault("rules", [])
            return settings
        return {"id": "main", "year": self.now().year, "rules": []}

    def update_training_settings(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            year = int(payload.get("year"))
        except (TypeError, ValueError) as exc:
            raise ValueError("Ugyldig år for treningsinnstillinger.") from exc

        rules: List[Dict[str, Any]] = []
        for raw in payload.get("rules") or []:
            if not isinstance(raw, dict):
                continue
            rule = TrainingRule.from_dict(raw)
            entry: Dict[str, Any] = {
                "id": rule.id or self._new_id(),
                "month": rule.month,
                "daysOfWeek": sorted(set(rule.days_of_week)),
            }
            if rule.description:
                entry["description"] = rule.description
            rules.append(entry)

        record = {"id": "main", "year": year, "rules": rules}
        self._set_document(
            SETTINGS_COLLECTION,
            TRAINING_SCHEDULE_DOC,
            record,
            failure="Kunne ikke lagre treningsinnstillinger.",
        )
        return record

    # ------------------------------------------------------------------
    # Site settings & secrets

    def fetch_site_settings(self) -> Dict[str, Any]:
        settings = self._get_document(
            SETTINGS_COLLECTION,
            SITE_CONFIG_DOC,
            failure="Kunne ikke hente nettstedsinnstillinger.",
        )
        if not settings:
            return {}
        settings.pop("id", None)
        return settings

    def update_site_settings(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        updates = {key: value for key, value in payload.items() if key != "id"}
        if "trainingPrice" in updates and updates["trainingPrice"] is not None:
            if updates["trainingPrice"] < 0:
                raise ValueError("Pris kan ikke være negativ.")
        self._set_document(
            SETTINGS_COLLECTION,
            SITE_CONFIG_DOC,
            updates,
            merge=True,
            failure="Kunne ikke lagre nettstedsinnstillinger.",
        )
        return self.fetch_site_settings()

    def training_price(self) -> float:
        price = self.fetch_site_settings().get("trainingPrice")
        return checkin_rules.DEFAULT_TRAINING_PRICE if price is None else price

    def fetch_secret(self, name: str) -> Dict[str, Any]:
        secret = self._get_document(SECRETS_COLLECTION, name, failure="Kunne ikke hente lagrede nøkler.")
        return secret or {}

    def save_secret(self, name: str, data: Dict[str, Any]) -> None:
        self._set_document(
            SECRETS_COLLECTION,
            name,
            data,
            merge=True,
            failure="Kunne ikke lagre nøkler.",
        )

    # ------------------------------------------------------------------
    # Races

    def create_race(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = self._prepare_race_payload(payload)
        race_id = self._new_id()
        record.update({"id": race_id, "status": "upcoming", "createdAt": self._utc_now_iso()})
        return self._set_document(RACES_COLLECTION, race_id, record, failure="Kunne ikke opprette nytt løp.")

    def fetch_races(self) -> List[Dict[str, Any]]:
        rows = self._query_documents(RACES_COLLECTION, failure="Kunne ikke hente løp.")
        rows.sort(key=lambda row: str(row.get("date") or ""), reverse=True)
        return rows

    def fetch_race(self, race_id: str) -> Optional[Dict[str, Any]]:
        if not race_id:
            return None
        return self._get_document(RACES_COLLECTION, race_id, failure="Kunne ikke hente løpsdata.")

    def fetch_races_for_date(self, date_value: str) -> List[Dict[str, Any]]:
        target = self._coerce_date(date_value)
        if not target:
            raise ValueError("Ugyldig dato.")

        active = []
        for race in self.fetch_races():
            start = str(race.get("date") or "")
            end = str(race.get("endDate") or "") or start
            if start and start <= target <= end:
                active.append(race)
        return active

    def update_race(self, race_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.fetch_race(race_id)
        if not existing:
            raise ValueError("Løpet finnes ikke.")

        record = self._prepare_race_payload({**existing, **payload})
        status = payload.get("status", existing.get("status", "upcoming"))
        if status not in RACE_STATUSES:
            raise ValueError(f"Ugyldig status: {status}")
        record.update({"id": race_id, "status": status, "createdAt": existing.get("createdAt")})
        return self._set_document(RACES_COLLECTION, race_id, record, failure="Kunne ikke oppdatere løp.")

    def delete_race(self, race_id: str) -> None:
        self._delete_document(RACES_COLLECTION, race_id, failure="Kunne ikke slette løp.")

    # ------------------------------------------------------------------
    # Race signups

    def create_race_signup(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        race_id = str(payload.get("raceId") or "").strip()
        driver_id = str(payload.get("driverId") or "").strip()
        if not race_id or not driver_id:
            raise ValueError("Løp og fører må velges.")

        race = self.fetch_race(race_id)
        if not race:
            raise ValueError("Løpet finnes ikke.")

        driver = self.fetch_driver(driver_id) or {}
        klasse = payload.get("driverKlasse") or driver.get("klasse")
        available = race.get("availableClasses") or []
        if available and klasse and klasse.lower() not in {str(item).lower() for item in available}:
            raise ValueError("Klassen er ikke tilgjengelig for dette løpet.")

        # one signup per driver and race, enforced by the document id
        signup_id = f"{race_id}_{driver_id}"
        record = {
            "id": signup_id,
            "raceId": race_id,
            "driverId": driver_id,
            "driverName": payload.get("driverName") or driver.get("name") or "",
            "driverKlasse": klasse,
            "signedUpAt": self._utc_now_iso(),
            "wantsCamping": bool(payload.get("wantsCamping")),
        }
        return self._create_document(
            RACE_SIGNUPS_COLLECTION,
            signup_id,
            record,
            failure="Kunne ikke melde på til løpet.",
            exists="Føreren er allerede påmeldt dette løpet.",
        )

    def fetch_race_signup(self, signup_id: str) -> Optional[Dict[str, Any]]:
        if not signup_id:
            return None
        return self._get_document(RACE_SIGNUPS_COLLECTION, signup_id, failure="Kunne ikke hente påmelding.")

    def fetch_race_signups(self, race_id: str) -> List[Dict[str, Any]]:
        rows = self._query_documents(
            RACE_SIGNUPS_COLLECTION,
            [("raceId", race_id)],
            failure="Kunne ikke hente påmeldinger for løpet.",
        )
        rows.sort(
            key=lambda row: (
                str(row.get("driverKlasse") or "Z-Ukjent Klasse").lower(),
                str(row.get("driverName") or "").lower(),
            )
        )
        return rows

    def fetch_race_signups_with_drivers(self, race_id: str) -> List[Dict[str, Any]]:
        drivers = {driver["id"]: driver for driver in self.fetch_drivers() if driver.get("id")}
        return [
            {**signup, "driver": drivers.get(str(signup.get("driverId") or ""))}
            for signup in self.fetch_race_signups(race_id)
        ]

    def fetch_race_signups_by_driver(self, driver_id: str) -> List[Dict[str, Any]]:
        return self._query_documents(
            RACE_SIGNUPS_COLLECTION,
            [("driverId", driver_id)],
            failure="Kunne ikke hente førerens påmeldinger.",
        )

    def delete_race_signup(self, signup_id: str) -> None:
        self._delete_document(RACE_SIGNUPS_COLLECTION, signup_id, failure="Kunne ikke fjerne påmelding.")

    # ------------------------------------------------------------------
    # Check-in history

    def record_checkin(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        if entry.get("paymentStatus") not in checkin_rules.PAYMENT_STATUSES:
            raise ValueError(f"Ugyldig betalingsstatus: {entry.get('paymentStatus')}")
        if entry.get("eventType", "training") not in checkin_rules.EVENT_TYPES:
            raise ValueError(f"Ugyldig hendelsestype: {entry.get('eventType')}")
        if not entry.get("driverId"):
            raise ValueError("Fører-ID er påkrevd.")

        entry_id = self._new_id()
        record = {"eventType": "training", **entry, "id": entry_id}
        return self._set_document(
            CHECKIN_HISTORY_COLLECTION,
            entry_id,
            record,
            failure="Kunne ikke lagre innsjekking i historikken.",
        )

    def check_in_training(self, driver_id: str, amount: float | None = None) -> Dict[str, Any]:
        driver = self.fetch_driver(driver_id)
        if not driver:
            raise ValueError("Fører ikke funnet")
        entry = checkin_rules.build_training_checkin(driver, self.now(), price=self.training_price(), amount=amount)
        return self.record_checkin(entry)

    def check_in_one_time(self, name: str, license_number: str, amount: float | None = None) -> Dict[str, Any]:
        entry = checkin_rules.build_one_time_checkin(name, license_number, self.now(), amount=amount)
        return self.record_checkin(entry)

    def check_in_race(self, signup_id: str, amount: float | None = None) -> Dict[str, Any]:
        signup = self.fetch_race_signup(signup_id)
        if not signup:
            raise ValueError("Påmelding ikke funnet.")
        race = self.fetch_race(str(signup.get("raceId") or ""))
        if not race:
            raise ValueError("Løpet finnes ikke.")
        entry = checkin_rules.build_race_checkin(signup, race, self.now(), amount=amount)
        return self.record_checkin(entry)

    def fetch_checkins_for_date(self, checkin_date: str) -> List[Dict[str, Any]]:
        rows = self._query_documents(
            CHECKIN_HISTORY_COLLECTION,
            [("checkinDate", checkin_date)],
            failure="Kunne ikke hente innsjekkingshistorikk for i dag.",
        )
        rows.sort(key=lambda row: str(row.get("checkinTime") or ""), reverse=True)
        return rows

    def fetch_all_checkins(self) -> List[Dict[str, Any]]:
        return self._query_documents(
            CHECKIN_HISTORY_COLLECTION,
            failure="Kunne ikke hente all innsjekkingshistorikk.",
        )

    def delete_checkin(self, entry_id: str) -> None:
        self._delete_document(
            CHECKIN_HISTORY_COLLECTION,
            entry_id,
            failure="Kunne ikke slette innsjekking fra databasen.",
        )

    def now(self) -> dt.datetime:
        return dt.datetime.now(self.timezone)

    def today(self) -> str:
        return self.now().date().isoformat()

    # ------------------------------------------------------------------
    # Payload preparation

    def _prepare_driver_payload(
        self,
        payload: Dict[str, Any],
        existing: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        merged = {**(existing or {}), **payload}

        rfid = normalize_rfid(str(merged.get("rfid") or ""))
        if not rfid:
            raise ValueError("RFID/ID er påkrevd.")

        name = str(merged.get("name") or "").strip()
        if len(name) < 2:
            raise ValueError("Navn må ha minst 2 tegn.")

        club = str(merged.get("club") or "").strip()
        if len(club) < 2:
            raise ValueError("Klubb må ha minst 2 tegn.")

        born = parse_dob(str(merged.get("dob") or ""))
        if born is None:
            raise ValueError("Ugyldig datoformat. Bruk DD.MM.YYYY.")
        if born > self.now().date():
            raise ValueError("Dato kan ikke være i fremtiden.")

        record: Dict[str, Any] = {
            "rfid": rfid,
            "name": name,
            "club": club,
            "dob": born.isoformat(),
            "hasSeasonPass": bool(merged.get("hasSeasonPass")),
        }
        for field_name in _DRIVER_OPTIONAL_FIELDS:
            raw = merged.get(field_name)
            value = str(raw).strip() if raw is not None else ""
            if value:
                record[field_name] = value

        guardians = self._coerce_guardians(merged.get("guardians"))
        if guardians:
            record["guardians"] = guardians
        return record

    def _coerce_guardians(self, raw: Any) -> List[Dict[str, Any]]:
        if not isinstance(raw, list):
            return []
        guardians: List[Dict[str, Any]] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or "").strip()
            contact = str(item.get("contact") or "").strip()
            if not name or not contact:
                raise ValueError("Foresatte må ha både navn og kontaktinformasjon.")
            licenses_raw = item.get("licenses") or []
            if isinstance(licenses_raw, str):
                licenses_raw = licenses_raw.split(",")
            licenses = [str(value).strip() for value in licenses_raw if str(value).strip()]
            guardians.append({
                "id": str(item.get("id") or self._new_id()),
                "name": name,
                "contact": contact,
                "licenses": licenses,
            })
        return guardians

    def _ensure_rfid_free(self, rfid: str, driver_id: str) -> None:
        other = self.fetch_driver_by_rfid(rfid)
        if other and other.get("id") != driver_id:
            raise ValueError("RFID er allerede i bruk av en annen fører.")

    def _prepare_race_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValueError("Løpet må ha et navn.")

        start = self._coerce_date(payload.get("date"))
        if not start:
            raise ValueError("Ugyldig startdato.")
        end = self._coerce_date(payload.get("endDate")) if payload.get("endDate") else None
        if end and end < start:
            raise ValueError("Sluttdato kan ikke være før startdato.")

        record: Dict[str, Any] = {
            "name": name,
            "date": start,
            "description": str(payload.get("description") or "").strip(),
        }
        if end:
            record["endDate"] = end

        classes = [str(item).strip() for item in payload.get("availableClasses") or [] if str(item).strip()]
        if classes:
            record["availableClasses"] = classes

        for fee_field in ("entryFee", "campingFee"):
            value = payload.get(fee_field)
            if value is None:
                continue
            if value < 0:
                raise ValueError("Avgifter kan ikke være negative.")
            record[fee_field] = value

        class_fees = []
        for item in payload.get("classFees") or []:
            if not isinstance(item, dict):
                continue
            klasse = str(item.get("klasse") or "").strip()
            fee = item.get("fee")
            if not klasse or fee is None:
                continue
            if fee < 0:
                raise ValueError("Avgifter kan ikke være negative.")
            class_fees.append({"klasse": klasse, "fee": fee})
        if class_fees:
            record["classFees"] = class_fees

        return record

    def _coerce_date(self, value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, dt.date):
            return value.isoformat()
        text = str(value).strip()
        if not text:
            return None
        try:
            return dt.date.fromisoformat(text[:10]).isoformat()
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Document primitives

    def _use_firestore(self) -> bool:
        if self.firebase_project:
            required = {
                "FIREBASE_API_KEY": self.firebase_api_key,
                "FIREBASE_CLIENT_EMAIL": self.credentials.client_email,
                "FIREBASE_PRIVATE_KEY": self.credentials.private_key,
            }
            missing = [name for name, value in required.items() if not value]
            if missing:
                raise RuntimeError(f"Firebase-konfigurasjonen er ufullstendig. Mangler {', '.join(missing)}.")
            return True
        if self.firebase_api_key:
            raise RuntimeError("Firebase-konfigurasjonen er ufullstendig. Mangler FIREBASE_PROJECT_ID.")
        if not self._local_mode_logged:
            logger.info("Firebase not configured; using local JSON store in %s", self.data_dir)
            self._local_mode_logged = True
        return False

    def _collection(self, name: str) -> str:
        return f"{self.collection_prefix}{name}"

    def _documents_url(self) -> str:
        return (
            f"{FIRESTORE_BASE_URL}/projects/{self.firebase_project}"
            f"/databases/{self.firebase_database}/documents"
        )

    def _document_url(self, collection: str, doc_id: str) -> str:
        return f"{self._documents_url()}/{self._collection(collection)}/{quote(str(doc_id), safe='')}"

    def _auth_headers(self) -> Dict[str, str]:
        return self.credentials.authorization_header()

    def _get_document(self, collection: str, doc_id: str, failure: str) -> Optional[Dict[str, Any]]:
        if not self._use_firestore():
            for row in self._load_local(collection):
                if str(row.get("id")) == str(doc_id):
                    return dict(row)
            return None

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(self._document_url(collection, doc_id), headers=self._auth_headers())
                if response.status_code == 404:
                    return None
                response.raise_for_status()
                document = response.json()
        except httpx.HTTPError as exc:
            self._log_firestore_failure("get", collection, exc)
            raise RuntimeError(failure) from exc

        return decode_document(document) if isinstance(document, dict) else None

    def _query_documents(
        self,
        collection: str,
        filters: Sequence[Tuple[str, Any]] | None = None,
        failure: str = "Kunne ikke hente data.",
    ) -> List[Dict[str, Any]]:
        if not self._use_firestore():
            rows = self._load_local(collection)
            return [
                dict(row)
                for row in rows
                if all(row.get(field) == value for field, value in (filters or []))
            ]

        body = build_structured_query(self._collection(collection), filters)
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(
                    f"{self._documents_url()}:runQuery",
                    headers=self._auth_headers(),
                    json=body,
                )
                response.raise_for_status()
                results = response.json()
        except httpx.HTTPError as exc:
            self._log_firestore_failure("query", collection, exc)
            raise RuntimeError(failure) from exc

        if not isinstance(results, list):
            logger.warning("Firestore query on %s returned unexpected payload: %s", collection, type(results))
            return []

        return [
            decode_document(item["document"])
            for item in results
            if isinstance(item, dict) and isinstance(item.get("document"), dict)
        ]

    def _set_document(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        failure: str,
        merge: bool = False,
    ) -> Dict[str, Any]:
        if not self._use_firestore():
            return self._set_local(collection, doc_id, data, merge)

        params: List[Tuple[str, str]] = []
        if merge:
            params.extend(("updateMask.fieldPaths", field) for field in data)

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.patch(
                    self._document_url(collection, doc_id),
                    params=params,
                    headers=self._auth_headers(),
                    json={"fields": encode_fields(data)},
                )
                response.raise_for_status()
                document = response.json()
        except httpx.HTTPError as exc:
            self._log_firestore_failure("write", collection, exc)
            raise RuntimeError(failure) from exc

        if isinstance(document, dict) and "fields" in document:
            return decode_document(document)
        return {"id": doc_id, **data}

    def _create_document(
        self,
        collection: str,
        doc_id: str,
        data: Dict[str, Any],
        failure: str,
        exists: str,
    ) -> Dict[str, Any]:
        """Write a new document, raising ``ValueError(exists)`` if the id is taken."""

        if not self._use_firestore():
            if any(str(row.get("id")) == str(doc_id) for row in self._load_local(collection)):
                raise ValueError(exists)
            return self._set_local(collection, doc_id, data, merge=False)

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(
                    f"{self._documents_url()}/{self._collection(collection)}",
                    params={"documentId": doc_id},
                    headers=self._auth_headers(),
                    json={"fields": encode_fields(data)},
                )
                if response.status_code == 409:
                    raise ValueError(exists)
                response.raise_for_status()
                document = response.json()
        except httpx.HTTPError as exc:
            self._log_firestore_failure("create", collection, exc)
            raise RuntimeError(failure) from exc

        if isinstance(document, dict) and "fields" in document:
            return decode_document(document)
        return {"id": doc_id, **data}

    def _delete_document(self, collection: str, doc_id: str, failure: str) -> None:
        if not self._use_firestore():
            rows = self._load_local(collection)
            remaining = [row for row in rows if str(row.get("id")) != str(doc_id)]
            self._write_json_file(self._local_path(collection), remaining)
            return

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.delete(self._document_url(collection, doc_id), headers=self._auth_headers())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            self._log_firestore_failure("delete", collection, exc)
            raise RuntimeError(failure) from exc

    def _log_firestore_failure(self, action: str, collection: str, exc: httpx.HTTPError) -> None:
        detail = None
        if isinstance(exc, httpx.HTTPStatusError):
            detail = self._extract_firebase_error(exc.response)
        logger.warning("Firestore %s on %s failed (%s)", action, collection, detail or exc)

    def _extract_firebase_error(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                message = error.get("message") or error.get("status")
                if isinstance(message, str) and message.strip():
                    return message.strip()
            if isinstance(error, str) and error.strip():
                return error.strip()
        return None

    # ---- local JSON fallback ----------------------------------------------

    def _local_path(self, collection: str) -> Path:
        return self.data_dir / f"{collection}_local.json"

    def _load_local(self, collection: str) -> List[Dict[str, Any]]:
        data = self._read_json_file(self._local_path(collection), [])
        if not isinstance(data, list):
            return []
        return [row for row in data if isinstance(row, dict)]

    def _set_local(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool) -> Dict[str, Any]:
        rows = self._load_local(collection)
        for index, row in enumerate(rows):
            if str(row.get("id")) == str(doc_id):
                record = {**row, **data} if merge else dict(data)
                record["id"] = doc_id
                rows[index] = record
                break
        else:
            record = {**data, "id": doc_id}
            rows.append(record)
        self._write_json_file(self._local_path(collection), rows)
        return dict(record)

    def _create_auth_user_local(self, email: str) -> str:
        for row in self._load_local(AUTH_USERS_COLLECTION):
            if row.get("email") == email:
                raise ValueError(_SIGNUP_ERRORS["EMAIL_EXISTS"])
        uid = self._new_id()
        self._set_local(AUTH_USERS_COLLECTION, uid, {"email": email, "createdAt": self._utc_now_iso()}, merge=False)
        return uid

    def _read_json_file(self, path: Path, default: Any) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return default

    def _write_json_file(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True, ensure_ascii=False)
        except OSError as exc:
            raise RuntimeError(f"Failed to write local data store {path}") from exc

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
