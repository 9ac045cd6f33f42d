from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Sequence
from urllib.parse import quote

import httpx

from .credentials import SHEETS_SCOPE, ServiceAccount


logger = logging.getLogger(__name__)

SHEETS_BASE_URL = "https://sheets.googleapis.com/v4/spreadsheets"
DRIVERS_RANGE = "Drivers!A:J"

# id, name, dob, club, driverLicense, vehicleLicense, teamLicense,
# guardianName, guardianContact, guardianLicenses
_LICENSE_COLUMNS = ("driverLicense", "vehicleLicense", "teamLicense")


def _cell(row: Sequence[Any], index: int) -> str:
    if index >= len(row) or row[index] is None:
        return ""
    return str(row[index]).strip()


def parse_driver_rows(rows: Sequence[Sequence[Any]]) -> List[Dict[str, Any]]:
    """Turn sheet rows into driver payloads; the first row is the header."""

    drivers: List[Dict[str, Any]] = []
    for row in list(rows)[1:]:
        driver_id = _cell(row, 0)
        if not driver_id:
            continue

        driver: Dict[str, Any] = {
            "id": driver_id,
            "name": _cell(row, 1),
            "dob": _cell(row, 2),
            "club": _cell(row, 3),
        }
        for offset, field_name in enumerate(_LICENSE_COLUMNS, start=4):
            value = _cell(row, offset)
            if value:
                driver[field_name] = value

        guardian_name = _cell(row, 7)
        guardian_contact = _cell(row, 8)
        if guardian_name and guardian_contact:
            licenses = [item.strip() for item in _cell(row, 9).split(",") if item.strip()]
            driver["guardians"] = [
                {
                    "id": f"{driver_id}-guardian",
                    "name": guardian_name,
                    "contact": guardian_contact,
                    "licenses": licenses,
                }
            ]

        drivers.append(driver)
    return drivers


class SheetsClient:
    """Reads the member sheet as the Firebase service account; share the sheet with its e-mail."""

    def __init__(self) -> None:
        self.sheet_id = os.getenv("GOOGLE_SHEETS_SHEET_ID", "")
        self.credentials = ServiceAccount([SHEETS_SCOPE])

    def fetch_drivers(self) -> List[Dict[str, Any]]:
        if not self.sheet_id or not self.credentials.configured:
            raise RuntimeError(
                "Google Sheets er ikke konfigurert. Sett GOOGLE_SHEETS_SHEET_ID, FIREBASE_CLIENT_EMAIL "
                "og FIREBASE_PRIVATE_KEY."
            )

        endpoint = f"{SHEETS_BASE_URL}/{quote(self.sheet_id, safe='')}/values/{quote(DRIVERS_RANGE, safe='')}"
        headers = self.credentials.authorization_header()
        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(endpoint, headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning("Google Sheets request failed (%s): %s", exc.response.status_code, exc.response.text)
            raise RuntimeError("Kunne ikke hente førere fra Google Sheets.") from exc
        except httpx.HTTPError as exc:
            logger.warning("Google Sheets unavailable (%s)", exc)
            raise RuntimeError("Kunne ikke hente førere fra Google Sheets.") from exc

        rows = payload.get("values") if isinstance(payload, dict) else None
        if not rows:
            logger.info("No rows found in %s", DRIVERS_RANGE)
            return []
        return parse_driver_rows(rows)
