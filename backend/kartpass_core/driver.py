from __future__ import annotations

import datetime as dt
import re
from typing import Optional


_ISO_LIKE = re.compile(r"^(\d{4})[-./](\d{1,2})[-./](\d{1,2})$")
_NORWEGIAN = re.compile(r"^(\d{1,2})[-./](\d{1,2})[-./](\d{4})$")


def normalize_rfid(rfid: str) -> str:
    """Strip everything but letters and digits and lowercase the rest."""

    return re.sub(r"[^a-zA-Z0-9]", "", rfid or "").lower()


def parse_dob(value: str) -> Optional[dt.date]:
    """Parse a date of birth written as YYYY-MM-DD or DD.MM.YYYY.

    Separators may be any of ``-``, ``.`` or ``/``. Returns ``None`` for
    unrecognised formats and impossible dates (e.g. 30 February).
    """

    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    match = _ISO_LIKE.match(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
    else:
        match = _NORWEGIAN.match(text)
        if not match:
            return None
        day, month, year = (int(part) for part in match.groups())

    try:
        return dt.date(year, month, day)
    except ValueError:
        return None


def calculate_age(dob: str, today: dt.date | None = None) -> Optional[int]:
    born = parse_dob(dob)
    if born is None:
        return None

    today = today or dt.date.today()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age if age >= 0 else None


def is_minor(dob: str, today: dt.date | None = None) -> bool:
    age = calculate_age(dob, today)
    return age is not None and age < 18
