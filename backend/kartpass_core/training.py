from __future__ import annotations

import calendar
import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List


@dataclass
class TrainingRule:
    """Recurring training weekdays for one month.

    ``month`` is zero based (0 = January) and ``days_of_week`` uses
    Sunday = 0 through Saturday = 6, matching the stored settings documents.
    """

    id: str
    month: int
    days_of_week: List[int] = field(default_factory=list)
    description: str = ""

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "TrainingRule":
        month = int(raw.get("month", 0))
        if not 0 <= month <= 11:
            raise ValueError(f"Ugyldig måned i treningsregel: {month}")

        days: List[int] = []
        for value in raw.get("daysOfWeek") or []:
            day = int(value)
            if not 0 <= day <= 6:
                raise ValueError(f"Ugyldig ukedag i treningsregel: {day}")
            days.append(day)

        return cls(
            id=str(raw.get("id") or ""),
            month=month,
            days_of_week=days,
            description=str(raw.get("description") or ""),
        )


def weekday_index(day: dt.date) -> int:
    """Weekday with Sunday = 0, the convention used by the training rules."""

    return (day.weekday() + 1) % 7


def training_days(
    year: int,
    rules: Iterable[TrainingRule],
    today: dt.date | None = None,
    include_past: bool = False,
) -> List[str]:
    """Every ISO date in ``year`` that one of the rules marks as a training day."""

    today = today or dt.date.today()
    days: set[str] = set()

    for rule in rules:
        month = rule.month + 1
        _, days_in_month = calendar.monthrange(year, month)
        for day_number in range(1, days_in_month + 1):
            current = dt.date(year, month, day_number)
            if weekday_index(current) not in rule.days_of_week:
                continue
            if not include_past and current < today:
                continue
            days.add(current.isoformat())

    return sorted(days)


def training_days_from_settings(
    settings: Dict[str, Any],
    today: dt.date | None = None,
    include_past: bool = False,
) -> List[str]:
    year = int(settings.get("year") or (today or dt.date.today()).year)
    rules = [TrainingRule.from_dict(raw) for raw in settings.get("rules") or [] if isinstance(raw, dict)]
    return training_days(year, rules, today=today, include_past=include_past)
