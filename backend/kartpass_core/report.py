from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from .checkin import is_one_time_driver

CSV_HEADERS = [
    "Navn",
    "Klubb",
    "Antall Treninger",
    "Antall Løp",
    "Totalt Oppmøte",
    "Totalt Innbetalt (kr)",
]

UTF8_BOM = "\ufeff"


@dataclass
class DriverStat:
    driver_id: str
    name: str
    club: str
    training: int = 0
    races: int = 0
    total_paid: float = 0

    @property
    def total(self) -> int:
        return self.training + self.races


@dataclass
class ReportSummary:
    training_checkins: int = 0
    race_checkins: int = 0
    unique_drivers: int = 0


@dataclass
class AttendanceReport:
    year: int
    summary: ReportSummary = field(default_factory=ReportSummary)
    drivers: List[DriverStat] = field(default_factory=list)

    def filename(self) -> str:
        return f"rapport-oppmøte-{self.year}.csv"


def checkin_year(checkin: Dict[str, Any]) -> int | None:
    raw = str(checkin.get("checkinDate") or "")
    try:
        return int(raw[:4])
    except ValueError:
        return None


def available_years(checkins: Iterable[Dict[str, Any]]) -> List[int]:
    years = {year for year in (checkin_year(c) for c in checkins) if year is not None}
    return sorted(years, reverse=True)


def build_attendance_report(
    checkins: Iterable[Dict[str, Any]],
    drivers: Iterable[Dict[str, Any]],
    year: int,
) -> AttendanceReport:
    """Aggregate check-in history for ``year`` per driver.

    Only drivers present in ``drivers`` get a row; check-ins from one-time
    licenses or deleted drivers still count towards the summary. Rows are
    ordered by total attendance, highest first, keeping driver order on ties.
    """

    filtered = [c for c in checkins if checkin_year(c) == year]

    summary = ReportSummary(
        training_checkins=sum(1 for c in filtered if c.get("eventType") == "training"),
        race_checkins=sum(1 for c in filtered if c.get("eventType") == "race"),
        unique_drivers=len({c.get("driverId") for c in filtered}),
    )

    stats: Dict[str, DriverStat] = {}
    for driver in drivers:
        driver_id = str(driver.get("id") or "")
        if not driver_id:
            continue
        stats[driver_id] = DriverStat(
            driver_id=driver_id,
            name=str(driver.get("name") or ""),
            club=str(driver.get("club") or ""),
        )

    for checkin in filtered:
        driver_id = str(checkin.get("driverId") or "")
        if is_one_time_driver(driver_id):
            continue
        stat = stats.get(driver_id)
        if stat is None:
            continue
        event_type = checkin.get("eventType")
        if event_type == "training":
            stat.training += 1
        elif event_type == "race":
            stat.races += 1
        stat.total_paid += checkin.get("amountPaid") or 0

    rows = [s for s in stats.values() if s.training > 0 or s.races > 0 or s.total_paid > 0]
    rows.sort(key=lambda s: s.total, reverse=True)

    return AttendanceReport(year=year, summary=summary, drivers=rows)


def _format_amount(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def report_to_csv(report: AttendanceReport) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for stat in report.drivers:
        writer.writerow([
            stat.name,
            stat.club,
            stat.training,
            stat.races,
            stat.total,
            _format_amount(stat.total_paid),
        ])
    # no trailing newline after the last row
    return UTF8_BOM + buf.getvalue().rstrip("\n")
