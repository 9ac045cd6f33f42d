"""CLI helper for upserting members from the club's Google Sheet into the driver store."""

from __future__ import annotations

import sys
from typing import Dict

from kartpass_core.loader import DataStore
from kartpass_core.sheets import SheetsClient


def _format_summary(summary: Dict[str, object]) -> str:
    created = summary.get("created", 0)
    updated = summary.get("updated", 0)
    lines = [f"Drivers: {created} created, {updated} updated"]
    errors = summary.get("errors", [])
    if isinstance(errors, list):
        for item in errors:
            lines.append(f"  - {item}")
    return "\n".join(lines)


def main() -> int:
    try:
        drivers = SheetsClient().fetch_drivers()
        summary = DataStore().import_drivers(drivers)
    except RuntimeError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    print(_format_summary(summary))
    return 1 if summary.get("errors") else 0


if __name__ == "__main__":
    raise SystemExit(main())
