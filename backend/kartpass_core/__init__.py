"""Core club domain: drivers, check-ins, races, reports and Zettle pairing."""

from .loader import DataStore
from .pairing import PairingManager, PairingSession, PairingState
from .report import AttendanceReport, build_attendance_report, report_to_csv
from .sheets import SheetsClient
from .zettle import ZettleClient, handle_oauth_callback

__all__ = [
    "AttendanceReport",
    "DataStore",
    "PairingManager",
    "PairingSession",
    "PairingState",
    "SheetsClient",
    "ZettleClient",
    "build_attendance_report",
    "handle_oauth_callback",
    "report_to_csv",
]
