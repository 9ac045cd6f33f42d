from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
import secrets
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from fastapi import Cookie, Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from kartpass_core import (
    DataStore,
    PairingManager,
    SheetsClient,
    ZettleClient,
    build_attendance_report,
    handle_oauth_callback,
    report_to_csv,
)
from kartpass_core.driver import calculate_age, is_minor
from kartpass_core.loader import IDENTITY_TOOLKIT_URL
from kartpass_core.report import available_years
from kartpass_core.training import training_days_from_settings
from kartpass_core.zettle import generate_pkce_pair

logger = logging.getLogger(__name__)

STATE_COOKIE = "zettle_oauth_state"
VERIFIER_COOKIE = "zettle_oauth_verifier"
OAUTH_COOKIE_MAX_AGE = 600

NOT_FOUND_MESSAGES = {
    "Fører ikke funnet",
    "Løpet finnes ikke.",
    "Påmelding ikke funnet.",
    "Paringsøkten ble ikke funnet",
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    await pairing_manager().close_all()


app = FastAPI(title="KartPass Club API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in os.getenv("KARTPASS_CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class GuardianModel(BaseModel):
    id: Optional[str] = None
    name: str
    contact: str
    licenses: List[str] = Field(default_factory=list)


class DriverFields(BaseModel):
    email: Optional[str] = None
    klasse: Optional[str] = None
    start_nr: Optional[str] = Field(default=None, alias="startNr")
    transponder_nr: Optional[str] = Field(default=None, alias="transponderNr")
    chassi_nr: Optional[str] = Field(default=None, alias="chassiNr")
    motor_nr1: Optional[str] = Field(default=None, alias="motorNr1")
    motor_nr2: Optional[str] = Field(default=None, alias="motorNr2")
    driver_license: Optional[str] = Field(default=None, alias="driverLicense")
    vehicle_license: Optional[str] = Field(default=None, alias="vehicleLicense")
    team_license: Optional[str] = Field(default=None, alias="teamLicense")
    has_season_pass: bool = Field(default=False, alias="hasSeasonPass")
    guardians: List[GuardianModel] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class DriverPayload(DriverFields):
    rfid: str
    name: str
    dob: str = Field(description="YYYY-MM-DD or DD.MM.YYYY")
    club: str


class DriverCreatePayload(DriverPayload):
    password: Optional[str] = Field(default=None, description="Creates a login when set together with email")


class RegisterPayload(DriverPayload):
    email: str
    password: str


class DriverUpdatePayload(DriverFields):
    rfid: Optional[str] = None
    name: Optional[str] = None
    dob: Optional[str] = None
    club: Optional[str] = None
    has_season_pass: Optional[bool] = Field(default=None, alias="hasSeasonPass")
    guardians: Optional[List[GuardianModel]] = None


class DriverModel(DriverFields):
    id: str
    rfid: str
    name: str
    dob: str
    club: str
    role: str = "driver"
    age: Optional[int] = None
    is_minor: bool = Field(default=False, alias="isMinor")


class DriverListResponse(BaseModel):
    drivers: List[DriverModel]


class TrainingCheckinRequest(BaseModel):
    driver_id: str = Field(alias="driverId")
    amount: Optional[float] = Field(default=None, ge=0)

    model_config = ConfigDict(populate_by_name=True)


class OneTimeCheckinRequest(BaseModel):
    name: str
    license_number: str = Field(alias="licenseNumber")
    amount: Optional[float] = Field(default=None, ge=0)

    model_config = ConfigDict(populate_by_name=True)


class RaceCheckinRequest(BaseModel):
    signup_id: str = Field(alias="signupId")
    amount: Optional[float] = Field(default=None, ge=0, description="Overrides the computed race fee")

    model_config = ConfigDict(populate_by_name=True)


class CheckinModel(BaseModel):
    id: str
    driver_id: str = Field(alias="driverId")
    driver_name: str = Field(alias="driverName")
    driver_klasse: Optional[str] = Field(default=None, alias="driverKlasse")
    checkin_date: str = Field(alias="checkinDate")
    checkin_time: str = Field(alias="checkinTime")
    payment_status: str = Field(alias="paymentStatus")
    event_type: str = Field(default="training", alias="eventType")
    event_id: Optional[str] = Field(default=None, alias="eventId")
    event_name: Optional[str] = Field(default=None, alias="eventName")
    amount_paid: Optional[float] = Field(default=None, alias="amountPaid")
    license_number: Optional[str] = Field(default=None, alias="licenseNumber")

    model_config = ConfigDict(populate_by_name=True)


class CheckinListResponse(BaseModel):
    checkins: List[CheckinModel]


class ClassFeeModel(BaseModel):
    klasse: str
    fee: float = Field(ge=0)


class RacePayload(BaseModel):
    name: str
    date: dt.date
    end_date: Optional[dt.date] = Field(default=None, alias="endDate")
    description: str = ""
    available_classes: List[str] = Field(default_factory=list, alias="availableClasses")
    entry_fee: Optional[float] = Field(default=None, ge=0, alias="entryFee")
    camping_fee: Optional[float] = Field(default=None, ge=0, alias="campingFee")
    class_fees: List[ClassFeeModel] = Field(default_factory=list, alias="classFees")

    model_config = ConfigDict(populate_by_name=True)


class RaceUpdatePayload(BaseModel):
    name: Optional[str] = None
    date: Optional[dt.date] = None
    end_date: Optional[dt.date] = Field(default=None, alias="endDate")
    description: Optional[str] = None
    available_classes: Optional[List[str]] = Field(default=None, alias="availableClasses")
    entry_fee: Optional[float] = Field(default=None, ge=0, alias="entryFee")
    camping_fee: Optional[float] = Field(default=None, ge=0, alias="campingFee")
    class_fees: Optional[List[ClassFeeModel]] = Field(default=None, alias="classFees")
    status: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class RaceModel(BaseModel):
    id: str
    name: str
    date: str
    end_date: Optional[str] = Field(default=None, alias="endDate")
    description: str = ""
    status: str = "upcoming"
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    available_classes: List[str] = Field(default_factory=list, alias="availableClasses")
    entry_fee: Optional[float] = Field(default=None, alias="entryFee")
    camping_fee: Optional[float] = Field(default=None, alias="campingFee")
    class_fees: List[ClassFeeModel] = Field(default_factory=list, alias="classFees")

    model_config = ConfigDict(populate_by_name=True)


class RaceListResponse(BaseModel):
    races: List[RaceModel]


class RaceSignupRequest(BaseModel):
    race_id: str = Field(alias="raceId")
    driver_id: str = Field(alias="driverId")
    driver_klasse: Optional[str] = Field(default=None, alias="driverKlasse")
    wants_camping: bool = Field(default=False, alias="wantsCamping")

    model_config = ConfigDict(populate_by_name=True)


class RaceSignupModel(BaseModel):
    id: str
    race_id: str = Field(alias="raceId")
    driver_id: str = Field(alias="driverId")
    driver_name: str = Field(default="", alias="driverName")
    driver_klasse: Optional[str] = Field(default=None, alias="driverKlasse")
    signed_up_at: Optional[str] = Field(default=None, alias="signedUpAt")
    wants_camping: bool = Field(default=False, alias="wantsCamping")
    driver: Optional[DriverModel] = None

    model_config = ConfigDict(populate_by_name=True)


class RaceSignupListResponse(BaseModel):
    signups: List[RaceSignupModel]


class TrainingSignupRequest(BaseModel):
    driver_id: str = Field(alias="driverId")
    training_date: dt.date = Field(alias="trainingDate")

    model_config = ConfigDict(populate_by_name=True)


class TrainingSignupModel(BaseModel):
    id: str
    driver_id: str = Field(alias="driverId")
    driver_name: str = Field(default="", alias="driverName")
    driver_klasse: Optional[str] = Field(default=None, alias="driverKlasse")
    training_date: str = Field(alias="trainingDate")
    signed_up_at: Optional[str] = Field(default=None, alias="signedUpAt")

    model_config = ConfigDict(populate_by_name=True)


class TrainingSignupListResponse(BaseModel):
    signups: List[TrainingSignupModel]


class TrainingRuleModel(BaseModel):
    id: Optional[str] = None
    month: int = Field(ge=0, le=11)
    days_of_week: List[int] = Field(default_factory=list, alias="daysOfWeek")
    description: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class TrainingSettingsModel(BaseModel):
    id: str = "main"
    year: int
    rules: List[TrainingRuleModel] = Field(default_factory=list)


class TrainingDaysResponse(BaseModel):
    year: int
    days: List[str]


class SiteSettingsModel(BaseModel):
    training_price: Optional[float] = Field(default=None, ge=0, alias="trainingPrice")
    zettle_client_id: Optional[str] = Field(default=None, alias="zettleClientId")
    zettle_link_id: Optional[str] = Field(default=None, alias="zettleLinkId")
    logo_url: Optional[str] = Field(default=None, alias="logoUrl")

    model_config = ConfigDict(populate_by_name=True)


class ReportDriverModel(BaseModel):
    driver_id: str = Field(alias="driverId")
    name: str
    club: str
    training: int
    races: int
    total: int
    total_paid: float = Field(alias="totalPaid")

    model_config = ConfigDict(populate_by_name=True)


class ReportSummaryModel(BaseModel):
    training_checkins: int = Field(alias="trainingCheckins")
    race_checkins: int = Field(alias="raceCheckins")
    unique_drivers: int = Field(alias="uniqueDrivers")

    model_config = ConfigDict(populate_by_name=True)


class AttendanceReportResponse(BaseModel):
    year: int
    available_years: List[int] = Field(alias="availableYears")
    summary: ReportSummaryModel
    drivers: List[ReportDriverModel]

    model_config = ConfigDict(populate_by_name=True)


class OAuthCallbackResponse(BaseModel):
    success: bool
    message: str


class PaymentLinkRequest(BaseModel):
    amount: int = Field(gt=0, description="Amount in øre")
    reference: str


class PaymentLinkResponse(BaseModel):
    url: str
    qr_code: str = Field(alias="qrCode")

    model_config = ConfigDict(populate_by_name=True)


class PairingResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    state: str
    code: Optional[str] = None
    link_id: Optional[str] = Field(default=None, alias="linkId")
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class ImportSummaryResponse(BaseModel):
    created: int
    updated: int
    errors: List[str] = Field(default_factory=list)


@lru_cache(maxsize=1)
def store() -> DataStore:
    return DataStore()


@lru_cache(maxsize=1)
def zettle() -> ZettleClient:
    return ZettleClient(store())


@lru_cache(maxsize=1)
def pairing_manager() -> PairingManager:
    return PairingManager()


def sheets() -> SheetsClient:
    return SheetsClient()


def _driver_model(record: Dict[str, Any]) -> DriverModel:
    dob = str(record.get("dob") or "")
    today = store().now().date()
    return DriverModel(**record, age=calculate_age(dob, today), isMinor=is_minor(dob, today))


def _value_error(exc: ValueError) -> HTTPException:
    status = 404 if str(exc) in NOT_FOUND_MESSAGES else 400
    return HTTPException(status_code=status, detail=str(exc))


def require_user(authorization: str = Header(default="")) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authorization token is required")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Authorization token is required")

    api_key = os.getenv("FIREBASE_API_KEY", "")
    if not api_key:
        raise HTTPException(status_code=500, detail="Firebase configuration is incomplete")

    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.post(
                f"{IDENTITY_TOOLKIT_URL}/accounts:lookup",
                params={"key": api_key},
                json={"idToken": token},
            )
            response.raise_for_status()
            payload = response.json()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response else 502
        if status in (400, 401, 403):
            raise HTTPException(status_code=401, detail="Invalid authentication token") from exc
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc

    users = payload.get("users") if isinstance(payload, dict) else None
    account = users[0] if users else {}
    user_id = str(account.get("localId") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    try:
        driver = store().fetch_driver(user_id) or {}
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return {"id": user_id, "email": account.get("email"), "role": driver.get("role", "driver")}


def require_admin(user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Administrator access required")
    return user


def _ensure_self_or_admin(user: Dict[str, Any], driver_id: str) -> None:
    if user.get("role") != "admin" and user.get("id") != driver_id:
        raise HTTPException(status_code=403, detail="Du har ikke tilgang til denne føreren.")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Drivers


@app.get("/drivers", response_model=DriverListResponse)
def list_drivers(_: Dict[str, Any] = Depends(require_admin)):
    try:
        drivers = store().fetch_drivers()
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return DriverListResponse(drivers=[_driver_model(driver) for driver in drivers])


@app.get("/drivers/by-rfid/{rfid}", response_model=DriverModel)
def driver_by_rfid(rfid: str, _: Dict[str, Any] = Depends(require_admin)):
    try:
        driver = store().fetch_driver_by_rfid(rfid)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if not driver:
        raise HTTPException(status_code=404, detail="Ingen fører med dette kortet")
    return _driver_model(driver)


@app.get("/drivers/{driver_id}", response_model=DriverModel)
def get_driver(driver_id: str, user: Dict[str, Any] = Depends(require_user)):
    _ensure_self_or_admin(user, driver_id)
    try:
        driver = store().fetch_driver(driver_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if not driver:
        raise HTTPException(status_code=404, detail="Fører ikke funnet")
    return _driver_model(driver)


@app.post("/drivers", response_model=DriverModel, status_code=201)
def create_driver(payload: DriverCreatePayload, _: Dict[str, Any] = Depends(require_admin)):
    data = payload.model_dump(by_alias=True, exclude={"password"})
    try:
        if payload.password and payload.email:
            uid = store().create_auth_user(payload.email, payload.password)
        else:
            uid = secrets.token_hex(10)
        record = store().create_driver(data, uid)
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _driver_model(record)


@app.post("/register", response_model=DriverModel, status_code=201)
def register(payload: RegisterPayload):
    data = payload.model_dump(by_alias=True, exclude={"password"})
    try:
        uid = store().create_auth_user(payload.email, payload.password)
        record = store().create_driver(data, uid)
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _driver_model(record)


@app.put("/drivers/{driver_id}", response_model=DriverModel)
def update_driver(driver_id: str, payload: DriverUpdatePayload, user: Dict[str, Any] = Depends(require_user)):
    _ensure_self_or_admin(user, driver_id)
    updates = payload.model_dump(by_alias=True, exclude_unset=True)
    if user.get("role") != "admin":
        # members cannot grant themselves a season pass
        updates.pop("hasSeasonPass", None)
    try:
        record = store().update_driver(driver_id, updates)
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _driver_model(record)


@app.delete("/drivers/{driver_id}", status_code=204)
def delete_driver(driver_id: str, _: Dict[str, Any] = Depends(require_admin)):
    try:
        store().delete_driver(driver_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Check-ins


@app.get("/checkins", response_model=CheckinListResponse)
def list_checkins(date: Optional[dt.date] = Query(default=None), _: Dict[str, Any] = Depends(require_admin)):
    target = date.isoformat() if date else store().today()
    try:
        rows = store().fetch_checkins_for_date(target)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return CheckinListResponse(checkins=[CheckinModel(**row) for row in rows])


@app.post("/checkins/training", response_model=CheckinModel, status_code=201)
def checkin_training(payload: TrainingCheckinRequest, _: Dict[str, Any] = Depends(require_admin)):
    try:
        record = store().check_in_training(payload.driver_id, amount=payload.amount)
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return CheckinModel(**record)


@app.post("/checkins/one-time", response_model=CheckinModel, status_code=201)
def checkin_one_time(payload: OneTimeCheckinRequest, _: Dict[str, Any] = Depends(require_admin)):
    try:
        record = store().check_in_one_time(payload.name, payload.license_number, amount=payload.amount)
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return CheckinModel(**record)


@app.post("/checkins/race", response_model=CheckinModel, status_code=201)
def checkin_race(payload: RaceCheckinRequest, _: Dict[str, Any] = Depends(require_admin)):
    try:
        record = store().check_in_race(payload.signup_id, amount=payload.amount)
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return CheckinModel(**record)


@app.delete("/checkins/{entry_id}", status_code=204)
def delete_checkin(entry_id: str, _: Dict[str, Any] = Depends(require_admin)):
    try:
        store().delete_checkin(entry_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Races & race signups


@app.get("/races", response_model=RaceListResponse)
def list_races():
    try:
        races = store().fetch_races()
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return RaceListResponse(races=[RaceModel(**race) for race in races])


@app.get("/races/active", response_model=RaceListResponse)
def active_races(date: Optional[dt.date] = Query(default=None)):
    target = date.isoformat() if date else store().today()
    try:
        races = store().fetch_races_for_date(target)
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return RaceListResponse(races=[RaceModel(**race) for race in races])


@app.get("/races/{race_id}", response_model=RaceModel)
def get_race(race_id: str):
    try:
        race = store().fetch_race(race_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    if not race:
        raise HTTPException(status_code=404, detail="Løpet finnes ikke.")
    return RaceModel(**race)


@app.post("/races", response_model=RaceModel, status_code=201)
def create_race(payload: RacePayload, _: Dict[str, Any] = Depends(require_admin)):
    try:
        record = store().create_race(payload.model_dump(by_alias=True, mode="json"))
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return RaceModel(**record)


@app.patch("/races/{race_id}", response_model=RaceModel)
def update_race(race_id: str, payload: RaceUpdatePayload, _: Dict[str, Any] = Depends(require_admin)):
    try:
        record = store().update_race(race_id, payload.model_dump(by_alias=True, exclude_unset=True, mode="json"))
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return RaceModel(**record)


@app.delete("/races/{race_id}", status_code=204)
def delete_race(race_id: str, _: Dict[str, Any] = Depends(require_admin)):
    try:
        store().delete_race(race_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return Response(status_code=204)


@app.get("/races/{race_id}/signups", response_model=RaceSignupListResponse)
def race_signups(race_id: str, _: Dict[str, Any] = Depends(require_admin)):
    try:
        signups = store().fetch_race_signups_with_drivers(race_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return RaceSignupListResponse(signups=[RaceSignupModel(**signup) for signup in signups])


@app.get("/race-signups", response_model=RaceSignupListResponse)
def driver_race_signups(driver_id: str = Query(alias="driverId"), user: Dict[str, Any] = Depends(require_user)):
    _ensure_self_or_admin(user, driver_id)
    try:
        signups = store().fetch_race_signups_by_driver(driver_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return RaceSignupListResponse(signups=[RaceSignupModel(**signup) for signup in signups])


@app.post("/race-signups", response_model=RaceSignupModel, status_code=201)
def create_race_signup(payload: RaceSignupRequest, user: Dict[str, Any] = Depends(require_user)):
    _ensure_self_or_admin(user, payload.driver_id)
    try:
        record = store().create_race_signup(payload.model_dump(by_alias=True, exclude_unset=True))
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return RaceSignupModel(**record)


@app.delete("/race-signups/{signup_id}", status_code=204)
def delete_race_signup(signup_id: str, user: Dict[str, Any] = Depends(require_user)):
    try:
        signup = store().fetch_race_signup(signup_id)
        if signup:
            _ensure_self_or_admin(user, str(signup.get("driverId") or ""))
            store().delete_race_signup(signup_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Training


@app.get("/training-settings", response_model=TrainingSettingsModel)
def get_training_settings():
    try:
        settings = store().fetch_training_settings()
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return TrainingSettingsModel(**settings)


@app.put("/training-settings", response_model=TrainingSettingsModel)
def put_training_settings(payload: TrainingSettingsModel, _: Dict[str, Any] = Depends(require_admin)):
    try:
        settings = store().update_training_settings(payload.model_dump(by_alias=True, exclude_none=True))
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return TrainingSettingsModel(**settings)


@app.get("/training-days", response_model=TrainingDaysResponse)
def training_days(include_past: bool = Query(default=False, alias="includePast")):
    try:
        settings = store().fetch_training_settings()
        days = training_days_from_settings(settings, today=store().now().date(), include_past=include_past)
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return TrainingDaysResponse(year=int(settings.get("year") or store().now().year), days=days)


@app.get("/training-signups", response_model=TrainingSignupListResponse)
def list_training_signups(
    date: Optional[dt.date] = Query(default=None),
    driver_id: Optional[str] = Query(default=None, alias="driverId"),
    user: Dict[str, Any] = Depends(require_user),
):
    try:
        if driver_id:
            _ensure_self_or_admin(user, driver_id)
            signups = store().fetch_training_signups_by_driver(driver_id)
        else:
            if user.get("role") != "admin":
                raise HTTPException(status_code=403, detail="Administrator access required")
            target = date.isoformat() if date else store().today()
            signups = store().fetch_training_signups(target)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return TrainingSignupListResponse(signups=[TrainingSignupModel(**signup) for signup in signups])


@app.post("/training-signups", response_model=TrainingSignupModel, status_code=201)
def create_training_signup(payload: TrainingSignupRequest, user: Dict[str, Any] = Depends(require_user)):
    _ensure_self_or_admin(user, payload.driver_id)
    try:
        record = store().create_training_signup(payload.model_dump(by_alias=True, mode="json"))
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return TrainingSignupModel(**record)


@app.delete("/training-signups/{signup_id}", status_code=204)
def delete_training_signup(signup_id: str, user: Dict[str, Any] = Depends(require_user)):
    try:
        signup = store().fetch_training_signup(signup_id)
        if signup:
            _ensure_self_or_admin(user, str(signup.get("driverId") or ""))
            store().delete_training_signup(signup_id)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Site settings


@app.get("/site-settings", response_model=SiteSettingsModel, response_model_exclude_none=True)
def get_site_settings():
    try:
        settings = store().fetch_site_settings()
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return SiteSettingsModel(**settings)


@app.patch("/site-settings", response_model=SiteSettingsModel, response_model_exclude_none=True)
def patch_site_settings(payload: SiteSettingsModel, _: Dict[str, Any] = Depends(require_admin)):
    try:
        settings = store().update_site_settings(payload.model_dump(by_alias=True, exclude_unset=True))
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return SiteSettingsModel(**settings)


# ---------------------------------------------------------------------------
# Reports


def _attendance(year: Optional[int]):
    try:
        checkins = store().fetch_all_checkins()
        drivers = store().fetch_drivers()
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    years = available_years(checkins)
    if year is None:
        year = years[0] if years else store().now().year
    return build_attendance_report(checkins, drivers, year), years


@app.get("/reports/attendance", response_model=AttendanceReportResponse)
def attendance_report(year: Optional[int] = Query(default=None), _: Dict[str, Any] = Depends(require_admin)):
    report, years = _attendance(year)
    return AttendanceReportResponse(
        year=report.year,
        availableYears=years,
        summary=ReportSummaryModel(
            trainingCheckins=report.summary.training_checkins,
            raceCheckins=report.summary.race_checkins,
            uniqueDrivers=report.summary.unique_drivers,
        ),
        drivers=[
            ReportDriverModel(
                driverId=stat.driver_id,
                name=stat.name,
                club=stat.club,
                training=stat.training,
                races=stat.races,
                total=stat.total,
                totalPaid=stat.total_paid,
            )
            for stat in report.drivers
        ],
    )


@app.get("/reports/attendance.csv")
def attendance_report_csv(year: Optional[int] = Query(default=None), _: Dict[str, Any] = Depends(require_admin)):
    report, _years = _attendance(year)
    filename = report.filename()
    ascii_name = filename.replace("ø", "o")
    return Response(
        content=report_to_csv(report).encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}",
        },
    )


# ---------------------------------------------------------------------------
# Zettle


@app.get("/admin/zettle/connect")
def zettle_connect(request: Request, _: Dict[str, Any] = Depends(require_admin)):
    state = secrets.token_urlsafe(24)
    verifier, _challenge = generate_pkce_pair()
    try:
        authorize_url = zettle().authorize_url(state, verifier)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    response = JSONResponse({"authorizeUrl": authorize_url})
    secure = request.url.scheme == "https"
    for name, value in ((STATE_COOKIE, state), (VERIFIER_COOKIE, verifier)):
        response.set_cookie(
            name,
            value,
            max_age=OAUTH_COOKIE_MAX_AGE,
            httponly=True,
            secure=secure,
            samesite="lax",
        )
    return response


@app.get("/admin/zettle/callback", response_model=OAuthCallbackResponse)
def zettle_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    stored_state: Optional[str] = Cookie(default=None, alias=STATE_COOKIE),
    stored_verifier: Optional[str] = Cookie(default=None, alias=VERIFIER_COOKIE),
    _: Dict[str, Any] = Depends(require_admin),
):
    result = handle_oauth_callback(
        zettle(),
        code=code,
        state=state,
        stored_state=stored_state,
        stored_verifier=stored_verifier,
        error=error,
        error_description=error_description,
    )
    response = JSONResponse(
        OAuthCallbackResponse(success=result.success, message=result.message).model_dump(),
        status_code=200 if result.success else 400,
    )
    response.delete_cookie(STATE_COOKIE)
    response.delete_cookie(VERIFIER_COOKIE)
    return response


@app.post("/admin/zettle/payment-links", response_model=PaymentLinkResponse)
def zettle_payment_link(payload: PaymentLinkRequest, _: Dict[str, Any] = Depends(require_admin)):
    try:
        link = zettle().create_payment_link(payload.amount, payload.reference)
    except ValueError as exc:
        raise _value_error(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return PaymentLinkResponse(**link)


@app.post("/admin/zettle/pairing", response_model=PairingResponse, status_code=201)
async def start_pairing(_: Dict[str, Any] = Depends(require_admin)):
    session_id, session = await pairing_manager().create(zettle())
    snapshot = await session.start()
    return PairingResponse(sessionId=session_id, **snapshot)


@app.get("/admin/zettle/pairing/{session_id}", response_model=PairingResponse)
async def pairing_status(session_id: str, _: Dict[str, Any] = Depends(require_admin)):
    try:
        session = pairing_manager().get(session_id)
    except ValueError as exc:
        raise _value_error(exc) from exc
    return PairingResponse(sessionId=session_id, **session.snapshot())


@app.post("/admin/zettle/pairing/{session_id}/save", response_model=SiteSettingsModel, response_model_exclude_none=True)
async def save_pairing(session_id: str, _: Dict[str, Any] = Depends(require_admin)):
    try:
        session = pairing_manager().get(session_id)
    except ValueError as exc:
        raise _value_error(exc) from exc
    if not session.link_id:
        raise HTTPException(status_code=409, detail="Ingen terminal er koblet til ennå.")
    try:
        settings = await asyncio.to_thread(store().update_site_settings, {"zettleLinkId": session.link_id})
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    await pairing_manager().close(session_id)
    return SiteSettingsModel(**settings)


@app.delete("/admin/zettle/pairing/{session_id}", status_code=204)
async def cancel_pairing(session_id: str, _: Dict[str, Any] = Depends(require_admin)):
    await pairing_manager().close(session_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Import


@app.post("/admin/import/sheets", response_model=ImportSummaryResponse)
def import_from_sheets(_: Dict[str, Any] = Depends(require_admin)):
    try:
        drivers = sheets().fetch_drivers()
        summary = store().import_drivers(drivers)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    logger.info("Imported drivers from Google Sheets: %s created, %s updated", summary["created"], summary["updated"])
    return ImportSummaryResponse(**summary)
