from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from app import main as main_module
from kartpass_core import DataStore, PairingManager
from kartpass_core.report import UTF8_BOM
from kartpass_core.zettle import INVALID_STATE, ZettleClient

ADMIN = {"id": "admin-1", "email": "admin@example.com", "role": "admin"}
MEMBER = {"id": "uid-1", "email": "alice@example.com", "role": "driver"}

DRIVER_PAYLOAD = {
    "rfid": "04:A3:FF",
    "name": "Alice Hansen",
    "dob": "07.03.2010",
    "club": "Moss MK",
    "klasse": "Mini",
}


class _HangingSocket:
    def __init__(self) -> None:
        self.closed = False
        self._closed = asyncio.Event()

    def __aiter__(self) -> "_HangingSocket":
        return self

    async def __anext__(self) -> Any:
        await self._closed.wait()
        raise StopAsyncIteration

    async def close(self) -> None:
        self.closed = True
        self._closed.set()


class _OfferingZettle:
    def create_link_offer(self) -> Dict[str, str]:
        return {"code": "ABC123", "webSocketUrl": "wss://reader.example/ws"}


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch):
    for name in ("FIREBASE_PROJECT_ID", "FIREBASE_API_KEY", "FIREBASE_CLIENT_EMAIL", "FIREBASE_PRIVATE_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ZETTLE_CLIENT_ID", "client-123")
    yield
    main_module.app.dependency_overrides.clear()


@pytest.fixture
def store(tmp_path, monkeypatch: pytest.MonkeyPatch) -> DataStore:
    data_store = DataStore(data_dir=tmp_path)
    monkeypatch.setattr(main_module, "store", lambda: data_store)
    monkeypatch.setattr(main_module, "zettle", lambda: ZettleClient(data_store))
    return data_store


@pytest.fixture
def client(store: DataStore):
    with TestClient(main_module.app) as test_client:
        yield test_client


def _as(user: Dict[str, Any]) -> None:
    main_module.app.dependency_overrides[main_module.require_user] = lambda: user


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_admin_routes_require_token(client: TestClient) -> None:
    response = client.get("/drivers")

    assert response.status_code == 401


def test_admin_routes_reject_members(client: TestClient) -> None:
    _as(MEMBER)

    assert client.get("/drivers").status_code == 403
    assert client.get("/reports/attendance").status_code == 403


def test_register_creates_driver_and_rejects_duplicate_email(client: TestClient) -> None:
    payload = {**DRIVER_PAYLOAD, "email": "alice@example.com", "password": "secret1"}

    created = client.post("/register", json=payload)

    assert created.status_code == 201
    body = created.json()
    assert body["rfid"] == "04a3ff"
    assert body["dob"] == "2010-03-07"
    assert body["role"] == "driver"
    assert body["isMinor"] is True
    assert "password" not in body

    duplicate = client.post("/register", json={**payload, "rfid": "9999"})
    assert duplicate.status_code == 400
    assert "finnes allerede" in duplicate.json()["detail"]


def test_member_can_only_read_own_driver(client: TestClient, store: DataStore) -> None:
    store.create_driver(DRIVER_PAYLOAD, "uid-1")
    store.create_driver({**DRIVER_PAYLOAD, "rfid": "5555", "name": "Bob"}, "uid-2")
    _as(MEMBER)

    assert client.get("/drivers/uid-1").json()["name"] == "Alice Hansen"
    assert client.get("/drivers/uid-2").status_code == 403


def test_member_cannot_grant_season_pass(client: TestClient, store: DataStore) -> None:
    store.create_driver(DRIVER_PAYLOAD, "uid-1")
    _as(MEMBER)

    response = client.put("/drivers/uid-1", json={"hasSeasonPass": True, "klasse": "Junior"})

    assert response.status_code == 200
    assert response.json()["hasSeasonPass"] is False
    assert response.json()["klasse"] == "Junior"


def test_checkin_flow_and_reports(client: TestClient, store: DataStore) -> None:
    _as(ADMIN)
    driver = client.post("/drivers", json=DRIVER_PAYLOAD).json()

    scanned = client.get("/drivers/by-rfid/04-a3-ff")
    assert scanned.json()["id"] == driver["id"]
    assert client.get("/drivers/by-rfid/unknown").status_code == 404

    checkin = client.post("/checkins/training", json={"driverId": driver["id"]})
    assert checkin.status_code == 201
    assert checkin.json()["amountPaid"] == 250

    one_time = client.post("/checkins/one-time", json={"name": "Gjest", "licenseNumber": "L-1", "amount": 100})
    assert one_time.json()["paymentStatus"] == "one_time_license"

    today = client.get("/checkins").json()["checkins"]
    assert len(today) == 2

    report = client.get("/reports/attendance").json()
    assert report["summary"] == {"trainingCheckins": 2, "raceCheckins": 0, "uniqueDrivers": 2}
    assert [row["name"] for row in report["drivers"]] == ["Alice Hansen"]
    assert report["availableYears"] == [report["year"]]

    csv_response = client.get("/reports/attendance.csv", params={"year": report["year"]})
    assert csv_response.status_code == 200
    assert csv_response.headers["content-type"].startswith("text/csv")
    assert "filename*=UTF-8''rapport-oppm%C3%B8te-" in csv_response.headers["content-disposition"]
    text = csv_response.content.decode("utf-8")
    assert text.startswith(UTF8_BOM)
    assert text.split("\n")[1] == "Alice Hansen,Moss MK,1,0,1,250"


def test_checkin_for_unknown_driver_is_404(client: TestClient) -> None:
    _as(ADMIN)

    response = client.post("/checkins/training", json={"driverId": "missing"})

    assert response.status_code == 404


def test_race_signup_flow(client: TestClient, store: DataStore) -> None:
    store.create_driver(DRIVER_PAYLOAD, "uid-1")
    _as(ADMIN)
    race = client.post("/races", json={
        "name": "Vårløpet",
        "date": "2024-06-08",
        "entryFee": 500,
        "classFees": [{"klasse": "Mini", "fee": 300}],
    }).json()
    assert race["status"] == "upcoming"

    _as(MEMBER)
    signup = client.post("/race-signups", json={"raceId": race["id"], "driverId": "uid-1"})
    assert signup.status_code == 201
    duplicate = client.post("/race-signups", json={"raceId": race["id"], "driverId": "uid-1"})
    assert duplicate.status_code == 400
    assert client.post("/race-signups", json={"raceId": race["id"], "driverId": "uid-2"}).status_code == 403

    _as(ADMIN)
    signups = client.get(f"/races/{race['id']}/signups").json()["signups"]
    assert signups[0]["driver"]["id"] == "uid-1"

    checkin = client.post("/checkins/race", json={"signupId": signup.json()["id"]})
    assert checkin.json()["amountPaid"] == 300
    assert checkin.json()["eventName"] == "Vårløpet"

    assert client.post("/race-signups", json={"raceId": "missing", "driverId": "uid-1"}).status_code == 404


def test_training_settings_and_days(client: TestClient) -> None:
    _as(ADMIN)

    saved = client.put("/training-settings", json={"year": 2024, "rules": [{"month": 5, "daysOfWeek": [3]}]})
    assert saved.status_code == 200

    days = client.get("/training-days", params={"includePast": True}).json()
    assert days == {"year": 2024, "days": ["2024-06-05", "2024-06-12", "2024-06-19", "2024-06-26"]}


def test_training_signup_delete_checks_owner(client: TestClient, store: DataStore) -> None:
    store.create_driver(DRIVER_PAYLOAD, "uid-1")
    signup = store.create_training_signup({"driverId": "uid-1", "trainingDate": "2024-06-05"})
    _as({**MEMBER, "id": "uid-2"})

    assert client.delete(f"/training-signups/{signup['id']}").status_code == 403

    _as(MEMBER)
    duplicate = client.post("/training-signups", json={"driverId": "uid-1", "trainingDate": "2024-06-05"})
    assert duplicate.status_code == 400
    assert client.delete(f"/training-signups/{signup['id']}").status_code == 204
    assert store.fetch_training_signups_by_driver("uid-1") == []


def test_site_settings_patch(client: TestClient) -> None:
    assert client.get("/site-settings").json() == {}

    _as(ADMIN)
    client.patch("/site-settings", json={"trainingPrice": 300})

    assert client.get("/site-settings").json() == {"trainingPrice": 300}


def test_zettle_connect_sets_cookies(client: TestClient) -> None:
    _as(ADMIN)

    response = client.get("/admin/zettle/connect")

    assert response.status_code == 200
    assert response.json()["authorizeUrl"].startswith("https://oauth.zettle.com/authorize?")
    assert response.cookies.get("zettle_oauth_state")
    assert response.cookies.get("zettle_oauth_verifier")


def test_zettle_callback_with_bad_state_clears_cookies(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as(ADMIN)
    exchanges: List[str] = []
    monkeypatch.setattr(ZettleClient, "exchange_code", lambda self, code, verifier: exchanges.append(code))
    client.cookies.set("zettle_oauth_state", "expected")
    client.cookies.set("zettle_oauth_verifier", "verifier-1")

    response = client.get("/admin/zettle/callback", params={"code": "abc", "state": "forged"})

    assert response.status_code == 400
    assert response.json() == {"success": False, "message": INVALID_STATE}
    assert exchanges == []
    cleared = response.headers.get_list("set-cookie")
    assert any(header.startswith("zettle_oauth_state=") for header in cleared)
    assert any(header.startswith("zettle_oauth_verifier=") for header in cleared)


def test_zettle_callback_success(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as(ADMIN)
    exchanges: List[str] = []
    monkeypatch.setattr(ZettleClient, "exchange_code", lambda self, code, verifier: exchanges.append(verifier))
    client.cookies.set("zettle_oauth_state", "expected")
    client.cookies.set("zettle_oauth_verifier", "verifier-1")

    response = client.get("/admin/zettle/callback", params={"code": "abc", "state": "expected"})

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert exchanges == ["verifier-1"]


def test_pairing_start_and_cancel(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as(ADMIN)
    socket = _HangingSocket()

    async def connect(url: str) -> _HangingSocket:
        return socket

    manager = PairingManager(connect=connect)
    monkeypatch.setattr(main_module, "pairing_manager", lambda: manager)
    monkeypatch.setattr(main_module, "zettle", lambda: _OfferingZettle())

    started = client.post("/admin/zettle/pairing")
    assert started.status_code == 201
    body = started.json()
    assert body["state"] == "waiting_for_code"
    assert body["code"] == "ABC123"

    status = client.get(f"/admin/zettle/pairing/{body['sessionId']}").json()
    assert status["state"] == "waiting_for_code"
    assert client.post(f"/admin/zettle/pairing/{body['sessionId']}/save").status_code == 409

    assert client.delete(f"/admin/zettle/pairing/{body['sessionId']}").status_code == 204
    assert socket.closed
    assert client.get(f"/admin/zettle/pairing/{body['sessionId']}").status_code == 404
