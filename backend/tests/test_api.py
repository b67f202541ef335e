import json
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.routers.core as core
import database.db as db


def _seed_event() -> None:
    db.add_attendee("A101", "Ada Lovelace", "Analytical Engines")
    db.add_attendee("A102", "Grace Hopper")
    db.add_booth("B1", capacity=1)
    db.add_booth("B2", company_name="Acme")
    db.add_session(
        "S1",
        "Morning meetings",
        datetime(2026, 3, 10, 10, 0),
        datetime(2026, 3, 10, 10, 30),
        config={
            "scanningContext": "booth_meeting",
            "boothRestriction": "assigned",
            "boothIds": ["B1", "B2"],
        },
    )
    db.add_registration("A101", "S1", expected_booth_id="B1")


@pytest.fixture()
def client(tmp_path, monkeypatch):
    test_db = tmp_path / "boothscan_test.db"
    queue_db = tmp_path / "offline_queue_test.db"

    # Point both databases to temp files for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(config, "QUEUE_DB_PATH", queue_db)
    monkeypatch.setattr(config, "SYNC_ENABLED", False)
    monkeypatch.setattr(config, "STORE_MODE", "local")
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    _seed_event()

    with TestClient(main.app) as c:
        yield c


def _scan(client, attendee_id: str, *, booth_id=None, session_id=None, at="2026-03-10T10:05:00", device="dev-1"):
    payload = {"attendee_id": attendee_id, "device_id": device, "client_timestamp": at}
    if booth_id:
        payload["booth_id"] = booth_id
    if session_id:
        payload["session_id"] = session_id
    return client.post("/scans", json=payload)


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_debug_dbpath_disabled_by_default(client):
    res = client.get("/debug/dbpath")
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_when_enabled(client, monkeypatch):
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 200
    assert "db_path" in res.json()
    assert "queue_db_path" in res.json()


def test_scanning_config(client):
    res = client.get("/config/scanning")
    assert res.status_code == 200
    data = res.json()
    assert data["scan_cooldown_seconds"] == config.SCAN_COOLDOWN_SECONDS
    assert data["queue_capacity"] == config.QUEUE_CAPACITY
    assert "booth_meeting" in data["session_presets"]


def test_scan_flow_expected_wrong_booth_and_cooldown(client):
    res = _scan(client, "A101", booth_id="B1")
    assert res.status_code == 200
    expected = res.json()
    assert expected["status"] == "EXPECTED"
    assert expected["success"] is True
    assert expected["was_offline"] is False
    assert expected["session_name"] == "Morning meetings"

    res = _scan(client, "A101", booth_id="B2", at="2026-03-10T10:06:00")
    assert res.status_code == 200
    assert res.json()["status"] == "WRONG_BOOTH"
    assert res.json()["expected_booth_name"] == "B1"

    res = _scan(client, "A101", booth_id="B1", at="2026-03-10T10:06:00")
    assert res.status_code == 200
    assert res.json() == expected

    assert db.get_registration("A101", "S1").status == "Attended"
    assert len(db.get_scan_records(attendee_id="A101")) == 2


def test_unknown_attendee_returns_404(client):
    res = _scan(client, "X999", booth_id="B1")
    assert res.status_code == 404
    assert "X999" in res.json()["detail"]


def test_scan_requires_exactly_one_target(client):
    res = client.post(
        "/scans",
        json={"attendee_id": "A101", "booth_id": "B1", "session_id": "S1", "device_id": "dev-1"},
    )
    assert res.status_code == 400

    res = client.post("/scans", json={"attendee_id": "A101", "device_id": "dev-1"})
    assert res.status_code == 400


def test_device_id_from_header(client):
    res = client.post(
        "/scans",
        json={"attendee_id": "A102", "booth_id": "B2", "client_timestamp": "2026-03-10T10:10:00"},
        headers={"X-Device-Id": "tablet-7"},
    )
    assert res.status_code == 200
    assert res.json()["status"] == "WALK_IN"

    [row] = db.get_scan_records(attendee_id="A102")
    assert row["device_id"] == "tablet-7"


def test_missing_device_id_is_rejected(client):
    res = client.post("/scans", json={"attendee_id": "A101", "booth_id": "B1"})
    assert res.status_code == 400


def test_malformed_session_config_returns_409(client):
    conn = db.connect_db()
    conn.execute(
        """
        INSERT INTO sessions (id, name, start_time, end_time, config_json)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            "S9",
            "Lead capture",
            "2026-03-10 15:00:00",
            "2026-03-10 16:00:00",
            json.dumps({"scanningContext": "lead_capture"}),
        ),
    )
    conn.commit()
    conn.close()

    assert client.post("/admin/index/refresh").status_code == 200

    res = _scan(client, "A101", booth_id="B1", at="2026-03-10T15:30:00")
    assert res.status_code == 409
    assert "Lead form" in res.json()["detail"]


def test_out_of_schedule(client):
    res = _scan(client, "A101", booth_id="B1", at="2026-03-10T18:00:00")
    assert res.status_code == 200
    assert res.json()["status"] == "OUT_OF_SCHEDULE"
    assert res.json()["success"] is False


def test_queue_and_sync_endpoints(client):
    res = client.get("/scans/pending")
    assert res.status_code == 200
    assert res.json() == {"pending_count": 0, "rows": []}

    res = client.get("/scans/review")
    assert res.json() == {"total": 0, "rows": []}

    res = client.post("/sync/run")
    assert res.status_code == 200
    assert res.json()["ok"] is True
    assert res.json()["committed"] == 0

    status = client.get("/sync/status").json()
    assert status["cycles"] == 1
    assert status["pending"] == 0


def test_requeue_unknown_key_is_404(client):
    res = client.post("/admin/queue/not-a-key/requeue")
    assert res.status_code == 404


def test_occupancy_tracks_attendance(client):
    _scan(client, "A101", booth_id="B1")

    res = client.get("/admin/occupancy")
    assert res.status_code == 200
    rows = {r["booth_id"]: r for r in res.json()["rows"]}
    assert rows["B1"]["attended"] == 1
    assert rows["B1"]["at_capacity"] is True
    assert rows["B2"]["booth_name"] == "Acme"


def test_store_commit_endpoint(client):
    body = {
        "dedup_key": "remote-key-1",
        "mutation": {
            "action": "mark_attended",
            "scan_id": "scan-remote",
            "attendee_id": "A101",
            "booth_id": "B1",
            "session_id": "S1",
            "device_id": "remote-dev",
            "client_timestamp": "2026-03-10T10:07:00",
            "scan_status": "EXPECTED",
        },
    }

    res = client.post("/store/commit", json=body)
    assert res.status_code == 200
    assert res.json() == {"status": "applied", "reason": None}

    res = client.post("/store/commit", json=body)
    assert res.json()["status"] == "already_applied"


def test_store_commit_rejects_bad_action(client):
    body = {
        "dedup_key": "remote-key-2",
        "mutation": {
            "action": "delete_everything",
            "scan_id": "scan-remote",
            "attendee_id": "A101",
            "device_id": "remote-dev",
            "client_timestamp": "2026-03-10T10:07:00",
            "scan_status": "EXPECTED",
        },
    }

    res = client.post("/store/commit", json=body)
    assert res.status_code == 400
