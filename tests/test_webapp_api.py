from __future__ import annotations

import pytest

from lactate_tracker.config import get_config
from lactate_tracker.constants import GUEST_ID_COOKIE, GUEST_NAME_COOKIE
from lactate_tracker.webapp import FAILED_LOGINS, MAX_FAILED_ATTEMPTS, create_app


@pytest.fixture
def app(monkeypatch, tmp_path):
    monkeypatch.setenv("LACTATE_TRACKER_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LACTATE_TRACKER_DB_FILE", str(tmp_path / "data" / "webapp.db"))
    monkeypatch.delenv("LACTATE_TRACKER_CONFIG", raising=False)
    monkeypatch.delenv("LACTATE_TRACKER_DISABLE_AUTH", raising=False)
    get_config.cache_clear()
    FAILED_LOGINS.clear()
    flask_app = create_app()
    flask_app.config["TESTING"] = True
    yield flask_app
    get_config.cache_clear()
    FAILED_LOGINS.clear()


@pytest.fixture
def client(app):
    client = app.test_client()
    resp = client.post(
        "/register",
        json={"name": "Runner One", "email": "runner@example.com", "password": "long-enough"},
    )
    assert resp.status_code == 201
    return client


def _set_cookies(resp) -> str:
    return "\n".join(resp.headers.getlist("Set-Cookie"))


def test_health(app):
    resp = app.test_client().get("/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}


def test_api_requires_identity(app):
    resp = app.test_client().get("/api/tests")
    assert resp.status_code == 401


def test_register_rejects_duplicates_and_short_passwords(client):
    resp = client.post("/register", json={"email": "runner@example.com", "password": "long-enough"})
    assert resp.status_code == 409
    resp = client.post("/register", json={"email": "other@example.com", "password": "short"})
    assert resp.status_code == 400


def test_login_rate_limit(app):
    client = app.test_client()
    client.post("/register", json={"email": "a@example.com", "password": "long-enough"})
    for _ in range(MAX_FAILED_ATTEMPTS):
        assert client.post("/login", json={"email": "a@example.com", "password": "nope"}).status_code == 401
    resp = client.post("/login", json={"email": "a@example.com", "password": "long-enough"})
    assert resp.status_code == 429


def test_test_lifecycle(client):
    resp = client.post("/api/tests", json={"title": "Track", "protocol": {"num_stages": 5}})
    assert resp.status_code == 201
    test = resp.get_json()["test"]
    assert test["protocol"]["num_stages"] == 5
    assert test["status"] == "In progress"
    test_id = test["id"]

    for stage, pace, lactate, hr in ((0, "5:30", 1.0, 120), (1, "5:00", 1.8, 135), (2, "4:40", 2.4, 148)):
        resp = client.post(
            f"/api/tests/{test_id}/points",
            json={"stageIndex": stage, "pace": pace, "lactate": lactate, "hr": hr},
        )
        assert resp.status_code == 200
    assert resp.get_json()["message"] == "Saved stage 2."

    resp = client.post(f"/api/tests/{test_id}/points", json={"stageIndex": 3, "pace": "fast", "lactate": 3})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Enter pace as mm:ss (e.g. 4:30)."

    summary = client.get(f"/api/tests/{test_id}/summary").get_json()
    assert summary["lt1"]["hr_bpm"] == 148
    assert summary["stagesCaptured"] == 3
    assert summary["takeaways"][0] == "Stable lactate until ~LT1 HR (~148 bpm)."

    listing = client.get("/api/tests").get_json()["tests"]
    assert [(item["id"], item["recordedStages"]) for item in listing] == [(test_id, 3)]

    resp = client.post(f"/api/tests/{test_id}/notes", json={"notes": "Windy"})
    assert resp.get_json()["test"]["notes"] == "Windy"
    resp = client.post(f"/api/tests/{test_id}/complete")
    assert resp.get_json()["test"]["completed_at"]

    resp = client.delete(f"/api/tests/{test_id}")
    assert resp.status_code == 200
    assert client.get(f"/api/tests/{test_id}").status_code == 404


def test_import_reports_partial_success(client):
    test_id = client.post("/api/tests", json={}).get_json()["test"]["id"]
    client.post(f"/api/tests/{test_id}/points", json={"stageIndex": 0, "pace": "6:00", "lactate": 0.9})

    resp = client.post(
        f"/api/tests/{test_id}/import",
        json={"raw": "stage\tpace\tlactate\tCadence\n0\t4:30\t2.1\t176\n1\tbad\t3.0\t178"},
    )
    assert resp.status_code == 200
    payload = resp.get_json()
    assert payload["imported"] == 1
    assert payload["errors"] == ["Row 3: Invalid pace (mm:ss)."]
    assert payload["metricKeys"] == ["Cadence"]
    assert [point["stage_index"] for point in payload["points"]] == [0]
    assert payload["points"][0]["pace_seconds_per_km"] == 270
    assert payload["points"][0]["metrics"] == {"Cadence": 176.0}

    detail = client.get(f"/api/tests/{test_id}").get_json()
    assert detail["metricKeys"] == ["Cadence"]
    assert len(detail["points"]) == 1


def test_import_with_bad_header_is_rejected(client):
    test_id = client.post("/api/tests", json={}).get_json()["test"]["id"]
    resp = client.post(f"/api/tests/{test_id}/import", json={"raw": "stage,hr\n1,140"})
    assert resp.status_code == 400
    assert "Header must include a Pace column (mm:ss)." in resp.get_json()["errors"]


def test_export_returns_csv(client):
    test_id = client.post("/api/tests", json={}).get_json()["test"]["id"]
    client.post(f"/api/tests/{test_id}/points", json={"stageIndex": 1, "pace": "5:00", "lactate": 1.5})
    resp = client.get(f"/api/tests/{test_id}/export")
    assert resp.status_code == 200
    assert resp.mimetype == "text/csv"
    assert resp.get_data(as_text=True).startswith("stage_index,")


def test_tests_are_private_to_their_owner(app, client):
    test_id = client.post("/api/tests", json={}).get_json()["test"]["id"]
    other = app.test_client()
    other.post("/register", json={"email": "other@example.com", "password": "long-enough"})
    assert other.get(f"/api/tests/{test_id}").status_code == 404


def test_guest_session_sets_cookies_and_renames(app):
    client = app.test_client()
    resp = client.post("/guest", json={"name": "Sam"})
    assert resp.status_code == 200
    user = resp.get_json()["user"]
    assert user["guest"] is True
    assert user["email"].startswith("guest+") and user["email"].endswith("@guest.local")
    cookies = _set_cookies(resp)
    assert f"{GUEST_ID_COOKIE}={user['id']}" in cookies
    assert "HttpOnly" in cookies
    assert f"{GUEST_NAME_COOKIE}=Sam" in cookies

    renamed = client.post("/guest", json={"name": "Alex"}).get_json()["user"]
    assert renamed["id"] == user["id"]
    assert renamed["name"] == "Alex"

    assert client.get("/api/tests").status_code == 200


def test_guest_mode_creates_identity_automatically(app):
    app.config["GUEST_MODE"] = True
    client = app.test_client()
    resp = client.get("/api/tests")
    assert resp.status_code == 200
    assert GUEST_ID_COOKIE in _set_cookies(resp)

    test_id = client.post("/api/tests", json={}).get_json()["test"]["id"]
    assert client.get(f"/api/tests/{test_id}").status_code == 200
