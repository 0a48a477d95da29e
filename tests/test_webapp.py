"""Tests for the FastAPI surface in focus_tracker.webapp."""
from __future__ import annotations

import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import CHROME, FINDER, SLACK, T0, VSCODE
from focus_tracker.config import TrackerSettings
from focus_tracker.webapp import create_app

DAY = T0.strftime("%Y-%m-%d")


@pytest.fixture
def client(tmp_path):
    app = create_app(db_path=tmp_path / "sessions.sqlite3", settings=TrackerSettings())
    with TestClient(app) as test_client:
        yield test_client


def _observe(client, app: str, seconds: float, state: str = "active"):
    return client.post(
        "/api/observations",
        json={
            "app_identifier": app,
            "app_name": app.rsplit(".", 1)[-1],
            "focus_state": state,
            "timestamp": (T0 + timedelta(seconds=seconds)).isoformat(),
        },
    )


def _committed_vscode_session(client) -> str:
    assert _observe(client, VSCODE, 0).json()["current_session_id"] is None
    response = _observe(client, SLACK, 60)
    assert response.status_code == 200
    session_id = response.json()["current_session_id"]
    assert session_id is not None
    return session_id


def test_status(client):
    payload = client.get("/api/status").json()
    assert payload["tracking"] is True
    assert payload["running"] is True
    assert payload["commit_seconds"] == 2.0


def test_observations_become_sessions(client):
    session_id = _committed_vscode_session(client)

    payload = client.get("/api/sessions", params={"date": DAY}).json()
    assert payload["date"] == DAY
    by_id = {session["id"]: session for session in payload["sessions"]}
    assert by_id[session_id]["app_identifier"] == VSCODE
    assert by_id[session_id]["activity_type"] == "Focused Work"


def test_out_of_order_observation_conflicts(client):
    _committed_vscode_session(client)
    assert _observe(client, FINDER, 1).status_code == 409


def test_unknown_fields_rejected(client):
    response = client.post(
        "/api/observations",
        json={"app_identifier": VSCODE, "app_name": "VSCode", "window": "main.py"},
    )
    assert response.status_code == 422


def test_domain_change_attaches_to_browser_session(client):
    _observe(client, CHROME, 0)
    chrome_id = _observe(client, FINDER, 3).json()["current_session_id"]

    response = client.post(
        "/api/domain-changes",
        json={
            "new_domain": "https://github.com/org/repo",
            "title": "Issues - Google Chrome",
            "context": {"path": "/org/repo", "unexpected": "ignored"},
            "timestamp": (T0 + timedelta(seconds=4)).isoformat(),
        },
    )

    assert response.status_code == 200
    assert response.json()["session_id"] == chrome_id


def test_out_of_order_domain_change_conflicts(client):
    _observe(client, CHROME, 0)
    _observe(client, FINDER, 60)

    response = client.post(
        "/api/domain-changes",
        json={
            "new_domain": "github.com",
            "timestamp": (T0 + timedelta(seconds=1)).isoformat(),
        },
    )

    assert response.status_code == 409


def test_label_and_task_endpoints(client):
    session_id = _committed_vscode_session(client)

    labeled = client.post(f"/api/sessions/{session_id}/label", json={"label": " Deep Work "})
    assert labeled.status_code == 200
    assert labeled.json()["user_label"] == "Deep Work"
    assert labeled.json()["task_label"] == "Deep Work"

    linked = client.post(f"/api/sessions/{session_id}/task", json={"task_id": "TASK-7"})
    assert linked.json()["task_id"] == "TASK-7"
    assert linked.json()["user_label"] == "Deep Work"

    missing = client.post("/api/sessions/does-not-exist/label", json={"label": "x"})
    assert missing.status_code == 404


def test_active_task(client):
    assert client.post("/api/active-task", json={"task_id": "TASK-1"}).json() == {
        "active_task_id": "TASK-1"
    }
    assert client.post("/api/active-task", json={}).json() == {"active_task_id": None}


def test_reports(client):
    _committed_vscode_session(client)

    report = client.get("/api/loss-report", params={"date": DAY})
    assert report.status_code == 200
    assert report.json()["date"] == DAY
    assert "loss_events" in report.json()

    clusters = client.get("/api/clusters", params={"date": DAY})
    assert clusters.status_code == 200
    assert isinstance(clusters.json()["clusters"], list)


def test_invalid_date(client):
    assert client.get("/api/sessions", params={"date": "03/02/2026"}).status_code == 400


def test_app_rules(client):
    rules = client.get("/api/app-rules").json()["rules"]
    assert {"app_identifier": VSCODE, "activity_type": "Focused Work", "is_ambiguous": False} in rules

    response = client.put(
        "/api/app-rules/com.example.mystery",
        json={"activity_type": "Admin", "is_ambiguous": True},
    )
    assert response.status_code == 200
    assert response.json()["sessions_updated"] == 0

    invalid = client.put("/api/app-rules/com.example.mystery", json={"activity_type": "Napping"})
    assert invalid.status_code == 422


def test_sleep_and_wake(client):
    _committed_vscode_session(client)

    slept = client.post("/api/system/sleep")
    assert slept.status_code == 200
    assert slept.json() == {"current_session_id": None, "pending_app": None}
    assert client.get("/api/status").json()["current_session"] is None

    woke = client.post("/api/system/wake")
    assert woke.status_code == 200
    assert woke.json()["pending_app"] == "slackmacgap"


def test_labeling_hook_reaches_sessions(tmp_path):
    app = create_app(
        db_path=tmp_path / "sessions.sqlite3",
        settings=TrackerSettings(),
        classifier=lambda session, context: f"Working in {session.app_name}",
    )
    with TestClient(app) as client:
        session_id = _committed_vscode_session(client)

        deadline = time.monotonic() + 2.0
        labels = {}
        while time.monotonic() < deadline:
            sessions = client.get("/api/sessions", params={"date": DAY}).json()["sessions"]
            labels = {session["id"]: session["inferred_label"] for session in sessions}
            if labels.get(session_id):
                break
            time.sleep(0.01)

    assert labels[session_id] == "Working in VSCode"


def test_browser_context_reaches_sessions(tmp_path):
    app = create_app(
        db_path=tmp_path / "sessions.sqlite3",
        settings=TrackerSettings(),
        browser_context=lambda: ("https://github.com/org/repo", "Issues - Google Chrome"),
    )
    with TestClient(app) as client:
        _observe(client, CHROME, 0)
        chrome_id = _observe(client, FINDER, 3).json()["current_session_id"]
        sessions = client.get("/api/sessions", params={"date": DAY}).json()["sessions"]

    [chrome] = [session for session in sessions if session["id"] == chrome_id]
    assert chrome["primary_domain"] == "github.com"
    assert chrome["browser_visits"][0]["domain"] == "github.com"
