"""Tests for focus_tracker.replay."""
from __future__ import annotations

import json
from datetime import datetime, timedelta

from conftest import CHROME, SLACK, T0, VSCODE
from focus_tracker.db import fetch_sessions_for_day
from focus_tracker.replay import ManualScheduler, ReplayClock, replay_lines
from focus_tracker.state_machine import SessionStateMachine


def _line(kind: str, seconds: float, **fields) -> str:
    return json.dumps(
        {"kind": kind, "timestamp": (T0 + timedelta(seconds=seconds)).isoformat(), **fields}
    )


def _observation(app: str, seconds: float, state: str = "active") -> str:
    return _line(
        "observation",
        seconds,
        app_identifier=app,
        app_name=app.rsplit(".", 1)[-1],
        focus_state=state,
    )


def test_replay_rebuilds_sessions(conn):
    clock = ReplayClock(datetime.min)
    machine = SessionStateMachine(conn, clock=clock, scheduler=ManualScheduler())
    machine.start(heartbeat=False)
    lines = [
        "# recorded on a laptop",
        _observation(VSCODE, 0),
        _observation(SLACK, 5),
        _observation(VSCODE, 10),
        _observation(CHROME, 300),
        _line("domain_change", 305, old_domain=None, new_domain="github.com", title="Issues"),
        _line("domain_change", 400, old_domain="github.com", new_domain="youtube.com"),
        _observation(VSCODE, 500),
        "",
    ]

    accepted, rejected = replay_lines(machine, clock, lines)
    machine.shutdown()

    assert (accepted, rejected) == (7, 0)
    sessions = fetch_sessions_for_day(conn, T0)
    assert [s.app_identifier for s in sessions] == [VSCODE, SLACK, CHROME, CHROME]
    assert sessions[0].micro_interruptions == 1
    assert [s.primary_domain for s in sessions[2:4]] == ["github.com", "youtube.com"]
    assert all(s.end_time is not None for s in sessions)


def test_replay_counts_bad_lines(conn):
    clock = ReplayClock(datetime.min)
    machine = SessionStateMachine(conn, clock=clock, scheduler=ManualScheduler())
    machine.start(heartbeat=False)
    lines = [
        "not json",
        json.dumps({"kind": "observation", "app_identifier": VSCODE, "app_name": "VSCode"}),
        _line("mystery", 0),
        _observation(VSCODE, 20),
        _observation(SLACK, 10),
    ]

    accepted, rejected = replay_lines(machine, clock, lines)
    machine.shutdown()

    assert (accepted, rejected) == (1, 4)
