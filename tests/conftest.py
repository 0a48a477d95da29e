"""Shared pytest fixtures."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

import pytest

from focus_tracker.db import open_database
from focus_tracker.models import ActivityType, FocusState, Observation, Session
from focus_tracker.state_machine import SessionStateMachine

T0 = datetime(2026, 3, 2, 9, 0, 0)

VSCODE = "com.microsoft.VSCode"
CHROME = "com.google.Chrome"
SLACK = "com.tinyspeck.slackmacgap"
FINDER = "com.apple.finder"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


class RecordingScheduler:
    """Collects delayed callbacks so tests decide when timers fire."""

    class Handle:
        def __init__(self, delay: float, callback: Callable[[], None]) -> None:
            self.delay = delay
            self.callback = callback
            self.cancelled = False

        def cancel(self) -> None:
            self.cancelled = True

    def __init__(self) -> None:
        self.handles: list[RecordingScheduler.Handle] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> "RecordingScheduler.Handle":
        handle = self.Handle(delay, callback)
        self.handles.append(handle)
        return handle

    def fire_pending(self) -> int:
        fired = 0
        for handle in list(self.handles):
            if not handle.cancelled:
                handle.callback()
                fired += 1
        self.handles.clear()
        return fired


@pytest.fixture
def conn():
    connection = open_database(":memory:", check_same_thread=False)
    yield connection
    connection.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def machine(conn, clock, scheduler):
    tracker = SessionStateMachine(conn, clock=clock, scheduler=scheduler)
    tracker.start(heartbeat=False)
    yield tracker
    tracker.shutdown()


@pytest.fixture
def observe(machine, clock):
    """Push an observation ``seconds`` after T0 and move the clock there."""

    def _observe(
        app: str, seconds: float, state: FocusState = FocusState.ACTIVE
    ) -> bool:
        moment = T0 + timedelta(seconds=seconds)
        clock.set(moment)
        return machine.on_observation(
            Observation(
                app_identifier=app,
                app_name=app.rsplit(".", 1)[-1],
                focus_state=state,
                timestamp=moment,
            )
        )

    return _observe


@pytest.fixture
def make_session() -> Callable[..., Session]:
    """Build a closed session starting ``offset`` seconds after T0."""

    def _make(
        app: str,
        offset: float,
        seconds: float,
        activity: ActivityType = ActivityType.FOCUSED_WORK,
        *,
        state: FocusState = FocusState.ACTIVE,
        domain: Optional[str] = None,
        user_label: Optional[str] = None,
        inferred_label: Optional[str] = None,
        start: datetime = T0,
    ) -> Session:
        begin = start + timedelta(seconds=offset)
        return Session(
            app_identifier=app,
            app_name=app.rsplit(".", 1)[-1],
            focus_state=state,
            start_time=begin,
            end_time=begin + timedelta(seconds=seconds),
            accumulated_duration=seconds,
            activity_type=activity,
            confidence=1.0,
            needs_review=False,
            primary_domain=domain,
            user_label=user_label,
            inferred_label=inferred_label,
        )

    return _make
