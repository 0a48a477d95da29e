"""FastAPI application exposing the tracker's inbound events and derived reports."""

from __future__ import annotations

import dataclasses
import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict

from .clustering import ClusterEngine
from .config import ClusterSettings, LossSettings, TrackerSettings
from .db import (
    database_connection,
    fetch_app_rules,
    fetch_session,
    fetch_sessions_between,
    open_database,
    update_session_labels,
)
from .loss import LossAnalyzer
from .models import ActivityType, BrowserContext, FocusState, Observation, Session
from .paths import get_db_path
from .state_machine import BrowserContextProvider, LabelingHook, SessionStateMachine

logger = logging.getLogger(__name__)


class TrackerRunner:
    """Own the state machine and its database connection for the app's lifetime."""

    def __init__(
        self,
        db_path: Path,
        settings: TrackerSettings,
        classifier: Optional[LabelingHook] = None,
        browser_context: Optional[BrowserContextProvider] = None,
    ) -> None:
        self._db_path = Path(db_path)
        self._settings = settings
        self._classifier = classifier
        self._browser_context = browser_context
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        self._machine: Optional[SessionStateMachine] = None

    def start(self) -> None:
        with self._lock:
            if self._machine is not None:
                return
            conn = open_database(self._db_path, check_same_thread=False)
            machine = SessionStateMachine(
                conn,
                self._settings,
                browser_context=self._browser_context,
                classifier=self._classifier,
            )
            machine.start()
            self._conn = conn
            self._machine = machine
            logger.info("Session tracking started; writing to %s", self._db_path)

    def stop(self) -> None:
        with self._lock:
            machine, conn = self._machine, self._conn
            self._machine = None
            self._conn = None
        if machine is not None:
            machine.shutdown()
        if conn is not None:
            conn.close()
            logger.info("Session tracking stopped.")

    @property
    def machine(self) -> Optional[SessionStateMachine]:
        with self._lock:
            return self._machine

    def is_running(self) -> bool:
        return self.machine is not None


class ObservationPayload(BaseModel):
    app_identifier: str
    app_name: str
    focus_state: FocusState = FocusState.ACTIVE
    timestamp: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid")


class BrowserContextPayload(BaseModel):
    path: Optional[str] = None
    description: Optional[str] = None
    content_snippet: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class DomainChangePayload(BaseModel):
    old_domain: Optional[str] = None
    new_domain: str
    title: Optional[str] = None
    context: Optional[BrowserContextPayload] = None
    timestamp: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid")


class LabelPayload(BaseModel):
    label: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class TaskPayload(BaseModel):
    task_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class AppRulePayload(BaseModel):
    activity_type: ActivityType
    is_ambiguous: bool = False

    model_config = ConfigDict(extra="forbid")


def create_app(
    *,
    db_path: Optional[Path] = None,
    settings: Optional[TrackerSettings] = None,
    loss_settings: Optional[LossSettings] = None,
    cluster_settings: Optional[ClusterSettings] = None,
    classifier: Optional[LabelingHook] = None,
    browser_context: Optional[BrowserContextProvider] = None,
) -> FastAPI:
    """Instantiate the FastAPI application.

    ``classifier`` is handed to the state machine and asked for a label each
    time a session opens. ``browser_context`` reports the frontmost tab when a
    browser session commits.
    """
    resolved_db_path = Path(db_path or get_db_path())
    resolved_settings = settings or TrackerSettings()
    runner = TrackerRunner(
        resolved_db_path, resolved_settings, classifier, browser_context
    )
    analyzer = LossAnalyzer(loss_settings)
    engine = ClusterEngine(cluster_settings)

    app = FastAPI(title="Focus Tracker", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.db_path = resolved_db_path
    app.state.tracker_runner = runner

    @app.on_event("startup")
    async def _startup() -> None:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        runner.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        runner.stop()

    @app.get("/api/status")
    def status(request: Request) -> Dict[str, Any]:
        machine = request.app.state.tracker_runner.machine
        payload: Dict[str, Any] = {
            "tracking": request.app.state.tracker_runner.is_running(),
            "database_path": str(request.app.state.db_path),
            "commit_seconds": resolved_settings.commit_threshold.total_seconds(),
            "merge_seconds": resolved_settings.merge_threshold.total_seconds(),
        }
        if machine is not None:
            payload.update(machine.status())
        return payload

    @app.post("/api/observations")
    def push_observation(payload: ObservationPayload, request: Request) -> Dict[str, Any]:
        machine = _require_machine(request)
        observation = Observation(
            app_identifier=payload.app_identifier,
            app_name=payload.app_name,
            focus_state=payload.focus_state,
            timestamp=_local_naive(payload.timestamp) or datetime.now(),
        )
        accepted = machine.on_observation(observation)
        if not accepted:
            raise HTTPException(status_code=409, detail="Observation is out of order")
        current = machine.current_session
        return {"accepted": True, "current_session_id": current.id if current else None}

    @app.post("/api/domain-changes")
    def push_domain_change(payload: DomainChangePayload, request: Request) -> Dict[str, Any]:
        machine = _require_machine(request)
        context = (
            BrowserContext(**payload.context.model_dump()) if payload.context else None
        )
        timestamp = _local_naive(payload.timestamp)
        session = machine.on_domain_change(
            payload.old_domain,
            payload.new_domain,
            payload.title,
            context=context,
            timestamp=timestamp,
        )
        if session is None and timestamp is not None and not machine.accepts(timestamp):
            raise HTTPException(status_code=409, detail="Domain change is out of order")
        return {"session_id": session.id if session else None}

    @app.post("/api/system/sleep")
    def system_sleep(request: Request) -> Dict[str, Any]:
        machine = _require_machine(request)
        machine.on_sleep()
        return _power_payload(machine)

    @app.post("/api/system/wake")
    def system_wake(request: Request) -> Dict[str, Any]:
        machine = _require_machine(request)
        machine.on_wake()
        return _power_payload(machine)

    @app.post("/api/active-task")
    def set_active_task(payload: TaskPayload, request: Request) -> Dict[str, Any]:
        machine = _require_machine(request)
        if payload.task_id:
            machine.start_task(payload.task_id)
        else:
            machine.stop_task()
        return {"active_task_id": machine.active_task_id}

    @app.get("/api/sessions")
    def sessions(
        request: Request,
        date: Optional[str] = Query(
            default=None,
            description="Target date in YYYY-MM-DD format.",
        ),
    ) -> Dict[str, Any]:
        day = _parse_date(date)
        day_sessions = _load_day(request.app.state.db_path, day)
        now = datetime.now()
        return {
            "date": day.strftime("%Y-%m-%d"),
            "sessions": [_session_payload(session, now) for session in day_sessions],
        }

    @app.get("/api/loss-report")
    def loss_report(
        request: Request,
        date: Optional[str] = Query(default=None, description="Target date in YYYY-MM-DD format."),
    ) -> Dict[str, Any]:
        day = _parse_date(date)
        report = analyzer.analyze_day(_load_day(request.app.state.db_path, day), day)
        payload = dataclasses.asdict(report)
        payload["date"] = day.strftime("%Y-%m-%d")
        return payload

    @app.get("/api/clusters")
    def clusters(
        request: Request,
        date: Optional[str] = Query(default=None, description="Target date in YYYY-MM-DD format."),
    ) -> Dict[str, Any]:
        day = _parse_date(date)
        results = engine.cluster_sessions(_load_day(request.app.state.db_path, day))
        return {
            "date": day.strftime("%Y-%m-%d"),
            "clusters": [
                {
                    **dataclasses.asdict(cluster),
                    "label": cluster.label,
                    "duration_seconds": cluster.duration_seconds,
                }
                for cluster in results
            ],
        }

    @app.post("/api/sessions/{session_id}/label")
    def label_session(session_id: str, payload: LabelPayload, request: Request) -> Dict[str, Any]:
        label = payload.label.strip() if payload.label else None
        return _apply_label_update(request, session_id, user_label=label or None)

    @app.post("/api/sessions/{session_id}/task")
    def link_session_task(session_id: str, payload: TaskPayload, request: Request) -> Dict[str, Any]:
        return _apply_label_update(request, session_id, task_id=payload.task_id)

    @app.get("/api/app-rules")
    def list_app_rules(request: Request) -> Dict[str, Any]:
        with database_connection(request.app.state.db_path) as conn:
            rules = fetch_app_rules(conn)
        return {
            "rules": [
                {
                    "app_identifier": rule.app_identifier,
                    "activity_type": rule.activity_type.value,
                    "is_ambiguous": rule.is_ambiguous,
                }
                for rule in rules
            ]
        }

    @app.put("/api/app-rules/{app_identifier}")
    def put_app_rule(app_identifier: str, payload: AppRulePayload, request: Request) -> Dict[str, Any]:
        machine = _require_machine(request)
        updated = machine.map_app(app_identifier, payload.activity_type, payload.is_ambiguous)
        return {
            "app_identifier": app_identifier,
            "activity_type": payload.activity_type.value,
            "is_ambiguous": payload.is_ambiguous,
            "sessions_updated": updated,
        }

    return app


def _require_machine(request: Request) -> SessionStateMachine:
    machine = request.app.state.tracker_runner.machine
    if machine is None:
        raise HTTPException(status_code=503, detail="Session tracking is not running")
    return machine


def _power_payload(machine: SessionStateMachine) -> Dict[str, Any]:
    current = machine.current_session
    pending = machine.pending_segment
    return {
        "current_session_id": current.id if current else None,
        "pending_app": pending.app_name if pending else None,
    }


def _apply_label_update(
    request: Request, session_id: str, **fields: Optional[str]
) -> Dict[str, Any]:
    machine = request.app.state.tracker_runner.machine
    try:
        if machine is not None:
            # Live sessions must be updated in memory or the next save reverts them.
            if "user_label" in fields:
                machine.set_user_label(session_id, fields["user_label"])
            if "task_id" in fields:
                machine.link_task(session_id, fields["task_id"])
        else:
            with database_connection(request.app.state.db_path) as conn:
                update_session_labels(conn, session_id, **fields)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc

    with database_connection(request.app.state.db_path) as conn:
        session = fetch_session(conn, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return _session_payload(session, datetime.now())


def _load_day(db_path: Path, day: datetime) -> list[Session]:
    with database_connection(db_path) as conn:
        return fetch_sessions_between(conn, day, day + timedelta(days=1))


def _parse_date(value: Optional[str]) -> datetime:
    if not value:
        return _start_of_day(datetime.now())
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid date format") from exc
    return _start_of_day(parsed)


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _local_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _session_payload(session: Session, now: datetime) -> Dict[str, Any]:
    return {
        "id": session.id,
        "app_identifier": session.app_identifier,
        "app_name": session.app_name,
        "focus_state": session.focus_state.value,
        "start_time": session.start_time.isoformat(),
        "end_time": session.end_time.isoformat() if session.end_time else None,
        "duration_seconds": session.duration_at(now),
        "activity_type": session.activity_type.value,
        "confidence": session.confidence,
        "unknown_reason": session.unknown_reason.value if session.unknown_reason else None,
        "needs_review": session.needs_review,
        "primary_domain": session.primary_domain,
        "primary_title": session.primary_title,
        "task_id": session.task_id,
        "user_label": session.user_label,
        "inferred_label": session.inferred_label,
        "task_label": session.task_label,
        "micro_interruptions": session.micro_interruptions,
        "browser_visits": [
            {
                "domain": visit.domain,
                "title": visit.title,
                "start_time": visit.start_time.isoformat(),
                "end_time": visit.end_time.isoformat() if visit.end_time else None,
                "is_distraction": visit.is_distraction,
            }
            for visit in session.browser_visits
        ],
    }
