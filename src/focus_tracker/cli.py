"""Command-line interface for the focus tracker."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer

from .config import LossSettings, TrackerSettings
from .paths import get_db_path, get_log_path
from .server_runner import run_server

app = typer.Typer(help="Local-first focus and attention-loss tracker.")


@app.callback(no_args_is_help=True)
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logs."),
    log_to_file: bool = typer.Option(
        False, "--log-file", help="Also append logs to the tracker log file."
    ),
) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_to_file:
        handlers.append(logging.FileHandler(get_log_path(), encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=handlers,
    )


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind the server."),
    port: int = typer.Option(
        8765, "--port", min=1, max=65535, help="TCP port for the server."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the session SQLite database."
    ),
    commit_seconds: float = typer.Option(
        2.0,
        "--commit-threshold",
        min=0.0,
        help="Seconds an app must hold focus before it becomes a session.",
    ),
    merge_seconds: float = typer.Option(
        30.0,
        "--merge-threshold",
        min=0.0,
        help="Seconds within which returning to an app resumes its session.",
    ),
    heartbeat_seconds: float = typer.Option(
        30.0,
        "--heartbeat",
        min=1.0,
        help="Checkpoint interval for the open session, in seconds.",
    ),
    open_browser: bool = typer.Option(
        False,
        "--open-browser/--no-open-browser",
        help="Open the interactive API docs in your default browser.",
    ),
) -> None:
    """Run the tracking server that receives observations and serves reports."""
    settings = TrackerSettings.from_seconds(
        commit_seconds=commit_seconds,
        merge_seconds=merge_seconds,
        heartbeat_seconds=heartbeat_seconds,
    )
    run_server(
        host=host,
        port=port,
        db_path=db_path or get_db_path(),
        settings=settings,
        open_browser=open_browser,
    )


@app.command()
def replay(
    events_file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="JSON-lines file of recorded events."
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the session SQLite database."
    ),
    commit_seconds: float = typer.Option(2.0, "--commit-threshold", min=0.0),
    merge_seconds: float = typer.Option(30.0, "--merge-threshold", min=0.0),
) -> None:
    """Rebuild sessions from a recorded observation log."""
    from .db import database_connection
    from .replay import ManualScheduler, ReplayClock, replay_lines
    from .state_machine import SessionStateMachine

    settings = TrackerSettings.from_seconds(
        commit_seconds=commit_seconds, merge_seconds=merge_seconds
    )
    clock = ReplayClock(datetime.min)
    with database_connection(db_path or get_db_path()) as conn:
        machine = SessionStateMachine(
            conn, settings, clock=clock, scheduler=ManualScheduler()
        )
        machine.start(heartbeat=False)
        with events_file.open(encoding="utf-8") as handle:
            accepted, rejected = replay_lines(machine, clock, handle)
        machine.shutdown()
    typer.echo(f"Replayed {accepted} events ({rejected} rejected).")


@app.command()
def report(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to analyze. Defaults to today.",
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the session SQLite database."
    ),
    idle_minutes: float = typer.Option(
        2.0, "--idle-threshold", min=0.0, help="Idle minutes before time counts as lost."
    ),
    grace_minutes: float = typer.Option(
        2.0, "--grace", min=0.0, help="Minutes a distraction may run before it counts."
    ),
) -> None:
    """Print the loss report for a specific day."""
    from .reporting import ReportPrinter

    target = _parse_day(date)
    printer = ReportPrinter(
        db_path=db_path or get_db_path(),
        loss_settings=LossSettings.from_minutes(
            idle_minutes=idle_minutes, grace_minutes=grace_minutes
        ),
    )
    printer.print_loss_report(target)


@app.command()
def clusters(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Date (YYYY-MM-DD) to group. Defaults to today.",
    ),
    db_path: Optional[Path] = typer.Option(
        None, "--db", path_type=Path, help="Location of the session SQLite database."
    ),
) -> None:
    """Print the focus threads detected for a specific day."""
    from .reporting import ReportPrinter

    ReportPrinter(db_path=db_path or get_db_path()).print_clusters(_parse_day(date))


@app.command()
def label(
    session_id: str = typer.Argument(..., help="Session identifier."),
    text: Optional[str] = typer.Argument(None, help="Label to set; omit to clear."),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path),
) -> None:
    """Set (or clear) the user label of a session."""
    from .db import database_connection, update_session_labels

    with database_connection(db_path or get_db_path()) as conn:
        try:
            update_session_labels(conn, session_id, user_label=text)
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1) from exc
    typer.echo(f"Labeled {session_id}: {text or '(cleared)'}")


@app.command("link-task")
def link_task(
    session_id: str = typer.Argument(..., help="Session identifier."),
    task_id: Optional[str] = typer.Argument(None, help="Task identifier; omit to unlink."),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path),
) -> None:
    """Link a session to an external task."""
    from .db import database_connection, update_session_labels

    with database_connection(db_path or get_db_path()) as conn:
        try:
            update_session_labels(conn, session_id, task_id=task_id)
        except ValueError as exc:
            typer.echo(str(exc), err=True)
            raise typer.Exit(code=1) from exc
    typer.echo(f"Linked {session_id} -> {task_id or '(none)'}")


@app.command("map-app")
def map_app(
    app_identifier: str = typer.Argument(..., help="Application bundle/identifier."),
    activity: str = typer.Argument(..., help="Activity type, e.g. 'Focused Work'."),
    ambiguous: bool = typer.Option(False, "--ambiguous", help="Flag the mapping for review."),
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path),
) -> None:
    """Assign an activity type to an app and re-classify its sessions."""
    from .db import database_connection, reclassify_app_sessions, upsert_app_rule
    from .models import ActivityType, AppCategoryRule

    try:
        activity_type = ActivityType(activity)
    except ValueError as exc:
        choices = ", ".join(kind.value for kind in ActivityType)
        raise typer.BadParameter(f"expected one of: {choices}") from exc

    rule = AppCategoryRule(app_identifier, activity_type, ambiguous)
    with database_connection(db_path or get_db_path()) as conn:
        upsert_app_rule(conn, rule)
        updated = reclassify_app_sessions(conn, rule)
    typer.echo(f"Mapped {app_identifier} -> {activity_type.value} ({updated} sessions updated)")


@app.command()
def recover(
    db_path: Optional[Path] = typer.Option(None, "--db", path_type=Path),
    buffer_seconds: float = typer.Option(
        60.0, "--buffer", min=0.0, help="Seconds assumed after the last checkpoint."
    ),
) -> None:
    """Close sessions left open by a crash."""
    from .db import database_connection
    from .state_machine import SessionStateMachine

    settings = TrackerSettings.from_seconds(orphan_buffer_seconds=buffer_seconds)
    with database_connection(db_path or get_db_path()) as conn:
        closed = SessionStateMachine(conn, settings).recover_orphans()
    typer.echo(f"Closed {closed} orphaned sessions.")


def _parse_day(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now()
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise typer.BadParameter("expected YYYY-MM-DD") from exc
