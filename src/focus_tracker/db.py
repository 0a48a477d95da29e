"""SQLite database layer for sessions, browser visits and app category rules."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from .models import (
    ActivityType,
    AppCategoryRule,
    BrowserVisit,
    FocusState,
    Session,
    UnknownReason,
)


DATETIME_FMT = "%Y-%m-%d %H:%M:%S.%f"

_UNSET = object()

_SESSION_COLUMNS = (
    "id",
    "app_identifier",
    "app_name",
    "focus_state",
    "start_time",
    "end_time",
    "accumulated_duration",
    "last_resumed_at",
    "activity_type",
    "confidence",
    "unknown_reason",
    "needs_review",
    "primary_domain",
    "primary_title",
    "task_id",
    "user_label",
    "inferred_label",
    "micro_interruptions",
)


def open_database(
    path: Union[Path, str], *, check_same_thread: bool = True
) -> sqlite3.Connection:
    """Open (and initialize) the SQLite database."""
    conn = sqlite3.connect(
        path,
        isolation_level=None,
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    enable_foreign_keys(conn)
    initialize_schema(conn)
    return conn


@contextmanager
def database_connection(
    path: Union[Path, str], *, check_same_thread: bool = True
) -> Iterator[sqlite3.Connection]:
    conn = open_database(path, check_same_thread=check_same_thread)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run several statements atomically on an autocommit connection."""
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def enable_foreign_keys(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            app_identifier TEXT NOT NULL,
            app_name TEXT NOT NULL,
            focus_state TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,
            accumulated_duration REAL NOT NULL DEFAULT 0,
            last_resumed_at TEXT,
            activity_type TEXT NOT NULL,
            confidence REAL NOT NULL DEFAULT 0,
            unknown_reason TEXT,
            needs_review INTEGER NOT NULL DEFAULT 1,
            primary_domain TEXT,
            primary_title TEXT,
            task_id TEXT,
            user_label TEXT,
            inferred_label TEXT,
            micro_interruptions INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_start_time
            ON sessions(start_time);

        CREATE TABLE IF NOT EXISTS browser_visits (
            id INTEGER PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            position INTEGER NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,
            domain TEXT NOT NULL,
            title TEXT,
            is_distraction INTEGER NOT NULL DEFAULT 0,
            path TEXT,
            description TEXT,
            content_snippet TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_visits_session
            ON browser_visits(session_id, position);

        CREATE TABLE IF NOT EXISTS app_category_rules (
            app_identifier TEXT PRIMARY KEY,
            activity_type TEXT NOT NULL,
            is_ambiguous INTEGER NOT NULL DEFAULT 0
        );
        """
    )


def save_session(conn: sqlite3.Connection, session: Session) -> None:
    """Insert or update a session together with its browser visits."""
    placeholders = ", ".join("?" for _ in _SESSION_COLUMNS)
    updates = ", ".join(
        f"{column} = excluded.{column}" for column in _SESSION_COLUMNS[1:]
    )
    with transaction(conn):
        conn.execute(
            f"""
            INSERT INTO sessions ({', '.join(_SESSION_COLUMNS)})
            VALUES ({placeholders})
            ON CONFLICT(id) DO UPDATE SET {updates}
            """,
            (
                session.id,
                session.app_identifier,
                session.app_name,
                session.focus_state.value,
                _format(session.start_time),
                _format(session.end_time),
                session.accumulated_duration,
                _format(session.last_resumed_at),
                session.activity_type.value,
                session.confidence,
                session.unknown_reason.value if session.unknown_reason else None,
                1 if session.needs_review else 0,
                session.primary_domain,
                session.primary_title,
                session.task_id,
                session.user_label,
                session.inferred_label,
                session.micro_interruptions,
            ),
        )
        conn.execute("DELETE FROM browser_visits WHERE session_id = ?", (session.id,))
        conn.executemany(
            """
            INSERT INTO browser_visits (
                session_id,
                position,
                start_time,
                end_time,
                domain,
                title,
                is_distraction,
                path,
                description,
                content_snippet
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    session.id,
                    position,
                    _format(visit.start_time),
                    _format(visit.end_time),
                    visit.domain,
                    visit.title,
                    1 if visit.is_distraction else 0,
                    visit.path,
                    visit.description,
                    visit.content_snippet,
                )
                for position, visit in enumerate(session.browser_visits)
            ],
        )


def delete_session(conn: sqlite3.Connection, session_id: str) -> None:
    conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))


def fetch_session(conn: sqlite3.Connection, session_id: str) -> Optional[Session]:
    row = conn.execute(
        "SELECT * FROM sessions WHERE id = ?", (session_id,)
    ).fetchone()
    if row is None:
        return None
    return _row_to_session(row, _fetch_visits(conn, [session_id]).get(session_id, []))


def fetch_open_sessions(conn: sqlite3.Connection) -> list[Session]:
    """Sessions left open, i.e. orphans from an ungraceful shutdown."""
    rows = list(
        conn.execute(
            "SELECT * FROM sessions WHERE end_time IS NULL ORDER BY start_time;"
        )
    )
    return _hydrate(conn, rows)


def fetch_sessions_between(
    conn: sqlite3.Connection, start: datetime, end: datetime
) -> list[Session]:
    """Return sessions whose start falls in ``[start, end)``, oldest first."""
    rows = list(
        conn.execute(
            """
            SELECT *
            FROM sessions
            WHERE start_time >= ? AND start_time < ?
            ORDER BY start_time;
            """,
            (_format(start), _format(end)),
        )
    )
    return _hydrate(conn, rows)


def fetch_sessions_for_day(conn: sqlite3.Connection, day: datetime) -> list[Session]:
    start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    return fetch_sessions_between(conn, start, start + timedelta(days=1))


def fetch_app_rule(
    conn: sqlite3.Connection, app_identifier: str
) -> Optional[AppCategoryRule]:
    row = conn.execute(
        """
        SELECT app_identifier, activity_type, is_ambiguous
        FROM app_category_rules
        WHERE app_identifier = ?
        """,
        (app_identifier,),
    ).fetchone()
    return _row_to_rule(row) if row else None


def fetch_app_rules(conn: sqlite3.Connection) -> list[AppCategoryRule]:
    rows = conn.execute(
        """
        SELECT app_identifier, activity_type, is_ambiguous
        FROM app_category_rules
        ORDER BY app_identifier;
        """
    )
    return [_row_to_rule(row) for row in rows]


def upsert_app_rule(conn: sqlite3.Connection, rule: AppCategoryRule) -> None:
    conn.execute(
        """
        INSERT INTO app_category_rules (app_identifier, activity_type, is_ambiguous)
        VALUES (?, ?, ?)
        ON CONFLICT(app_identifier) DO UPDATE SET
            activity_type = excluded.activity_type,
            is_ambiguous = excluded.is_ambiguous
        """,
        (rule.app_identifier, rule.activity_type.value, 1 if rule.is_ambiguous else 0),
    )


def seed_app_rules(conn: sqlite3.Connection, rules: Iterable[AppCategoryRule]) -> int:
    """Insert default rules without overwriting user edits. Returns rows added."""
    before = conn.total_changes
    conn.executemany(
        """
        INSERT OR IGNORE INTO app_category_rules (app_identifier, activity_type, is_ambiguous)
        VALUES (?, ?, ?)
        """,
        [
            (rule.app_identifier, rule.activity_type.value, 1 if rule.is_ambiguous else 0)
            for rule in rules
        ],
    )
    return conn.total_changes - before


def update_session_labels(
    conn: sqlite3.Connection,
    session_id: str,
    *,
    user_label: object = _UNSET,
    inferred_label: object = _UNSET,
    task_id: object = _UNSET,
) -> None:
    """Update the labeling fields of a single session."""
    fields: list[str] = []
    params: list[object] = []

    if user_label is not _UNSET:
        fields.append("user_label = ?")
        params.append(user_label)
    if inferred_label is not _UNSET:
        fields.append("inferred_label = ?")
        params.append(inferred_label)
    if task_id is not _UNSET:
        fields.append("task_id = ?")
        params.append(task_id)

    if not fields:
        return

    params.append(session_id)
    cur = conn.execute(
        f"UPDATE sessions SET {', '.join(fields)} WHERE id = ?",
        params,
    )
    if cur.rowcount == 0:
        raise ValueError(f"No session found for id={session_id}")


def reclassify_app_sessions(
    conn: sqlite3.Connection, rule: AppCategoryRule
) -> int:
    """Apply a category rule to every stored active session of its app."""
    cur = conn.execute(
        """
        UPDATE sessions
        SET activity_type = ?,
            confidence = ?,
            unknown_reason = ?,
            needs_review = ?
        WHERE app_identifier = ? AND focus_state = ?
        """,
        (
            rule.activity_type.value,
            0.5 if rule.is_ambiguous else 1.0,
            UnknownReason.AMBIGUOUS_APP.value if rule.is_ambiguous else None,
            1 if rule.is_ambiguous else 0,
            rule.app_identifier,
            FocusState.ACTIVE.value,
        ),
    )
    return cur.rowcount


def _hydrate(conn: sqlite3.Connection, rows: list[sqlite3.Row]) -> list[Session]:
    visits = _fetch_visits(conn, [row["id"] for row in rows])
    return [_row_to_session(row, visits.get(row["id"], [])) for row in rows]


def _fetch_visits(
    conn: sqlite3.Connection, session_ids: list[str]
) -> dict[str, list[BrowserVisit]]:
    if not session_ids:
        return {}
    grouped: dict[str, list[BrowserVisit]] = {}
    # Chunked to stay under SQLite's bound-parameter limit.
    for offset in range(0, len(session_ids), 500):
        chunk = session_ids[offset : offset + 500]
        marks = ", ".join("?" for _ in chunk)
        rows = conn.execute(
            f"""
            SELECT *
            FROM browser_visits
            WHERE session_id IN ({marks})
            ORDER BY session_id, position;
            """,
            chunk,
        )
        for row in rows:
            grouped.setdefault(row["session_id"], []).append(
                BrowserVisit(
                    start_time=_parse(row["start_time"]),
                    end_time=_parse(row["end_time"]),
                    domain=row["domain"],
                    title=row["title"],
                    is_distraction=bool(row["is_distraction"]),
                    path=row["path"],
                    description=row["description"],
                    content_snippet=row["content_snippet"],
                )
            )
    return grouped


def _row_to_session(row: sqlite3.Row, visits: list[BrowserVisit]) -> Session:
    return Session(
        id=row["id"],
        app_identifier=row["app_identifier"],
        app_name=row["app_name"],
        focus_state=FocusState(row["focus_state"]),
        start_time=_parse(row["start_time"]),
        end_time=_parse(row["end_time"]),
        accumulated_duration=row["accumulated_duration"],
        last_resumed_at=_parse(row["last_resumed_at"]),
        activity_type=ActivityType(row["activity_type"]),
        confidence=row["confidence"],
        unknown_reason=UnknownReason(row["unknown_reason"]) if row["unknown_reason"] else None,
        needs_review=bool(row["needs_review"]),
        primary_domain=row["primary_domain"],
        primary_title=row["primary_title"],
        browser_visits=visits,
        task_id=row["task_id"],
        user_label=row["user_label"],
        inferred_label=row["inferred_label"],
        micro_interruptions=row["micro_interruptions"],
    )


def _row_to_rule(row: sqlite3.Row) -> AppCategoryRule:
    return AppCategoryRule(
        app_identifier=row["app_identifier"],
        activity_type=ActivityType(row["activity_type"]),
        is_ambiguous=bool(row["is_ambiguous"]),
    )


def _format(value: Optional[datetime]) -> Optional[str]:
    return value.strftime(DATETIME_FMT) if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.strptime(value, DATETIME_FMT) if value else None
