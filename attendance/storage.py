from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Optional

from attendance.errors import PersistenceFailure
from attendance.models import AttendanceRecord, SessionRecord

_local = threading.local()
_db_path: str | None = None


def init(db_path: str) -> None:
    """Set the database path and create tables."""
    global _db_path
    close()
    _db_path = db_path
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    _migrate(_get_conn())


def close() -> None:
    conn = getattr(_local, "conn", None)
    if conn is not None:
        conn.close()
    _local.conn = None


def _get_conn() -> sqlite3.Connection:
    """Thread-local connection (sqlite3 objects can't cross threads)."""
    if getattr(_local, "conn", None) is None:
        if _db_path is None:
            raise PersistenceFailure("storage.init() has not been called")
        _local.conn = sqlite3.connect(_db_path)
        _local.conn.execute("PRAGMA journal_mode=WAL")
        _local.conn.execute("PRAGMA foreign_keys=ON")
        _local.conn.row_factory = sqlite3.Row
    return _local.conn


def _migrate(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS sessions (
            session_id                  TEXT PRIMARY KEY,
            title                       TEXT NOT NULL DEFAULT '',
            meeting_id                  TEXT,
            scheduled_at                TEXT,
            scheduled_duration_minutes  INTEGER,
            actual_duration_minutes     INTEGER,
            formal_end_minutes          INTEGER,
            cliff_detection             TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_scheduled
            ON sessions(scheduled_at);

        CREATE TABLE IF NOT EXISTS attendance (
            id                     INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id             TEXT NOT NULL REFERENCES sessions(session_id),
            identity_key           TEXT NOT NULL,
            coverage_seconds       REAL NOT NULL,
            window_seconds         REAL NOT NULL,
            attendance_percentage  REAL NOT NULL,
            UNIQUE(session_id, identity_key)
        );

        CREATE INDEX IF NOT EXISTS idx_attendance_session
            ON attendance(session_id);
    """)


def _row_to_session(row: sqlite3.Row) -> SessionRecord:
    return SessionRecord(
        session_id=row["session_id"],
        title=row["title"],
        meeting_id=row["meeting_id"],
        scheduled_at=row["scheduled_at"],
        scheduled_duration_minutes=row["scheduled_duration_minutes"],
        actual_duration_minutes=row["actual_duration_minutes"],
        formal_end_minutes=row["formal_end_minutes"],
        cliff_detection=json.loads(row["cliff_detection"]) if row["cliff_detection"] else None,
    )


# ── Sessions ───────────────────────────────────────────

def upsert_session(session: SessionRecord) -> None:
    try:
        conn = _get_conn()
        conn.execute(
            "INSERT INTO sessions(session_id, title, meeting_id, scheduled_at, scheduled_duration_minutes, "
            "actual_duration_minutes, formal_end_minutes, cliff_detection) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(session_id) DO UPDATE SET title = excluded.title, meeting_id = excluded.meeting_id, "
            "scheduled_at = excluded.scheduled_at, "
            "scheduled_duration_minutes = excluded.scheduled_duration_minutes, "
            "actual_duration_minutes = excluded.actual_duration_minutes, "
            "formal_end_minutes = excluded.formal_end_minutes, "
            "cliff_detection = excluded.cliff_detection",
            (
                session.session_id, session.title, session.meeting_id, session.scheduled_at,
                session.scheduled_duration_minutes, session.actual_duration_minutes,
                session.formal_end_minutes,
                json.dumps(session.cliff_detection) if session.cliff_detection is not None else None,
            ),
        )
        conn.commit()
    except sqlite3.Error as e:
        raise PersistenceFailure(f"Failed to save session {session.session_id}: {e}") from e


def get_session(session_id: str) -> Optional[SessionRecord]:
    row = _get_conn().execute(
        "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
    ).fetchone()
    return _row_to_session(row) if row else None


def list_linked_sessions() -> list[SessionRecord]:
    """Sessions with a meeting id, most recent first (stable for equal dates)."""
    rows = _get_conn().execute(
        "SELECT * FROM sessions WHERE meeting_id IS NOT NULL AND meeting_id != '' "
        "ORDER BY scheduled_at DESC, session_id"
    ).fetchall()
    return [_row_to_session(r) for r in rows]


def save_session_state(
    session_id: str,
    cliff_detection: dict,
    formal_end_minutes: Optional[int],
    records: Optional[list[AttendanceRecord]] = None,
) -> None:
    """Write lifecycle state, formal end and (optionally) attendance in one transaction."""
    conn = _get_conn()
    try:
        with conn:
            conn.execute(
                "UPDATE sessions SET cliff_detection = ?, formal_end_minutes = ? WHERE session_id = ?",
                (json.dumps(cliff_detection), formal_end_minutes, session_id),
            )
            if records is not None:
                _replace_attendance(conn, session_id, records)
    except sqlite3.Error as e:
        raise PersistenceFailure(f"Failed to save state for session {session_id}: {e}") from e


# ── Attendance ─────────────────────────────────────────

def _replace_attendance(conn: sqlite3.Connection, session_id: str, records: list[AttendanceRecord]) -> None:
    conn.execute("DELETE FROM attendance WHERE session_id = ?", (session_id,))
    conn.executemany(
        "INSERT INTO attendance(session_id, identity_key, coverage_seconds, window_seconds, attendance_percentage) "
        "VALUES (?, ?, ?, ?, ?)",
        [(session_id, r.identity_key, r.coverage_seconds, r.window_seconds, r.attendance_percentage)
         for r in records],
    )


def get_attendance(session_id: str) -> list[AttendanceRecord]:
    rows = _get_conn().execute(
        "SELECT identity_key, coverage_seconds, window_seconds, attendance_percentage "
        "FROM attendance WHERE session_id = ? ORDER BY identity_key",
        (session_id,),
    ).fetchall()
    return [AttendanceRecord(r["identity_key"], r["coverage_seconds"], r["window_seconds"],
                             r["attendance_percentage"]) for r in rows]
