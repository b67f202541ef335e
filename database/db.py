import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from backend.config import DB_PATH
from backend.models import Attendee, Booth, EventSnapshot, Session, SessionRegistration
from backend.session_config import session_config_from_dict, session_config_to_dict

EVENT_SCHEMA_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "001_event_schema.sql"


def connect_db(path: Path | str | None = None):
    conn = sqlite3.connect(str(path or DB_PATH), check_same_thread=False)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables(conn: sqlite3.Connection | None = None) -> None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        ensure_event_schema(active_conn)
        active_conn.commit()
    finally:
        if owns_conn:
            active_conn.close()


def ensure_event_schema(conn: sqlite3.Connection) -> None:
    """
    Ensure the authoritative tables exist.

    SQL source: `database/migrations/001_event_schema.sql`.
    """
    cur = conn.cursor()
    cur.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type='table'
          AND name IN ('attendees', 'booths', 'sessions', 'session_registrations', 'scan_records', 'commit_log')
        """
    )
    existing = {str(row[0]) for row in cur.fetchall()}
    if len(existing) < 6:
        sql = EVENT_SCHEMA_MIGRATION_FILE.read_text(encoding="utf-8")
        conn.executescript(sql)


def _ts(value: datetime) -> str:
    return value.isoformat(sep=" ", timespec="seconds")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


# -----------------------------
# Attendees / Booths
# -----------------------------
def add_attendee(attendee_id: str, name: str, organization: str | None = None, *, conn=None) -> str:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        active_conn.execute(
            """
            INSERT INTO attendees (id, name, organization)
            VALUES (?, ?, ?)
            """,
            (attendee_id, name, organization),
        )
        if owns_conn:
            active_conn.commit()
        return attendee_id
    finally:
        if owns_conn:
            active_conn.close()


def add_booth(
    booth_id: str,
    physical_id: str | None = None,
    company_name: str | None = None,
    capacity: int | None = None,
    *,
    conn=None,
) -> str:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        active_conn.execute(
            """
            INSERT INTO booths (id, physical_id, company_name, capacity)
            VALUES (?, ?, ?, ?)
            """,
            (booth_id, physical_id, company_name, capacity),
        )
        if owns_conn:
            active_conn.commit()
        return booth_id
    finally:
        if owns_conn:
            active_conn.close()


# -----------------------------
# Sessions
# -----------------------------
def add_session(
    session_id: str,
    name: str,
    start_time: datetime,
    end_time: datetime,
    *,
    session_type: str | None = None,
    config: dict[str, Any] | None = None,
    conn=None,
) -> str:
    """
    Insert a session. A supplied config is validated first; an invalid one
    raises ConfigError and nothing is written.
    """
    if end_time <= start_time:
        raise ValueError("Session end_time must be after start_time.")

    config_json = None
    if config is not None:
        normalized = session_config_to_dict(session_config_from_dict(config, session_id=session_id))
        config_json = json.dumps(normalized)

    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        active_conn.execute(
            """
            INSERT INTO sessions (id, name, start_time, end_time, session_type, config_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, name, _ts(start_time), _ts(end_time), session_type, config_json),
        )
        if owns_conn:
            active_conn.commit()
        return session_id
    finally:
        if owns_conn:
            active_conn.close()


def add_registration(
    attendee_id: str,
    session_id: str,
    *,
    expected_booth_id: str | None = None,
    status: str = "Registered",
    registration_id: str | None = None,
    conn=None,
) -> str:
    reg_id = registration_id or str(uuid.uuid4())
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        active_conn.execute(
            """
            INSERT INTO session_registrations (id, session_id, attendee_id, expected_booth_id, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            (reg_id, session_id, attendee_id, expected_booth_id, status),
        )
        if owns_conn:
            active_conn.commit()
        return reg_id
    finally:
        if owns_conn:
            active_conn.close()


def get_registration(attendee_id: str, session_id: str, *, conn=None) -> SessionRegistration | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        row = active_conn.execute(
            """
            SELECT id, session_id, attendee_id, expected_booth_id, status, is_walk_in
            FROM session_registrations
            WHERE attendee_id = ? AND session_id = ?
            """,
            (attendee_id, session_id),
        ).fetchone()
    finally:
        if owns_conn:
            active_conn.close()
    return _registration_from_row(row) if row else None


def _registration_from_row(row) -> SessionRegistration:
    return SessionRegistration(
        id=str(row[0]),
        session_id=str(row[1]),
        attendee_id=str(row[2]),
        expected_booth_id=str(row[3]) if row[3] else None,
        status=row[4],
        is_walk_in=bool(row[5]),
    )


def load_event_snapshot(conn=None) -> EventSnapshot:
    """Read every registry table in one pass for the RegistrationIndex."""
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute("SELECT id, name, organization FROM attendees ORDER BY id")
        attendees = [Attendee(id=str(r[0]), name=str(r[1]), organization=r[2]) for r in cur.fetchall()]

        cur.execute("SELECT id, physical_id, company_name, capacity FROM booths ORDER BY id")
        booths = [
            Booth(
                id=str(r[0]),
                physical_id=r[1],
                company_name=r[2],
                capacity=int(r[3]) if r[3] is not None else None,
            )
            for r in cur.fetchall()
        ]

        cur.execute("SELECT id, name, start_time, end_time, session_type, config_json FROM sessions ORDER BY id")
        sessions = [
            Session(
                id=str(r[0]),
                name=str(r[1]),
                start_time=_parse_ts(r[2]),
                end_time=_parse_ts(r[3]),
                session_type=r[4],
                config=json.loads(r[5]) if r[5] else None,
            )
            for r in cur.fetchall()
        ]

        cur.execute(
            """
            SELECT id, session_id, attendee_id, expected_booth_id, status, is_walk_in
            FROM session_registrations
            ORDER BY session_id, attendee_id
            """
        )
        registrations = [_registration_from_row(r) for r in cur.fetchall()]
    finally:
        if owns_conn:
            active_conn.close()

    return EventSnapshot(attendees=attendees, booths=booths, sessions=sessions, registrations=registrations)


# -----------------------------
# Scan records
# -----------------------------
def get_scan_records(*, attendee_id: str | None = None, conn=None) -> list[dict[str, Any]]:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        query = """
            SELECT dedup_key, scan_id, attendee_id, booth_id, session_id, device_id,
                   scan_status, action, client_timestamp, recorded_at
            FROM scan_records
        """
        params: tuple[Any, ...] = ()
        if attendee_id:
            query += " WHERE attendee_id = ?"
            params = (attendee_id,)
        query += " ORDER BY client_timestamp, id"
        rows = active_conn.execute(query, params).fetchall()
    finally:
        if owns_conn:
            active_conn.close()

    return [
        {
            "dedup_key": r[0],
            "scan_id": r[1],
            "attendee_id": r[2],
            "booth_id": r[3],
            "session_id": r[4],
            "device_id": r[5],
            "scan_status": r[6],
            "action": r[7],
            "client_timestamp": r[8],
            "recorded_at": r[9],
        }
        for r in rows
    ]
