import logging
import sqlite3
import uuid
from pathlib import Path

from backend.errors import ConflictError, NetworkError
from backend.models import CommitResult, MutationRequest, commit_result
from database.db import connect_db, ensure_event_schema

logger = logging.getLogger(__name__)


class SqliteAuthoritativeStore:
    """
    Authoritative commit against the event database.

    Every mutation is keyed by its dedup key in `commit_log`; a key seen before
    answers `already_applied`. Attendance uses a conditional update so a
    registration moves Registered -> Attended at most once, and walk-ins rely on
    UNIQUE(attendee_id, session_id). A walk-in for an attendee the live store
    already has registered marks that registration Attended instead.
    """

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = db_path

    def commit(self, dedup_key: str, mutation: MutationRequest) -> CommitResult:
        conn = connect_db(self.db_path)
        try:
            ensure_event_schema(conn)
            conn.execute("BEGIN IMMEDIATE")
            try:
                reason = self._apply(conn, dedup_key, mutation)
            except ConflictError:
                conn.rollback()
                return commit_result("already_applied")

            if reason is not None:
                conn.rollback()
                logger.warning("Commit %s rejected: %s", dedup_key[:12], reason)
                return commit_result("rejected", reason)

            conn.commit()
            return commit_result("applied")
        except sqlite3.OperationalError as exc:
            conn.rollback()
            raise NetworkError(f"Event database unavailable: {exc}") from exc
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _apply(self, conn: sqlite3.Connection, dedup_key: str, mutation: MutationRequest) -> str | None:
        """Return a rejection reason, or None when the mutation was applied."""
        cur = conn.cursor()
        cur.execute("SELECT 1 FROM commit_log WHERE dedup_key = ?", (dedup_key,))
        if cur.fetchone():
            raise ConflictError(f"Mutation {dedup_key} already applied")

        attendee_id = mutation["attendee_id"]
        session_id = mutation.get("session_id")
        booth_id = mutation.get("booth_id")
        action = mutation["action"]

        cur.execute("SELECT 1 FROM attendees WHERE id = ?", (attendee_id,))
        if not cur.fetchone():
            return f"Unknown attendee '{attendee_id}'"
        if booth_id:
            cur.execute("SELECT 1 FROM booths WHERE id = ?", (booth_id,))
            if not cur.fetchone():
                return f"Unknown booth '{booth_id}'"
        if session_id:
            cur.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,))
            if not cur.fetchone():
                return f"Unknown session '{session_id}'"

        if action == "mark_attended":
            if not session_id:
                return "mark_attended requires a session"
            cur.execute(
                """
                SELECT status
                FROM session_registrations
                WHERE attendee_id = ? AND session_id = ?
                """,
                (attendee_id, session_id),
            )
            if not cur.fetchone():
                return f"Attendee '{attendee_id}' is not registered for session '{session_id}'"
            reason = self._attend_existing(cur, attendee_id, session_id, mutation["client_timestamp"])
            if reason is not None:
                return reason
        elif action == "create_walk_in":
            if not session_id:
                return "create_walk_in requires a session"
            cur.execute(
                """
                INSERT OR IGNORE INTO session_registrations (
                    id, session_id, attendee_id, expected_booth_id, status, is_walk_in, attended_at
                )
                VALUES (?, ?, ?, ?, 'Attended', 1, ?)
                """,
                (str(uuid.uuid4()), session_id, attendee_id, booth_id, mutation["client_timestamp"]),
            )
            if cur.rowcount == 0:
                # A registration appeared after the device last refreshed its index.
                reason = self._attend_existing(cur, attendee_id, session_id, mutation["client_timestamp"])
                if reason is not None:
                    return reason
        elif action != "record_only":
            return f"Unsupported action '{action}'"

        cur.execute(
            """
            INSERT INTO scan_records (
                dedup_key, scan_id, attendee_id, booth_id, session_id, device_id,
                scan_status, action, client_timestamp
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                dedup_key,
                mutation["scan_id"],
                attendee_id,
                booth_id,
                session_id,
                mutation["device_id"],
                mutation["scan_status"],
                action,
                mutation["client_timestamp"],
            ),
        )
        cur.execute(
            """
            INSERT INTO commit_log (dedup_key, action, result)
            VALUES (?, ?, 'applied')
            """,
            (dedup_key, action),
        )
        return None

    @staticmethod
    def _attend_existing(cur: sqlite3.Cursor, attendee_id: str, session_id: str, attended_at: str) -> str | None:
        """Registered -> Attended on the live row; Attended is left as is, anything else is refused."""
        cur.execute(
            """
            UPDATE session_registrations
            SET status = 'Attended',
                attended_at = ?
            WHERE attendee_id = ? AND session_id = ? AND status = 'Registered'
            """,
            (attended_at, attendee_id, session_id),
        )
        if cur.rowcount:
            return None
        cur.execute(
            "SELECT status FROM session_registrations WHERE attendee_id = ? AND session_id = ?",
            (attendee_id, session_id),
        )
        row = cur.fetchone()
        if row and row[0] != "Attended":
            return f"Registration is '{row[0]}', cannot mark attended"
        return None
