import logging
import threading
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime
from typing import Callable, Literal

from backend.errors import ValidationError
from backend.models import (
    Attendee,
    Booth,
    EventSnapshot,
    Session,
    SessionConfig,
    SessionRegistration,
)
from backend.session_config import resolve_session_config, session_is_active

logger = logging.getLogger(__name__)

MarkAttendedResult = Literal["success", "already_attended", "ineligible"]


class RegistrationIndex:
    """
    Refreshable in-memory view of one event's registrations.

    Holds attendee -> {session -> registration}, booth -> occupancy and the
    read-only attendee/booth/session registries taken from the same snapshot.
    The view may lag the live store; the store re-validates on commit.
    """

    def __init__(self, loader: Callable[[], EventSnapshot] | None = None):
        self._loader = loader
        self._lock = threading.RLock()
        self._attendees: dict[str, Attendee] = {}
        self._booths: dict[str, Booth] = {}
        self._sessions: dict[str, Session] = {}
        self._registrations: dict[str, dict[str, SessionRegistration]] = {}
        self._occupancy: Counter[str] = Counter()
        self.refreshed_at: datetime | None = None

    def load(self, snapshot: EventSnapshot) -> None:
        registrations: dict[str, dict[str, SessionRegistration]] = {}
        occupancy: Counter[str] = Counter()
        for reg in snapshot.registrations:
            registrations.setdefault(reg.attendee_id, {})[reg.session_id] = reg
            if reg.status == "Attended" and reg.expected_booth_id:
                occupancy[reg.expected_booth_id] += 1

        with self._lock:
            self._attendees = {a.id: a for a in snapshot.attendees}
            self._booths = {b.id: b for b in snapshot.booths}
            self._sessions = {s.id: s for s in snapshot.sessions}
            self._registrations = registrations
            self._occupancy = occupancy
            self.refreshed_at = datetime.now()

        logger.info(
            "Registration index loaded: %d attendees, %d booths, %d sessions, %d registrations",
            len(snapshot.attendees),
            len(snapshot.booths),
            len(snapshot.sessions),
            len(snapshot.registrations),
        )

    def refresh(self) -> None:
        if self._loader is None:
            raise RuntimeError("RegistrationIndex has no loader configured.")
        self.load(self._loader())

    # -----------------------------
    # Registries
    # -----------------------------
    def attendee_exists(self, attendee_id: str) -> bool:
        with self._lock:
            return attendee_id in self._attendees

    def attendee_name(self, attendee_id: str) -> str | None:
        with self._lock:
            attendee = self._attendees.get(attendee_id)
        return attendee.name if attendee else None

    def get_booth(self, booth_id: str) -> Booth | None:
        with self._lock:
            return self._booths.get(booth_id)

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def sessions_overlapping(self, now: datetime, *, grace_minutes: int = 0) -> list[Session]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [s for s in sessions if session_is_active(s, now, grace_minutes=grace_minutes)]

    def all_sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def effective_config(self, session: Session) -> SessionConfig:
        return resolve_session_config(session, assigned_booth_ids=self.assigned_booth_ids(session.id))

    def assigned_booth_ids(self, session_id: str) -> set[str]:
        with self._lock:
            return {
                reg.expected_booth_id
                for regs in self._registrations.values()
                for reg in regs.values()
                if reg.session_id == session_id and reg.expected_booth_id
            }

    # -----------------------------
    # Registrations
    # -----------------------------
    def find_registration(self, attendee_id: str, session_id: str) -> SessionRegistration | None:
        with self._lock:
            return self._registrations.get(attendee_id, {}).get(session_id)

    def registrations_for(self, attendee_id: str) -> list[SessionRegistration]:
        with self._lock:
            return list(self._registrations.get(attendee_id, {}).values())

    def mark_attended(self, attendee_id: str, session_id: str) -> MarkAttendedResult:
        """
        Registered -> Attended. A second call for the same pair is a no-op;
        any other status (No-Show) is left alone and reported as ineligible.
        """
        with self._lock:
            reg = self._registrations.get(attendee_id, {}).get(session_id)
            if reg is None:
                raise ValidationError(
                    "registration",
                    f"{attendee_id}/{session_id}",
                    f"No registration for attendee '{attendee_id}' in session '{session_id}'",
                )
            if reg.status == "Attended":
                return "already_attended"
            if reg.status != "Registered":
                return "ineligible"
            self._registrations[attendee_id][session_id] = replace(reg, status="Attended")
            if reg.expected_booth_id:
                self._occupancy[reg.expected_booth_id] += 1
            return "success"

    def record_walk_in(self, attendee_id: str, session_id: str, booth_id: str | None) -> bool:
        """Add an ad-hoc Attended registration; False if one already exists."""
        with self._lock:
            regs = self._registrations.setdefault(attendee_id, {})
            if session_id in regs:
                return False
            regs[session_id] = SessionRegistration(
                id=f"walkin-{uuid.uuid4()}",
                session_id=session_id,
                attendee_id=attendee_id,
                expected_booth_id=booth_id,
                status="Attended",
                is_walk_in=True,
            )
            if booth_id:
                self._occupancy[booth_id] += 1
            return True

    def occupancy(self, booth_id: str) -> int:
        with self._lock:
            return self._occupancy.get(booth_id, 0)

    def occupancy_snapshot(self) -> dict[str, int]:
        with self._lock:
            return {booth_id: self._occupancy.get(booth_id, 0) for booth_id in self._booths}
