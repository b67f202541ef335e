import hashlib
import threading
from datetime import datetime, timedelta, timezone

from backend.config import DEDUP_BUCKET_SECONDS, SCAN_COOLDOWN_SECONDS, SCAN_GRACE_MINUTES
from backend.errors import ValidationError
from backend.models import (
    Booth,
    Classification,
    MutationAction,
    MutationRequest,
    Scan,
    ScanOutcome,
    ScanStatus,
    Session,
    SessionConfig,
)
from backend.registration_index import RegistrationIndex
from backend.session_config import select_active_session, session_is_active

_EPOCH = datetime(1970, 1, 1)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def compute_dedup_key(scan: Scan, *, bucket_seconds: int = DEDUP_BUCKET_SECONDS) -> str:
    """sha256 over attendee, target, device and the client timestamp floored to the bucket."""
    stamp = _naive_utc(scan.client_timestamp)
    bucket = int((stamp - _EPOCH).total_seconds()) // max(1, bucket_seconds)
    raw = "|".join([scan.attendee_id, scan.target.as_key(), scan.device_id, str(bucket)])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ScanCooldownCache:
    """
    Last successful outcome per (attendee, target, device).

    Entries older than `retention_seconds` are dropped whenever a new outcome
    is remembered.
    """

    def __init__(self, retention_seconds: int = SCAN_COOLDOWN_SECONDS):
        self.retention_seconds = retention_seconds
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str, str], tuple[datetime, ScanOutcome]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @staticmethod
    def _key(scan: Scan) -> tuple[str, str, str]:
        return (scan.attendee_id, scan.target.as_key(), scan.device_id)

    def lookup(self, scan: Scan, now: datetime, window_seconds: int) -> ScanOutcome | None:
        if window_seconds <= 0:
            return None
        with self._lock:
            entry = self._entries.get(self._key(scan))
        if entry is None:
            return None
        seen_at, outcome = entry
        if timedelta(0) <= (now - seen_at) <= timedelta(seconds=window_seconds):
            return outcome
        return None

    def remember(self, scan: Scan, outcome: ScanOutcome, now: datetime) -> None:
        cutoff = now - timedelta(seconds=max(0, self.retention_seconds))
        with self._lock:
            expired = [key for key, (seen_at, _) in self._entries.items() if seen_at < cutoff]
            for key in expired:
                del self._entries[key]
            self._entries[self._key(scan)] = (now, dict(outcome))  # type: ignore[arg-type]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def _build_outcome(
    *,
    scan: Scan,
    status: ScanStatus,
    success: bool,
    message: str,
    attendee_name: str | None,
    now: datetime,
    dedup_key: str,
    expected_booth: Booth | None = None,
    session: Session | None = None,
) -> ScanOutcome:
    return {
        "status": status,
        "success": success,
        "message": message,
        "attendee_id": scan.attendee_id,
        "attendee_name": attendee_name,
        "target_kind": scan.target.kind,
        "target_id": scan.target.id,
        "expected_booth_id": expected_booth.id if expected_booth else None,
        "expected_booth_name": expected_booth.display_name if expected_booth else None,
        "session_id": session.id if session else None,
        "session_name": session.name if session else None,
        "was_offline": False,
        "timestamp": now.isoformat(timespec="seconds"),
        "scan_id": scan.id,
        "dedup_key": dedup_key,
        "warning": None,
    }


def _build_mutation(
    scan: Scan,
    action: MutationAction,
    status: ScanStatus,
    *,
    session: Session | None,
) -> MutationRequest:
    return {
        "action": action,
        "scan_id": scan.id,
        "attendee_id": scan.attendee_id,
        "booth_id": scan.target.id if scan.target.kind == "booth" else None,
        "session_id": session.id if session else None,
        "device_id": scan.device_id,
        "client_timestamp": scan.client_timestamp.isoformat(),
        "scan_status": status,
    }


def _validate_identifiers(scan: Scan, index: RegistrationIndex) -> None:
    if not scan.attendee_id or not index.attendee_exists(scan.attendee_id):
        raise ValidationError("attendee", scan.attendee_id, f"Attendee '{scan.attendee_id}' not found.")
    if scan.target.kind == "booth" and index.get_booth(scan.target.id) is None:
        raise ValidationError("booth", scan.target.id, f"Booth '{scan.target.id}' not found.")
    if scan.target.kind == "session" and index.get_session(scan.target.id) is None:
        raise ValidationError("session", scan.target.id, f"Session '{scan.target.id}' not found.")


def classify_scan(
    scan: Scan,
    index: RegistrationIndex,
    *,
    now: datetime | None = None,
    cooldown: ScanCooldownCache | None = None,
    cooldown_seconds: int = SCAN_COOLDOWN_SECONDS,
    grace_minutes: int = SCAN_GRACE_MINUTES,
    bucket_seconds: int = DEDUP_BUCKET_SECONDS,
) -> Classification:
    """
    Decide what a badge read means. No network or disk access.

    Raises:
    - ValidationError for unknown attendee, booth or session ids.
    - ConfigError when the governing session carries a malformed config.

    The cooldown cache is only read here; callers remember successful outcomes
    once they have been handed back to the device.
    """
    clock = now or scan.client_timestamp
    _validate_identifiers(scan, index)

    if cooldown is not None:
        cached = cooldown.lookup(scan, clock, cooldown_seconds)
        if cached is not None:
            return Classification(outcome=cached, mutation=None, replayed=True)

    dedup_key = compute_dedup_key(scan, bucket_seconds=bucket_seconds)
    attendee_name = index.attendee_name(scan.attendee_id)

    def outcome(
        status: ScanStatus,
        success: bool,
        message: str,
        *,
        session: Session | None = None,
        expected_booth: Booth | None = None,
    ) -> ScanOutcome:
        return _build_outcome(
            scan=scan,
            status=status,
            success=success,
            message=message,
            attendee_name=attendee_name,
            now=clock,
            dedup_key=dedup_key,
            expected_booth=expected_booth,
            session=session,
        )

    if scan.target.kind == "session":
        session = index.get_session(scan.target.id)
        if session is None:
            raise ValidationError("session", scan.target.id, f"Session '{scan.target.id}' not found.")
        if not session_is_active(session, clock, grace_minutes=grace_minutes):
            result = outcome(
                "OUT_OF_SCHEDULE",
                False,
                f"Session '{session.name}' is not running at this time.",
                session=session,
            )
            return Classification(result, _build_mutation(scan, "record_only", "OUT_OF_SCHEDULE", session=session))
        config = index.effective_config(session)
        return _classify_session_scan(scan, index, session, config, clock, grace_minutes, outcome)

    session = select_active_session(index.all_sessions(), clock, grace_minutes=grace_minutes)
    if session is None:
        result = outcome("OUT_OF_SCHEDULE", False, "No active session at this time.")
        return Classification(result, _build_mutation(scan, "record_only", "OUT_OF_SCHEDULE", session=None))
    config = index.effective_config(session)
    return _classify_booth_scan(scan, index, session, config, outcome)


def _classify_booth_scan(
    scan: Scan,
    index: RegistrationIndex,
    session: Session,
    config: SessionConfig,
    outcome,
) -> Classification:
    booth_id = scan.target.id
    name = index.attendee_name(scan.attendee_id) or scan.attendee_id
    registration = index.find_registration(scan.attendee_id, session.id)

    if registration is not None:
        expected_id = registration.expected_booth_id
        expected_booth = index.get_booth(expected_id) if expected_id else None

        # The registration's booth decides, whatever the session's restriction.
        if expected_id is None or expected_id == booth_id:
            result = outcome(
                "EXPECTED",
                True,
                f"{name} checked in for '{session.name}'.",
                session=session,
                expected_booth=expected_booth,
            )
            return Classification(result, _build_mutation(scan, "mark_attended", "EXPECTED", session=session))

        where = expected_booth.display_name if expected_booth else expected_id
        message = f"Wrong booth: {name} is expected at {where}."
        result = outcome("WRONG_BOOTH", False, message, session=session, expected_booth=expected_booth)
        return Classification(result, _build_mutation(scan, "record_only", "WRONG_BOOTH", session=session))

    if config.walk_ins_permitted and config.booth_is_active(booth_id):
        result = outcome("WALK_IN", True, f"Walk-in: {name} added to '{session.name}'.", session=session)
        return Classification(result, _build_mutation(scan, "create_walk_in", "WALK_IN", session=session))

    result = outcome(
        "OUT_OF_SCHEDULE",
        False,
        f"{name} is not expected at this booth and walk-ins are not allowed for '{session.name}'.",
        session=session,
    )
    return Classification(result, _build_mutation(scan, "record_only", "OUT_OF_SCHEDULE", session=session))


def _classify_session_scan(
    scan: Scan,
    index: RegistrationIndex,
    session: Session,
    config: SessionConfig,
    clock: datetime,
    grace_minutes: int,
    outcome,
) -> Classification:
    name = index.attendee_name(scan.attendee_id) or scan.attendee_id
    registration = index.find_registration(scan.attendee_id, session.id)

    if registration is not None:
        expected_booth = index.get_booth(registration.expected_booth_id) if registration.expected_booth_id else None
        result = outcome(
            "EXPECTED",
            True,
            f"{name} checked in for '{session.name}'.",
            session=session,
            expected_booth=expected_booth,
        )
        return Classification(result, _build_mutation(scan, "mark_attended", "EXPECTED", session=session))

    conflict = _overlapping_registration(scan.attendee_id, index, session, clock, grace_minutes)

    if config.walk_ins_permitted:
        message = f"Walk-in: {name} added to '{session.name}'."
        if conflict is not None:
            message += f" Note: also registered for '{conflict.name}' at this time."
        result = outcome("WALK_IN", True, message, session=session)
        return Classification(result, _build_mutation(scan, "create_walk_in", "WALK_IN", session=session))

    message = f"{name} is not registered for '{session.name}' and walk-ins are not allowed."
    if conflict is not None:
        message += f" Registered for '{conflict.name}' instead."
    result = outcome("OUT_OF_SCHEDULE", False, message, session=session)
    return Classification(result, _build_mutation(scan, "record_only", "OUT_OF_SCHEDULE", session=session))


def _overlapping_registration(
    attendee_id: str,
    index: RegistrationIndex,
    session: Session,
    clock: datetime,
    grace_minutes: int,
) -> Session | None:
    overlapping = {
        s.id: s
        for s in index.sessions_overlapping(clock, grace_minutes=grace_minutes)
        if s.id != session.id
    }
    for reg in sorted(index.registrations_for(attendee_id), key=lambda r: r.session_id):
        other = overlapping.get(reg.session_id)
        if other is not None:
            return other
    return None
