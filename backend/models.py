from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal, Protocol, TypedDict

ScanStatus = Literal["EXPECTED", "WRONG_BOOTH", "WALK_IN", "OUT_OF_SCHEDULE"]
ScanningContext = Literal[
    "booth_meeting",
    "presentation",
    "lead_capture",
    "open_attendance",
    "networking",
    "custom",
]
BoothRestriction = Literal["assigned", "any", "none"]
RegistrationStatus = Literal["Registered", "Attended", "No-Show"]
TargetKind = Literal["booth", "session"]
MutationAction = Literal["mark_attended", "create_walk_in", "record_only"]
CommitStatus = Literal["applied", "already_applied", "rejected"]

SCANNING_CONTEXTS: set[str] = {
    "booth_meeting",
    "presentation",
    "lead_capture",
    "open_attendance",
    "networking",
    "custom",
}
BOOTH_RESTRICTIONS: set[str] = {"assigned", "any", "none"}


@dataclass(frozen=True)
class Attendee:
    id: str
    name: str
    organization: str | None = None


@dataclass(frozen=True)
class Booth:
    id: str
    physical_id: str | None = None
    company_name: str | None = None
    capacity: int | None = None

    @property
    def display_name(self) -> str:
        return self.company_name or self.physical_id or self.id


@dataclass(frozen=True)
class SessionConfig:
    scanning_context: ScanningContext
    requires_pre_assignment: bool = False
    allows_walk_ins: bool = True
    booth_restriction: BoothRestriction = "none"
    booth_ids: frozenset[str] = frozenset()
    has_capacity: bool = False
    max_capacity: int | None = None
    lead_form: dict[str, Any] | None = None
    location: str | None = None
    speaker: str | None = None

    @property
    def walk_ins_permitted(self) -> bool:
        return self.allows_walk_ins and not self.requires_pre_assignment

    def booth_is_active(self, booth_id: str) -> bool:
        return self.booth_restriction == "none" or booth_id in self.booth_ids


@dataclass(frozen=True)
class Session:
    id: str
    name: str
    start_time: datetime
    end_time: datetime
    session_type: str | None = None
    # Raw stored config (JSON object); resolved lazily so a broken config only
    # blocks its own session.
    config: dict[str, Any] | None = None


@dataclass(frozen=True)
class SessionRegistration:
    id: str
    session_id: str
    attendee_id: str
    expected_booth_id: str | None = None
    status: RegistrationStatus = "Registered"
    is_walk_in: bool = False


@dataclass(frozen=True)
class ScanTarget:
    kind: TargetKind
    id: str

    @classmethod
    def from_ids(cls, booth_id: str | None = None, session_id: str | None = None) -> "ScanTarget":
        booth = (booth_id or "").strip()
        session = (session_id or "").strip()
        if booth and session:
            raise ValueError("Specify either booth_id or session_id, not both.")
        if booth:
            return cls("booth", booth)
        if session:
            return cls("session", session)
        raise ValueError("Neither booth_id nor session_id specified.")

    def as_key(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass(frozen=True)
class Scan:
    id: str
    attendee_id: str
    target: ScanTarget
    device_id: str
    client_timestamp: datetime


@dataclass(frozen=True)
class EventSnapshot:
    attendees: list[Attendee] = field(default_factory=list)
    booths: list[Booth] = field(default_factory=list)
    sessions: list[Session] = field(default_factory=list)
    registrations: list[SessionRegistration] = field(default_factory=list)


class ScanOutcome(TypedDict):
    status: ScanStatus
    success: bool
    message: str
    attendee_id: str
    attendee_name: str | None
    target_kind: TargetKind
    target_id: str
    expected_booth_id: str | None
    expected_booth_name: str | None
    session_id: str | None
    session_name: str | None
    was_offline: bool
    timestamp: str
    scan_id: str
    dedup_key: str | None
    warning: str | None


class MutationRequest(TypedDict):
    action: MutationAction
    scan_id: str
    attendee_id: str
    booth_id: str | None
    session_id: str | None
    device_id: str
    client_timestamp: str
    scan_status: ScanStatus


class CommitResult(TypedDict):
    status: CommitStatus
    reason: str | None


@dataclass(frozen=True)
class Classification:
    outcome: ScanOutcome
    mutation: MutationRequest | None
    replayed: bool = False


@dataclass(frozen=True)
class PendingScanRecord:
    dedup_key: str
    scan: Scan
    outcome: ScanOutcome
    mutation: MutationRequest
    attempts: int
    next_retry_at: datetime
    last_error: str | None
    needs_review: bool
    created_at: datetime


def commit_result(status: CommitStatus, reason: str | None = None) -> CommitResult:
    return {"status": status, "reason": reason}


class AuthoritativeStore(Protocol):
    def commit(self, dedup_key: str, mutation: MutationRequest) -> CommitResult: ...
