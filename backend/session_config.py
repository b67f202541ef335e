from datetime import datetime, timedelta
from typing import Any, Iterable, cast

from backend.errors import ConfigError
from backend.models import (
    BOOTH_RESTRICTIONS,
    SCANNING_CONTEXTS,
    BoothRestriction,
    ScanningContext,
    Session,
    SessionConfig,
)

# Quick-setup presets offered when an organizer configures a session. Some are
# templates that still need boothIds or maxCapacity before they validate.
SESSION_CONFIG_PRESETS: dict[str, dict[str, Any]] = {
    "booth_meeting": {
        "scanningContext": "booth_meeting",
        "requiresPreAssignment": True,
        "allowsWalkIns": False,
        "boothRestriction": "assigned",
    },
    "keynote_presentation": {
        "scanningContext": "presentation",
        "requiresPreAssignment": False,
        "allowsWalkIns": True,
        "boothRestriction": "none",
        "hasCapacity": True,
    },
    "lead_capture_station": {
        "scanningContext": "lead_capture",
        "requiresPreAssignment": False,
        "allowsWalkIns": True,
        "boothRestriction": "any",
        "leadForm": {"collectEmail": True, "collectPhone": True, "collectNotes": True},
    },
    "networking_event": {
        "scanningContext": "networking",
        "requiresPreAssignment": False,
        "allowsWalkIns": True,
        "boothRestriction": "none",
    },
    "open_attendance": {
        "scanningContext": "open_attendance",
        "requiresPreAssignment": False,
        "allowsWalkIns": True,
        "boothRestriction": "none",
    },
}


def validate_session_config(raw: dict[str, Any]) -> list[str]:
    """
    Return the list of problems with a stored config object (empty when valid).

    Used both when a config is saved and when it is resolved for scanning.
    """
    errors: list[str] = []

    context = raw.get("scanningContext")
    if not context:
        errors.append("Scanning context is required")
    elif context not in SCANNING_CONTEXTS:
        errors.append(f"Unknown scanning context '{context}'")

    restriction = raw.get("boothRestriction", "none")
    if restriction not in BOOTH_RESTRICTIONS:
        errors.append(f"Unknown booth restriction '{restriction}'")

    if raw.get("hasCapacity"):
        max_capacity = raw.get("maxCapacity")
        if not isinstance(max_capacity, int) or max_capacity <= 0:
            errors.append("Max capacity must be greater than 0 when capacity is enabled")

    if restriction != "none" and not raw.get("boothIds"):
        errors.append("Booth IDs must be specified when booth restriction is enabled")

    if context == "lead_capture" and not raw.get("leadForm"):
        errors.append("Lead form configuration is required for lead capture sessions")

    return errors


def session_config_from_dict(raw: dict[str, Any], *, session_id: str | None = None) -> SessionConfig:
    errors = validate_session_config(raw)
    if errors:
        raise ConfigError(session_id, errors)

    max_capacity = raw.get("maxCapacity")
    return SessionConfig(
        scanning_context=cast(ScanningContext, raw["scanningContext"]),
        requires_pre_assignment=bool(raw.get("requiresPreAssignment", False)),
        allows_walk_ins=bool(raw.get("allowsWalkIns", True)),
        booth_restriction=cast(BoothRestriction, raw.get("boothRestriction", "none")),
        booth_ids=frozenset(str(b) for b in raw.get("boothIds") or []),
        has_capacity=bool(raw.get("hasCapacity", False)),
        max_capacity=int(max_capacity) if max_capacity is not None else None,
        lead_form=raw.get("leadForm"),
        location=raw.get("location"),
        speaker=raw.get("speaker"),
    )


def session_config_to_dict(config: SessionConfig) -> dict[str, Any]:
    data: dict[str, Any] = {
        "scanningContext": config.scanning_context,
        "requiresPreAssignment": config.requires_pre_assignment,
        "allowsWalkIns": config.allows_walk_ins,
        "boothRestriction": config.booth_restriction,
        "boothIds": sorted(config.booth_ids),
        "hasCapacity": config.has_capacity,
    }
    if config.max_capacity is not None:
        data["maxCapacity"] = config.max_capacity
    if config.lead_form is not None:
        data["leadForm"] = config.lead_form
    if config.location:
        data["location"] = config.location
    if config.speaker:
        data["speaker"] = config.speaker
    return data


def legacy_session_config(session_type: str | None, *, assigned_booth_ids: Iterable[str] = ()) -> SessionConfig:
    """Default config for sessions created before per-session configs existed."""
    normalized = (session_type or "").strip().lower()
    if normalized == "meeting":
        return SessionConfig(
            scanning_context="booth_meeting",
            requires_pre_assignment=True,
            allows_walk_ins=False,
            booth_restriction="assigned",
            booth_ids=frozenset(assigned_booth_ids),
        )
    if normalized in {"presentation", "networking"}:
        return SessionConfig(
            scanning_context=cast(ScanningContext, normalized),
            allows_walk_ins=True,
            booth_restriction="none",
        )
    return SessionConfig(scanning_context="open_attendance", allows_walk_ins=True, booth_restriction="none")


def resolve_session_config(session: Session, *, assigned_booth_ids: Iterable[str] = ()) -> SessionConfig:
    if session.config:
        return session_config_from_dict(session.config, session_id=session.id)
    return legacy_session_config(session.session_type, assigned_booth_ids=assigned_booth_ids)


def session_is_active(session: Session, now: datetime, *, grace_minutes: int = 0) -> bool:
    grace = timedelta(minutes=max(0, grace_minutes))
    return (session.start_time - grace) <= now <= (session.end_time + grace)


def select_active_session(
    sessions: Iterable[Session],
    now: datetime,
    *,
    grace_minutes: int = 0,
) -> Session | None:
    """
    Pick the session governing `now`.

    Sessions actually running win over sessions only inside the grace margin.
    Ties go to the earliest start, then the smallest id, so retries of the same
    scan always land on the same session.
    """
    pool = list(sessions)
    candidates = [s for s in pool if session_is_active(s, now)]
    if not candidates and grace_minutes > 0:
        candidates = [s for s in pool if session_is_active(s, now, grace_minutes=grace_minutes)]
    if not candidates:
        return None
    return min(candidates, key=lambda s: (s.start_time, s.id))
