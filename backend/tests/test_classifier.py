from datetime import datetime, timedelta, timezone

import pytest

from backend.classifier import ScanCooldownCache, classify_scan, compute_dedup_key
from backend.errors import ConfigError, ValidationError
from backend.models import (
    Attendee,
    Booth,
    EventSnapshot,
    Scan,
    ScanTarget,
    Session,
    SessionRegistration,
)
from backend.registration_index import RegistrationIndex

DAY = datetime(2026, 3, 10)


def at(hour: int, minute: int, second: int = 0) -> datetime:
    return DAY.replace(hour=hour, minute=minute, second=second)


def _scan(attendee_id: str, *, booth_id=None, session_id=None, when: datetime, device_id: str = "dev-1") -> Scan:
    return Scan(
        id=f"scan-{attendee_id}-{when:%H%M%S}",
        attendee_id=attendee_id,
        target=ScanTarget.from_ids(booth_id, session_id),
        device_id=device_id,
        client_timestamp=when,
    )


@pytest.fixture()
def index():
    snapshot = EventSnapshot(
        attendees=[
            Attendee("A101", "Ada Lovelace", "Analytical"),
            Attendee("A102", "Grace Hopper", "Navy"),
        ],
        booths=[Booth("B1"), Booth("B2"), Booth("B3", physical_id="P-3", company_name="Acme")],
        sessions=[
            Session(
                "S1",
                "Morning meetings",
                at(10, 0),
                at(10, 30),
                config={
                    "scanningContext": "booth_meeting",
                    "requiresPreAssignment": False,
                    "allowsWalkIns": True,
                    "boothRestriction": "assigned",
                    "boothIds": ["B1", "B2"],
                },
            ),
            Session("S2", "Keynote", at(11, 0), at(12, 0), session_type="presentation"),
            Session("S3", "Closed meeting", at(13, 0), at(14, 0), session_type="meeting"),
        ],
        registrations=[
            SessionRegistration("R1", "S1", "A101", expected_booth_id="B1"),
            SessionRegistration("R2", "S3", "A101", expected_booth_id="B3"),
        ],
    )
    idx = RegistrationIndex()
    idx.load(snapshot)
    return idx


def test_expected_at_assigned_booth(index):
    result = classify_scan(_scan("A101", booth_id="B1", when=at(10, 5)), index)

    assert result.outcome["status"] == "EXPECTED"
    assert result.outcome["success"] is True
    assert result.outcome["session_id"] == "S1"
    assert result.outcome["attendee_name"] == "Ada Lovelace"
    assert result.mutation is not None
    assert result.mutation["action"] == "mark_attended"
    assert result.mutation["session_id"] == "S1"
    assert result.replayed is False


def test_wrong_booth_names_expected_booth(index):
    result = classify_scan(_scan("A101", booth_id="B2", when=at(10, 6)), index)

    assert result.outcome["status"] == "WRONG_BOOTH"
    assert result.outcome["success"] is False
    assert result.outcome["expected_booth_id"] == "B1"
    assert result.outcome["expected_booth_name"] == "B1"
    assert result.mutation is not None
    assert result.mutation["action"] == "record_only"


def test_unknown_attendee_raises_validation_error(index):
    with pytest.raises(ValidationError) as exc:
        classify_scan(_scan("X999", booth_id="B1", when=at(10, 7)), index)
    assert exc.value.field_name == "attendee"


def test_unknown_booth_raises_validation_error(index):
    with pytest.raises(ValidationError):
        classify_scan(_scan("A101", booth_id="B404", when=at(10, 7)), index)


def test_cooldown_replays_cached_outcome(index):
    cooldown = ScanCooldownCache()
    first = classify_scan(_scan("A101", booth_id="B1", when=at(10, 5)), index, cooldown=cooldown)
    cooldown.remember(_scan("A101", booth_id="B1", when=at(10, 5)), first.outcome, at(10, 5))

    wrong = classify_scan(_scan("A101", booth_id="B2", when=at(10, 6)), index, cooldown=cooldown)
    assert wrong.outcome["status"] == "WRONG_BOOTH"

    again = classify_scan(_scan("A101", booth_id="B1", when=at(10, 6)), index, cooldown=cooldown)
    assert again.replayed is True
    assert again.mutation is None
    assert again.outcome == first.outcome


def test_cooldown_expires(index):
    cooldown = ScanCooldownCache()
    first = classify_scan(_scan("A101", booth_id="B1", when=at(10, 5)), index, cooldown=cooldown)
    cooldown.remember(_scan("A101", booth_id="B1", when=at(10, 5)), first.outcome, at(10, 5))

    later = classify_scan(_scan("A101", booth_id="B1", when=at(10, 11)), index, cooldown=cooldown)
    assert later.replayed is False
    assert later.mutation is not None


def test_cooldown_is_per_device(index):
    cooldown = ScanCooldownCache()
    first = classify_scan(_scan("A101", booth_id="B1", when=at(10, 5)), index, cooldown=cooldown)
    cooldown.remember(_scan("A101", booth_id="B1", when=at(10, 5)), first.outcome, at(10, 5))

    other = classify_scan(_scan("A101", booth_id="B1", when=at(10, 6), device_id="dev-2"), index, cooldown=cooldown)
    assert other.replayed is False


def test_walk_in_when_unregistered_and_allowed(index):
    result = classify_scan(_scan("A102", booth_id="B2", when=at(10, 10)), index)

    assert result.outcome["status"] == "WALK_IN"
    assert result.outcome["success"] is True
    assert result.mutation is not None
    assert result.mutation["action"] == "create_walk_in"
    assert result.mutation["booth_id"] == "B2"


def test_walk_in_rejected_at_inactive_booth(index):
    result = classify_scan(_scan("A102", booth_id="B3", when=at(10, 10)), index)

    assert result.outcome["status"] == "OUT_OF_SCHEDULE"
    assert result.outcome["success"] is False
    assert "walk-ins are not allowed" in result.outcome["message"]


def test_outside_every_session_is_out_of_schedule(index):
    result = classify_scan(_scan("A101", booth_id="B1", when=at(9, 0)), index)

    assert result.outcome["status"] == "OUT_OF_SCHEDULE"
    assert result.outcome["session_id"] is None
    assert result.mutation is not None
    assert result.mutation["action"] == "record_only"


def test_grace_window_extends_session(index):
    result = classify_scan(_scan("A101", booth_id="B1", when=at(9, 57)), index, grace_minutes=5)
    assert result.outcome["status"] == "EXPECTED"


def test_legacy_meeting_rejects_walk_ins(index):
    result = classify_scan(_scan("A102", booth_id="B3", when=at(13, 15)), index)

    assert result.outcome["status"] == "OUT_OF_SCHEDULE"
    assert result.outcome["session_id"] == "S3"


def test_legacy_meeting_expected_at_assigned_booth(index):
    result = classify_scan(_scan("A101", booth_id="B3", when=at(13, 15)), index)

    assert result.outcome["status"] == "EXPECTED"
    assert result.outcome["expected_booth_name"] == "Acme"


def test_presentation_accepts_walk_in_at_any_booth(index):
    result = classify_scan(_scan("A102", booth_id="B3", when=at(11, 30)), index)
    assert result.outcome["status"] == "WALK_IN"


def test_session_mode_requires_running_session(index):
    result = classify_scan(_scan("A101", session_id="S2", when=at(10, 5)), index)

    assert result.outcome["status"] == "OUT_OF_SCHEDULE"
    assert result.outcome["session_name"] == "Keynote"


def test_session_mode_registered_is_expected(index):
    result = classify_scan(_scan("A101", session_id="S1", when=at(10, 5)), index)

    assert result.outcome["status"] == "EXPECTED"
    assert result.mutation is not None
    assert result.mutation["booth_id"] is None


def test_session_mode_walk_in_notes_conflicting_registration():
    idx = RegistrationIndex()
    idx.load(
        EventSnapshot(
            attendees=[Attendee("A101", "Ada Lovelace")],
            sessions=[
                Session("S1", "Workshop", at(10, 0), at(11, 0), session_type="networking"),
                Session("S2", "Panel", at(10, 30), at(11, 30), session_type="presentation"),
            ],
            registrations=[SessionRegistration("R1", "S1", "A101")],
        )
    )

    result = classify_scan(_scan("A101", session_id="S2", when=at(10, 45)), idx)

    assert result.outcome["status"] == "WALK_IN"
    assert "Workshop" in result.outcome["message"]


def test_malformed_config_blocks_session():
    idx = RegistrationIndex()
    idx.load(
        EventSnapshot(
            attendees=[Attendee("A101", "Ada Lovelace")],
            booths=[Booth("B1")],
            sessions=[
                Session("S1", "Leads", at(10, 0), at(11, 0), config={"scanningContext": "lead_capture"}),
            ],
        )
    )

    with pytest.raises(ConfigError) as exc:
        classify_scan(_scan("A101", booth_id="B1", when=at(10, 15)), idx)
    assert exc.value.session_id == "S1"


def _single_session_index(config: dict, registrations: list[SessionRegistration]) -> RegistrationIndex:
    idx = RegistrationIndex()
    idx.load(
        EventSnapshot(
            attendees=[Attendee("A101", "Ada Lovelace"), Attendee("A102", "Grace Hopper")],
            booths=[Booth("B1"), Booth("B2"), Booth("B9")],
            sessions=[Session("S1", "Expo", at(10, 0), at(12, 0), config=config)],
            registrations=registrations,
        )
    )
    return idx


def test_any_restriction_still_checks_expected_booth():
    idx = _single_session_index(
        {"scanningContext": "open_attendance", "boothRestriction": "any", "boothIds": ["B1", "B2"]},
        [
            SessionRegistration("R1", "S1", "A101", expected_booth_id="B1"),
            SessionRegistration("R2", "S1", "A102", expected_booth_id="B9"),
        ],
    )

    assert classify_scan(_scan("A101", booth_id="B1", when=at(10, 15)), idx).outcome["status"] == "EXPECTED"

    wrong = classify_scan(_scan("A101", booth_id="B2", when=at(10, 16)), idx)
    assert wrong.outcome["status"] == "WRONG_BOOTH"
    assert wrong.outcome["expected_booth_id"] == "B1"
    assert wrong.mutation is not None
    assert wrong.mutation["action"] == "record_only"

    # Expected booth outside boothIds still matches its own booth.
    assert classify_scan(_scan("A102", booth_id="B9", when=at(10, 17)), idx).outcome["status"] == "EXPECTED"


def test_none_restriction_flags_wrong_booth():
    idx = _single_session_index(
        {"scanningContext": "presentation", "allowsWalkIns": True, "boothRestriction": "none"},
        [
            SessionRegistration("R1", "S1", "A101", expected_booth_id="B1"),
            SessionRegistration("R2", "S1", "A102"),
        ],
    )

    wrong = classify_scan(_scan("A101", booth_id="B2", when=at(10, 15)), idx)
    assert wrong.outcome["status"] == "WRONG_BOOTH"
    assert wrong.outcome["expected_booth_name"] == "B1"
    assert wrong.mutation is not None
    assert wrong.mutation["action"] == "record_only"

    # No expected booth: any booth checks the attendee in.
    anywhere = classify_scan(_scan("A102", booth_id="B2", when=at(10, 16)), idx)
    assert anywhere.outcome["status"] == "EXPECTED"
    assert anywhere.mutation is not None
    assert anywhere.mutation["action"] == "mark_attended"


def test_cooldown_cache_drops_expired_entries(index):
    cooldown = ScanCooldownCache(retention_seconds=300)
    first = classify_scan(_scan("A101", booth_id="B1", when=at(10, 5)), index)

    cooldown.remember(_scan("A101", booth_id="B1", when=at(10, 5)), first.outcome, at(10, 5))
    cooldown.remember(_scan("A102", booth_id="B2", when=at(10, 6)), first.outcome, at(10, 6))
    assert len(cooldown) == 2

    cooldown.remember(_scan("A101", booth_id="B2", when=at(10, 20)), first.outcome, at(10, 20))
    assert len(cooldown) == 1
    assert cooldown.lookup(_scan("A101", booth_id="B1", when=at(10, 20)), at(10, 20), 3600) is None


def test_dedup_key_collapses_same_minute():
    first = _scan("A101", booth_id="B1", when=at(10, 5, 1))
    second = _scan("A101", booth_id="B1", when=at(10, 5, 59))
    third = _scan("A101", booth_id="B1", when=at(10, 6, 0))

    assert compute_dedup_key(first) == compute_dedup_key(second)
    assert compute_dedup_key(first) != compute_dedup_key(third)


def test_dedup_key_normalizes_timezones():
    naive = _scan("A101", booth_id="B1", when=at(10, 5))
    shifted = Scan(
        id="other",
        attendee_id="A101",
        target=ScanTarget("booth", "B1"),
        device_id="dev-1",
        client_timestamp=at(12, 5).replace(tzinfo=timezone(timedelta(hours=2))),
    )
    assert compute_dedup_key(naive) == compute_dedup_key(shifted)
