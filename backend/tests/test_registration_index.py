from datetime import datetime

import pytest

from backend.errors import ValidationError
from backend.models import Attendee, Booth, EventSnapshot, Session, SessionRegistration
from backend.registration_index import RegistrationIndex


def _snapshot(**overrides) -> EventSnapshot:
    data = {
        "attendees": [Attendee("A1", "Ada"), Attendee("A2", "Grace")],
        "booths": [Booth("B1", capacity=2), Booth("B2")],
        "sessions": [Session("S1", "Meetings", datetime(2026, 3, 10, 10), datetime(2026, 3, 10, 11))],
        "registrations": [
            SessionRegistration("R1", "S1", "A1", expected_booth_id="B1"),
            SessionRegistration("R2", "S1", "A2", expected_booth_id="B1", status="Attended"),
        ],
    }
    data.update(overrides)
    return EventSnapshot(**data)


def test_load_builds_lookups_and_occupancy():
    index = RegistrationIndex()
    index.load(_snapshot())

    assert index.attendee_exists("A1")
    assert index.attendee_name("A2") == "Grace"
    assert index.find_registration("A1", "S1").expected_booth_id == "B1"
    assert index.occupancy("B1") == 1
    assert index.occupancy_snapshot() == {"B1": 1, "B2": 0}
    assert index.assigned_booth_ids("S1") == {"B1"}


def test_mark_attended_is_idempotent():
    index = RegistrationIndex()
    index.load(_snapshot())

    assert index.mark_attended("A1", "S1") == "success"
    assert index.mark_attended("A1", "S1") == "already_attended"
    assert index.find_registration("A1", "S1").status == "Attended"
    assert index.occupancy("B1") == 2


def test_mark_attended_without_registration_raises():
    index = RegistrationIndex()
    index.load(_snapshot())

    with pytest.raises(ValidationError):
        index.mark_attended("A1", "S404")


def test_mark_attended_leaves_no_show_alone():
    index = RegistrationIndex()
    no_show = SessionRegistration("R1", "S1", "A1", expected_booth_id="B1", status="No-Show")
    index.load(_snapshot(registrations=[no_show]))

    assert index.mark_attended("A1", "S1") == "ineligible"
    assert index.find_registration("A1", "S1").status == "No-Show"
    assert index.occupancy("B1") == 0


def test_record_walk_in_once():
    index = RegistrationIndex()
    index.load(_snapshot(registrations=[]))

    assert index.record_walk_in("A1", "S1", "B2") is True
    assert index.record_walk_in("A1", "S1", "B2") is False

    reg = index.find_registration("A1", "S1")
    assert reg.is_walk_in is True
    assert reg.status == "Attended"
    assert index.occupancy("B2") == 1


def test_refresh_uses_loader():
    calls = []

    def loader():
        calls.append(1)
        return _snapshot()

    index = RegistrationIndex(loader=loader)
    index.refresh()

    assert calls == [1]
    assert index.refreshed_at is not None
    assert index.get_booth("B1").capacity == 2


def test_refresh_without_loader_fails():
    with pytest.raises(RuntimeError):
        RegistrationIndex().refresh()
