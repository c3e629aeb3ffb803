from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import clock_of, local, next_monday
from core.errors import DataAccessError, NotFound, ValidationError
from models.appointment import AppointmentStatus
from services.availability import (
    ANY_PROFESSIONAL,
    OperatingWindow,
    SpecificProfessional,
    compute_slots,
    find_available_slots,
    get_available_slots,
    is_bookable_start,
    operating_window,
    parse_professional_choice,
)


def test_empty_day_offers_every_slot_whose_service_fits(db, org) -> None:
    day = next_monday()

    slots = find_available_slots(db, org, day, 60, ANY_PROFESSIONAL, now=local(day, "08:00"))

    assert [clock_of(s) for s in slots] == [
        "09:00", "09:30", "10:00", "10:30", "11:00", "11:30", "12:00", "12:30", "13:00",
        "13:30", "14:00", "14:30", "15:00", "15:30", "16:00", "16:30", "17:00",
    ]


def test_existing_appointment_blocks_overlapping_starts(db, org, services, professionals, make_appointment) -> None:
    day = next_monday()
    make_appointment(services["color"], professionals["ana"], local(day, "10:00"))
    ana = SpecificProfessional(professionals["ana"].id)

    slots = [clock_of(s) for s in find_available_slots(db, org, day, 30, ana, now=local(day, "08:00"))]

    assert "10:00" not in slots
    assert "10:30" not in slots
    assert "09:30" in slots
    assert "11:00" in slots


def test_longer_service_cannot_run_into_a_later_appointment(db, org, services, professionals, make_appointment) -> None:
    day = next_monday()
    make_appointment(services["color"], professionals["ana"], local(day, "10:00"))

    slots = [clock_of(s) for s in find_available_slots(db, org, day, 60, now=local(day, "08:00"))]

    # 09:30-10:30 would overlap 10:00-11:00 even though 09:30 itself is free
    assert "09:30" not in slots
    assert "09:00" in slots
    assert "11:00" in slots


def test_last_slot_ends_exactly_at_closing(db, org) -> None:
    day = next_monday()

    slots = find_available_slots(db, org, day, 90, now=local(day, "08:00"))

    assert clock_of(slots[-1]) == "16:30"
    assert all(s + timedelta(minutes=90) <= local(day, "18:00") for s in slots)


def test_past_candidates_are_dropped(db, org) -> None:
    day = next_monday()

    slots = find_available_slots(db, org, day, 30, now=local(day, "12:10"))

    assert clock_of(slots[0]) == "12:30"


def test_cancelled_appointments_do_not_occupy_the_schedule(db, org, services, professionals, make_appointment) -> None:
    day = next_monday()
    make_appointment(services["haircut"], professionals["ana"], local(day, "10:00"), status=AppointmentStatus.CANCELLED)

    slots = [clock_of(s) for s in find_available_slots(db, org, day, 30, now=local(day, "08:00"))]

    assert "10:00" in slots


def test_specific_professional_only_sees_their_own_appointments(db, org, services, professionals, make_appointment) -> None:
    day = next_monday()
    make_appointment(services["haircut"], professionals["ana"], local(day, "10:00"))
    now = local(day, "08:00")

    for_bruno = find_available_slots(db, org, day, 30, SpecificProfessional(professionals["bruno"].id), now=now)
    for_ana = find_available_slots(db, org, day, 30, SpecificProfessional(professionals["ana"].id), now=now)
    for_anyone = find_available_slots(db, org, day, 30, ANY_PROFESSIONAL, now=now)

    assert local(day, "10:00") in for_bruno
    assert local(day, "10:00") not in for_ana
    assert local(day, "10:00") not in for_anyone


def test_repeated_queries_return_the_same_slots(db, org, services, professionals, make_appointment) -> None:
    day = next_monday()
    make_appointment(services["color"], professionals["bruno"], local(day, "14:00"))
    now = local(day, "08:00")

    assert find_available_slots(db, org, day, 60, now=now) == find_available_slots(db, org, day, 60, now=now)


def test_closed_weekday_has_no_slots(db, org) -> None:
    org.settings = {"opening_hours": {"monday": None}}
    db.commit()
    day = next_monday()

    assert operating_window(org, day) is None
    assert find_available_slots(db, org, day, 30, now=local(day, "08:00")) == []


def test_custom_hours_and_step(db, org) -> None:
    org.settings = {"opening_hours": {"monday": {"open": "10:00", "close": "13:00"}}, "slot_step_minutes": 60}
    db.commit()
    day = next_monday()

    slots = find_available_slots(db, org, day, 60, now=local(day, "08:00"))

    assert [clock_of(s) for s in slots] == ["10:00", "11:00", "12:00"]


def test_failed_schedule_read_is_not_an_empty_schedule(db, org) -> None:
    day = next_monday()

    with patch.object(db, "query", side_effect=OperationalError("SELECT", {}, Exception("connection lost"))):
        with pytest.raises(DataAccessError):
            find_available_slots(db, org, day, 30, now=local(day, "08:00"))


def test_non_positive_duration_is_rejected(db, org) -> None:
    day = next_monday()

    with pytest.raises(ValidationError):
        find_available_slots(db, org, day, 0)

    window = OperatingWindow(local(day, "09:00"), local(day, "18:00"))
    with pytest.raises(ValidationError):
        compute_slots(window, [], -30, 30, local(day, "08:00"))


def test_compute_slots_touching_intervals_do_not_overlap() -> None:
    day = next_monday()
    window = OperatingWindow(local(day, "09:00"), local(day, "11:00"))
    busy = [(local(day, "10:00"), local(day, "10:30"))]

    slots = compute_slots(window, busy, 30, 30, local(day, "08:00"))

    assert [clock_of(s) for s in slots] == ["09:00", "09:30", "10:30"]


def test_get_available_slots_resolves_service_and_professional(db, org, services, professionals) -> None:
    day = next_monday()

    service, slots = get_available_slots(
        db, org, day, str(services["spa"].id), SpecificProfessional(professionals["ana"].id), now=local(day, "08:00")
    )

    assert service.id == services["spa"].id
    assert clock_of(slots[-1]) == "16:30"

    with pytest.raises(NotFound):
        get_available_slots(db, org, day, str(services["spa"].id), SpecificProfessional(org.id))


def test_inactive_service_is_not_bookable(db, org, services) -> None:
    services["haircut"].is_active = False
    db.commit()

    with pytest.raises(NotFound):
        get_available_slots(db, org, next_monday(), str(services["haircut"].id))


def test_is_bookable_start_requires_grid_alignment(org) -> None:
    day = next_monday()

    assert is_bookable_start(org, local(day, "09:30"), 30)
    assert not is_bookable_start(org, local(day, "09:15"), 30)
    assert not is_bookable_start(org, local(day, "17:30"), 60)
    assert not is_bookable_start(org, local(day, "08:30"), 30)


def test_parse_professional_choice() -> None:
    assert parse_professional_choice(None) is ANY_PROFESSIONAL
    assert parse_professional_choice("any") is ANY_PROFESSIONAL
    assert parse_professional_choice("") is ANY_PROFESSIONAL

    choice = parse_professional_choice("6f1c1a57-1f35-4c6e-9d37-3b0bfa2c3c11")
    assert isinstance(choice, SpecificProfessional)

    with pytest.raises(ValidationError):
        parse_professional_choice("not-a-uuid")
