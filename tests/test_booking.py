from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from conftest import clock_of, local, next_monday
from core.errors import DataAccessError, NotFound, SlotNoLongerAvailable, ValidationError
from models.appointment import Appointment, AppointmentStatus
from models.customer import Customer
from models.organization import Organization
from services.availability import ANY_PROFESSIONAL, SpecificProfessional, find_available_slots
from services.booking import CustomerInfo, commit_booking, list_agenda, update_appointment_status


def _book(db, org, service, professional=ANY_PROFESSIONAL, clock="10:00", phone="+573001234567", name="Laura Gómez", notify=None):
    day = next_monday()
    return commit_booking(
        db,
        org,
        CustomerInfo(full_name=name, phone=phone),
        str(service.id),
        professional,
        slot_start=local(day, clock),
        now=local(day, "08:00"),
        notify=notify,
    )


def test_commit_creates_confirmed_appointment_and_customer(db, org, services, professionals) -> None:
    appointment = _book(db, org, services["color"], SpecificProfessional(professionals["bruno"].id))

    assert appointment.status == AppointmentStatus.CONFIRMED
    assert appointment.professional_id == professionals["bruno"].id
    assert appointment.end_time - appointment.start_time == timedelta(minutes=60)
    assert clock_of(appointment.start_time) == "10:00"

    customer = db.query(Customer).filter(Customer.id == appointment.customer_id).one()
    assert customer.full_name == "Laura Gómez"
    assert customer.whatsapp_number == "+573001234567"


def test_same_phone_reuses_the_customer(db, org, services, professionals) -> None:
    first = _book(db, org, services["haircut"], clock="10:00", phone="+57 300 123 4567")
    second = _book(db, org, services["haircut"], clock="11:00", phone="+57-300-123-4567", name="Laura G.")

    assert first.customer_id == second.customer_id
    assert db.query(Customer).filter(Customer.organization_id == org.id).count() == 1


def test_taken_slot_is_rejected(db, org, services, professionals) -> None:
    ana = SpecificProfessional(professionals["ana"].id)
    _book(db, org, services["color"], ana, clock="10:00")

    with pytest.raises(SlotNoLongerAvailable):
        _book(db, org, services["haircut"], ana, clock="10:30", phone="+573007654321")

    assert db.query(Appointment).count() == 1


def test_failed_commit_leaves_no_customer_behind(db, org, services, professionals) -> None:
    ana = SpecificProfessional(professionals["ana"].id)
    _book(db, org, services["haircut"], ana, clock="10:00")

    with pytest.raises(SlotNoLongerAvailable):
        _book(db, org, services["haircut"], ana, clock="10:00", phone="+573007654321")

    assert db.query(Customer).filter(Customer.whatsapp_number == "+573007654321").count() == 0


def test_storage_constraint_catches_a_missed_recheck(db, org, services, professionals) -> None:
    ana = SpecificProfessional(professionals["ana"].id)
    _book(db, org, services["haircut"], ana, clock="10:00")

    # Simulate a concurrent writer that passed its re-check before the first insert landed
    with patch("services.booking.find_collisions", return_value=[]):
        with pytest.raises(SlotNoLongerAvailable):
            _book(db, org, services["haircut"], ana, clock="10:00", phone="+573007654321")

    assert db.query(Appointment).count() == 1


def test_storage_constraint_rejects_overlap_with_a_different_start(db, org, services, professionals) -> None:
    ana = SpecificProfessional(professionals["ana"].id)
    _book(db, org, services["color"], ana, clock="10:00")

    # 10:30-11:00 sits inside 10:00-11:00 without sharing its start
    with patch("services.booking.find_collisions", return_value=[]):
        with pytest.raises(SlotNoLongerAvailable):
            _book(db, org, services["haircut"], ana, clock="10:30", phone="+573007654321")

    assert db.query(Appointment).count() == 1


def test_storage_constraint_allows_adjacent_appointments(db, org, services, professionals) -> None:
    ana = SpecificProfessional(professionals["ana"].id)
    _book(db, org, services["color"], ana, clock="10:00")

    with patch("services.booking.find_collisions", return_value=[]):
        later = _book(db, org, services["haircut"], ana, clock="11:00", phone="+573007654321")

    assert clock_of(later.start_time) == "11:00"


def test_storage_constraint_blocks_reopening_into_an_overlap(db, org, services, professionals) -> None:
    ana = SpecificProfessional(professionals["ana"].id)
    cancelled = _book(db, org, services["color"], ana, clock="10:00")
    update_appointment_status(db, org, cancelled.id, "cancelled")
    _book(db, org, services["haircut"], ana, clock="10:30", phone="+573007654321")

    with patch("services.booking.find_collisions", return_value=[]):
        with pytest.raises(SlotNoLongerAvailable):
            update_appointment_status(db, org, cancelled.id, "confirmed")

    db.refresh(cancelled)
    assert cancelled.status == AppointmentStatus.CANCELLED


def test_concurrent_commits_for_one_slot_book_exactly_once(session_factory, org, services, professionals) -> None:
    org_id = org.id
    ana_id = professionals["ana"].id
    service_id = services["haircut"].id
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def attempt(phone: str) -> None:
        session = session_factory()
        try:
            organization = session.query(Organization).filter(Organization.id == org_id).one()
            barrier.wait()
            day = next_monday()
            commit_booking(
                session,
                organization,
                CustomerInfo(full_name="Cliente Concurrente", phone=phone),
                str(service_id),
                SpecificProfessional(ana_id),
                slot_start=local(day, "15:00"),
                now=local(day, "08:00"),
                notify=None,
            )
            outcome = "booked"
        except SlotNoLongerAvailable:
            outcome = "conflict"
        finally:
            session.close()
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt, args=(p,)) for p in ("+573000000001", "+573000000002")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(results) == ["booked", "conflict"]


def test_any_professional_assigns_first_free_by_name(db, org, services, professionals) -> None:
    appointment = _book(db, org, services["haircut"], ANY_PROFESSIONAL, clock="09:00")

    assert appointment.professional_id == professionals["ana"].id


def test_any_professional_with_no_staff_is_not_found(db, org, services) -> None:
    with pytest.raises(NotFound):
        _book(db, org, services["haircut"], ANY_PROFESSIONAL, clock="09:00")


def test_inactive_professional_cannot_be_booked(db, org, services, professionals) -> None:
    professionals["bruno"].is_active = False
    db.commit()

    with pytest.raises(NotFound):
        _book(db, org, services["haircut"], SpecificProfessional(professionals["bruno"].id))


@pytest.mark.parametrize(
    "kwargs",
    [
        {"name": "", "phone": "+573001234567"},
        {"name": "Laura", "phone": "12"},
        {"name": "Laura", "phone": "+57300abc4567"},
    ],
)
def test_invalid_contact_details_are_rejected(db, org, services, professionals, kwargs) -> None:
    with pytest.raises(ValidationError):
        _book(db, org, services["haircut"], **kwargs)
    assert db.query(Appointment).count() == 0


def test_off_grid_and_out_of_hours_starts_are_rejected(db, org, services, professionals) -> None:
    with pytest.raises(ValidationError):
        _book(db, org, services["haircut"], clock="10:15")
    with pytest.raises(ValidationError):
        _book(db, org, services["color"], clock="17:30")
    with pytest.raises(ValidationError):
        _book(db, org, services["haircut"], clock="07:00")


def test_past_start_is_rejected(db, org, services, professionals) -> None:
    day = next_monday()
    with pytest.raises(ValidationError):
        commit_booking(
            db, org, CustomerInfo("Laura Gómez", "+573001234567"), str(services["haircut"].id),
            slot_start=local(day, "09:00"), now=local(day, "12:00"), notify=None,
        )


def test_slot_end_must_match_service_duration(db, org, services, professionals) -> None:
    day = next_monday()
    start = local(day, "10:00")
    with pytest.raises(ValidationError):
        commit_booking(
            db, org, CustomerInfo("Laura Gómez", "+573001234567"), str(services["color"].id),
            slot_start=start, slot_end=start + timedelta(minutes=30), now=local(day, "08:00"), notify=None,
        )


def test_naive_start_is_read_in_organization_timezone(db, org, services, professionals) -> None:
    day = next_monday()
    appointment = commit_booking(
        db, org, CustomerInfo("Laura Gómez", "+573001234567"), str(services["haircut"].id),
        slot_start=f"{day.isoformat()}T10:00:00", now=local(day, "08:00"), notify=None,
    )
    assert appointment.start_time == local(day, "10:00")


def test_confirmation_is_dispatched_after_commit(db, org, services, professionals) -> None:
    notify = MagicMock()

    appointment = _book(db, org, services["haircut"], notify=notify)

    notify.assert_called_once()
    confirmation = notify.call_args.args[0]
    assert confirmation.recipient_phone == "+573001234567"
    assert confirmation.organization_name == "Barbería Centro"
    assert confirmation.start_time == appointment.start_time


def test_notification_failure_does_not_undo_the_booking(db, org, services, professionals) -> None:
    appointment = _book(db, org, services["haircut"], notify=MagicMock(side_effect=RuntimeError("provider down")))

    assert db.query(Appointment).filter(Appointment.id == appointment.id).count() == 1


def test_conflict_does_not_notify(db, org, services, professionals) -> None:
    ana = SpecificProfessional(professionals["ana"].id)
    _book(db, org, services["haircut"], ana)
    notify = MagicMock()

    with pytest.raises(SlotNoLongerAvailable):
        _book(db, org, services["haircut"], ana, phone="+573007654321", notify=notify)

    notify.assert_not_called()


# ============ Status changes ============

def test_status_moves_along_the_allowed_graph(db, org, services, professionals) -> None:
    appointment = _book(db, org, services["haircut"])

    updated = update_appointment_status(db, org, str(appointment.id), "completed")
    assert updated.status == AppointmentStatus.COMPLETED

    with pytest.raises(ValidationError):
        update_appointment_status(db, org, str(appointment.id), "pending")


def test_same_status_is_a_no_op(db, org, services, professionals) -> None:
    appointment = _book(db, org, services["haircut"])

    assert update_appointment_status(db, org, appointment.id, "confirmed").status == AppointmentStatus.CONFIRMED


def test_unknown_status_and_appointment(db, org, services, professionals) -> None:
    appointment = _book(db, org, services["haircut"])

    with pytest.raises(ValidationError):
        update_appointment_status(db, org, appointment.id, "no_show")
    with pytest.raises(NotFound):
        update_appointment_status(db, org, "6f1c1a57-1f35-4c6e-9d37-3b0bfa2c3c11", "cancelled")


def test_cancelling_frees_the_slot(db, org, services, professionals) -> None:
    ana = SpecificProfessional(professionals["ana"].id)
    day = next_monday()
    appointment = _book(db, org, services["haircut"], ana)

    update_appointment_status(db, org, appointment.id, "cancelled")

    assert local(day, "10:00") in find_available_slots(db, org, day, 30, ana, now=local(day, "08:00"))
    rebooked = _book(db, org, services["haircut"], ana, phone="+573007654321")
    assert rebooked.start_time == appointment.start_time


def test_reopening_a_cancelled_appointment_checks_the_slot(db, org, services, professionals) -> None:
    ana = SpecificProfessional(professionals["ana"].id)
    cancelled = _book(db, org, services["haircut"], ana)
    update_appointment_status(db, org, cancelled.id, "cancelled")
    _book(db, org, services["haircut"], ana, phone="+573007654321")

    with pytest.raises(SlotNoLongerAvailable):
        update_appointment_status(db, org, cancelled.id, "confirmed")

    db.refresh(cancelled)
    assert cancelled.status == AppointmentStatus.CANCELLED


def test_agenda_lists_the_day_in_start_order(db, org, services, professionals, make_appointment) -> None:
    day = next_monday()
    make_appointment(services["haircut"], professionals["bruno"], local(day, "15:00"))
    make_appointment(services["haircut"], professionals["ana"], local(day, "09:00"))
    make_appointment(services["haircut"], professionals["ana"], local(day + timedelta(days=1), "09:00"))

    agenda = list_agenda(db, org, day)

    assert [clock_of(a.start_time) for a in agenda] == ["09:00", "15:00"]
    assert agenda[0].customer.full_name == "Cliente Existente"
    assert len(list_agenda(db, org, day, day + timedelta(days=1))) == 3
    assert len(list_agenda(db, org, day, professional=SpecificProfessional(professionals["ana"].id))) == 1


def test_failed_service_lookup_is_a_data_access_error(db, org, services, professionals) -> None:
    with patch.object(db, "query", side_effect=OperationalError("SELECT", {}, Exception("connection lost"))):
        with pytest.raises(DataAccessError):
            _book(db, org, services["haircut"])
