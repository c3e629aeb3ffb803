"""
Booking Service

Write path for appointments:
- commit_booking: customer upsert, collision re-check and insert in one transaction
- update_appointment_status: staff status changes along an explicit transition graph
- list_agenda: appointments for the admin dashboard

The application-level re-check rejects stale slots early; the database
constraints on the appointments table are what guarantee no double booking.
"""
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from core.config import logger
from core.errors import AgendaError, DataAccessError, NotFound, SlotNoLongerAvailable, ValidationError
from models.appointment import Appointment, AppointmentStatus, OCCUPYING_STATUSES
from models.customer import Customer
from models.organization import Organization, Professional
from services.availability import (
    ANY_PROFESSIONAL,
    ProfessionalChoice,
    SpecificProfessional,
    get_active_service,
    get_professional,
    get_timezone,
    is_bookable_start,
)
from services.notifications import BookingConfirmation, dispatch_booking_confirmation
from utils.validation import normalize_phone, parse_instant, parse_uuid, validate_full_name, validate_phone


@dataclass(frozen=True)
class CustomerInfo:
    full_name: str
    phone: str


# Staff status changes. Completed is terminal; a cancelled appointment can be
# reopened only if its slot is still free.
ALLOWED_TRANSITIONS = {
    AppointmentStatus.PENDING: {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED},
    AppointmentStatus.CONFIRMED: {AppointmentStatus.PENDING, AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED},
    AppointmentStatus.CANCELLED: {AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED},
    AppointmentStatus.COMPLETED: set(),
}


def validate_customer_info(info: CustomerInfo) -> CustomerInfo:
    ok, error = validate_full_name(info.full_name)
    if not ok:
        raise ValidationError(error)
    ok, error = validate_phone(info.phone)
    if not ok:
        raise ValidationError(error)
    return CustomerInfo(full_name=info.full_name.strip(), phone=normalize_phone(info.phone))


def to_utc(value, organization: Organization, label: str = "start time") -> datetime:
    """Parse an instant; naive values are read in the organization's timezone"""
    parsed = parse_instant(value)
    if parsed is None:
        raise ValidationError(f"Invalid {label}")
    if parsed.tzinfo is None:
        parsed = get_timezone(organization.timezone).localize(parsed)
    return parsed.astimezone(timezone.utc)


def find_collisions(
    db: Session,
    organization_id: uuid.UUID,
    start: datetime,
    end: datetime,
    professional: ProfessionalChoice = ANY_PROFESSIONAL,
    exclude_appointment: Optional[uuid.UUID] = None,
) -> List[Appointment]:
    """Non-cancelled appointments overlapping [start, end)"""
    query = db.query(Appointment).filter(
        Appointment.organization_id == organization_id,
        Appointment.status != AppointmentStatus.CANCELLED,
        Appointment.start_time < end,
        Appointment.end_time > start,
    )
    if isinstance(professional, SpecificProfessional):
        query = query.filter(Appointment.professional_id == professional.professional_id)
    if exclude_appointment:
        query = query.filter(Appointment.id != exclude_appointment)
    return query.all()


def upsert_customer(db: Session, organization: Organization, info: CustomerInfo) -> Tuple[Customer, bool]:
    """
    Reuse the customer with this phone number or create one.
    Returns (customer, created). The insert is flushed, not committed.
    """
    customer = db.query(Customer).filter(
        Customer.organization_id == organization.id,
        Customer.whatsapp_number == info.phone,
    ).first()
    if customer:
        return customer, False

    customer = Customer(
        organization_id=organization.id,
        full_name=info.full_name,
        whatsapp_number=info.phone,
    )
    db.add(customer)
    db.flush()
    return customer, True


def _resolve_customer(db: Session, organization: Organization, info: CustomerInfo) -> Customer:
    try:
        customer, _ = upsert_customer(db, organization, info)
        return customer
    except IntegrityError:
        # A concurrent booking created the same customer first
        db.rollback()
        customer = db.query(Customer).filter(
            Customer.organization_id == organization.id,
            Customer.whatsapp_number == info.phone,
        ).first()
        if not customer:
            raise DataAccessError("Could not save your details. Please try again.")
        return customer


def _assign_professional(
    db: Session,
    organization: Organization,
    professional: ProfessionalChoice,
    start: datetime,
    end: datetime,
) -> Professional:
    """Re-check the slot and pick the professional the appointment goes to"""
    if isinstance(professional, SpecificProfessional):
        chosen = get_professional(db, organization, professional.professional_id)
        if find_collisions(db, organization.id, start, end, professional):
            raise SlotNoLongerAvailable()
        return chosen

    # Any professional: the slot was offered only if nobody in the org was booked
    if find_collisions(db, organization.id, start, end, ANY_PROFESSIONAL):
        raise SlotNoLongerAvailable()
    chosen = db.query(Professional).filter(
        Professional.organization_id == organization.id,
        Professional.is_active == True,  # noqa: E712
    ).order_by(Professional.name.asc(), Professional.id.asc()).first()
    if not chosen:
        raise NotFound("This business has no professionals to book with")
    return chosen


def commit_booking(
    db: Session,
    organization: Organization,
    customer_info: CustomerInfo,
    service_id,
    professional: ProfessionalChoice = ANY_PROFESSIONAL,
    slot_start=None,
    slot_end=None,
    now: Optional[datetime] = None,
    notify: Optional[Callable[[BookingConfirmation], None]] = dispatch_booking_confirmation,
) -> Appointment:
    """
    Turn a chosen slot into a confirmed appointment.

    Args:
        db: request session
        organization: tenant the booking belongs to
        customer_info: name and WhatsApp number
        service_id: active service of the organization
        professional: SpecificProfessional or ANY_PROFESSIONAL
        slot_start: slot start instant (naive values use the org timezone)
        slot_end: optional; must equal slot_start + service duration
        now: current instant (defaults to UTC now)
        notify: fire-and-forget confirmation dispatcher, None to skip

    Raises:
        ValidationError: bad contact info, slot or service duration
        NotFound: unknown service or professional
        SlotNoLongerAvailable: the slot was taken since availability was computed
        DataAccessError: the write failed; check availability before trying again
    """
    now = now or datetime.now(timezone.utc)
    info = validate_customer_info(customer_info)
    service = get_active_service(db, organization, service_id)
    if not service.duration_minutes or service.duration_minutes <= 0:
        raise ValidationError("Service duration must be greater than zero")

    start = to_utc(slot_start, organization)
    end = start + timedelta(minutes=service.duration_minutes)
    if slot_end is not None and to_utc(slot_end, organization, "end time") != end:
        raise ValidationError("Slot end does not match the service duration")
    if start < now:
        raise ValidationError("That time has already passed")
    if not is_bookable_start(organization, start, service.duration_minutes):
        raise ValidationError("That time is not bookable")

    try:
        customer = _resolve_customer(db, organization, info)
        assigned = _assign_professional(db, organization, professional, start, end)

        appointment = Appointment(
            organization_id=organization.id,
            customer_id=customer.id,
            service_id=service.id,
            professional_id=assigned.id,
            start_time=start,
            end_time=end,
            status=AppointmentStatus.CONFIRMED,
        )
        db.add(appointment)
        db.flush()
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.info(f"[booking] Slot {start.isoformat()} lost at commit for org={organization.slug}: {exc.orig}")
        raise SlotNoLongerAvailable() from exc
    except AgendaError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"[booking] Commit failed for org={organization.slug}: {exc}")
        raise DataAccessError("Could not save your booking. Please check availability and try again.") from exc

    db.refresh(appointment)
    logger.info(
        f"[booking] Appointment {appointment.id} confirmed: org={organization.slug} "
        f"professional={assigned.id} start={start.isoformat()}"
    )

    if notify is not None:
        confirmation = BookingConfirmation(
            recipient_phone=customer.whatsapp_number,
            organization_name=organization.name,
            start_time=appointment.start_time,
            timezone=organization.timezone,
        )
        try:
            notify(confirmation)
        except Exception as e:
            logger.error(f"[booking] Notification dispatch failed for appointment {appointment.id}: {e}")

    return appointment


def parse_status(value) -> AppointmentStatus:
    if isinstance(value, AppointmentStatus):
        return value
    try:
        return AppointmentStatus(str(value or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown status: {value}")


def update_appointment_status(db: Session, organization: Organization, appointment_id, new_status) -> Appointment:
    """
    Move an appointment along ALLOWED_TRANSITIONS.
    Reopening a cancelled appointment re-occupies its slot and is collision-checked.
    """
    status = parse_status(new_status)
    parsed = parse_uuid(appointment_id)
    if not parsed:
        raise ValidationError("Invalid appointment id")

    appointment = db.query(Appointment).filter(
        Appointment.id == parsed,
        Appointment.organization_id == organization.id,
    ).first()
    if not appointment:
        raise NotFound("Appointment not found")

    current = appointment.status
    if status == current:
        return appointment
    if status not in ALLOWED_TRANSITIONS[current]:
        raise ValidationError(f"Cannot change an appointment from {current.value} to {status.value}")

    try:
        if current not in OCCUPYING_STATUSES and status in OCCUPYING_STATUSES:
            collisions = find_collisions(
                db,
                organization.id,
                appointment.start_time,
                appointment.end_time,
                SpecificProfessional(appointment.professional_id),
                exclude_appointment=appointment.id,
            )
            if collisions:
                raise SlotNoLongerAvailable("That time is now booked by another appointment.")

        appointment.status = status
        db.flush()
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise SlotNoLongerAvailable("That time is now booked by another appointment.") from exc
    except AgendaError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"[booking] Status update failed for appointment {parsed}: {exc}")
        raise DataAccessError() from exc

    db.refresh(appointment)
    logger.info(f"[booking] Appointment {appointment.id} status {current.value} -> {status.value}")
    return appointment


def list_agenda(
    db: Session,
    organization: Organization,
    start_day: date,
    end_day: Optional[date] = None,
    status: Optional[AppointmentStatus] = None,
    professional: ProfessionalChoice = ANY_PROFESSIONAL,
) -> List[Appointment]:
    """Appointments starting on [start_day, end_day] in the organization's local time"""
    end_day = end_day or start_day
    if end_day < start_day:
        raise ValidationError("End date must not be before start date")

    tz = get_timezone(organization.timezone)
    range_start = tz.localize(datetime.combine(start_day, datetime.min.time())).astimezone(timezone.utc)
    range_end = tz.localize(datetime.combine(end_day + timedelta(days=1), datetime.min.time())).astimezone(timezone.utc)

    query = db.query(Appointment).options(
        joinedload(Appointment.customer),
        joinedload(Appointment.service),
        joinedload(Appointment.professional),
    ).filter(
        Appointment.organization_id == organization.id,
        Appointment.start_time >= range_start,
        Appointment.start_time < range_end,
    )
    if status is not None:
        query = query.filter(Appointment.status == status)
    if isinstance(professional, SpecificProfessional):
        query = query.filter(Appointment.professional_id == professional.professional_id)
    return query.order_by(Appointment.start_time.asc()).all()
