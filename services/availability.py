"""
Availability Service

Computes the bookable slot starts for an organization, a date, a service
duration and a professional choice, considering:
- Per-weekday operating hours (closed days included)
- Slot granularity
- Past-time exclusion
- Collisions with non-cancelled appointments
"""
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Sequence, Tuple, Union

import pytz
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core import config
from core.config import logger
from core.errors import DataAccessError, NotFound, OrganizationNotFound, ValidationError
from models.appointment import Appointment, AppointmentStatus
from models.organization import Organization, Professional, Service
from utils.validation import parse_uuid

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

Interval = Tuple[datetime, datetime]


# ============ Professional choice ============

@dataclass(frozen=True)
class SpecificProfessional:
    professional_id: uuid.UUID


@dataclass(frozen=True)
class AnyProfessional:
    """Matches appointments across every professional of the organization"""


ANY_PROFESSIONAL = AnyProfessional()

ProfessionalChoice = Union[SpecificProfessional, AnyProfessional]


def parse_professional_choice(value) -> ProfessionalChoice:
    """
    Read a professional choice from request input.
    None, "" and "any" mean any professional; anything else must be a UUID.
    """
    if isinstance(value, (SpecificProfessional, AnyProfessional)):
        return value
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "any")):
        return ANY_PROFESSIONAL
    professional_id = parse_uuid(value)
    if not professional_id:
        raise ValidationError("Invalid professional id")
    return SpecificProfessional(professional_id)


# ============ Operating window ============

@dataclass(frozen=True)
class OperatingWindow:
    start: datetime
    end: datetime


def get_timezone(name: Optional[str]) -> pytz.BaseTzInfo:
    tz_name = name or config.DEFAULT_TIMEZONE
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logger.error(f"[availability] Invalid timezone '{tz_name}', using UTC")
        return pytz.UTC


def parse_clock(value: Union[str, time]) -> time:
    """Convert "HH:MM" to datetime.time"""
    if isinstance(value, time):
        return value
    try:
        hours, minutes = str(value).strip().split(":")[:2]
        return time(int(hours), int(minutes))
    except (ValueError, AttributeError):
        raise ValueError(f"Cannot convert {value!r} to time")


def opening_hours_for(organization: Organization, day: date) -> Optional[Tuple[time, time]]:
    """
    Opening and closing time for a weekday, or None when closed.

    A weekday missing from settings.opening_hours uses the configured default
    window; an explicit null marks the day as closed.
    """
    hours = (organization.settings or {}).get("opening_hours") or {}
    weekday = WEEKDAYS[day.weekday()]

    if weekday in hours:
        entry = hours[weekday]
        if not entry:
            return None
        return parse_clock(entry["open"]), parse_clock(entry["close"])

    return parse_clock(config.DEFAULT_OPEN_TIME), parse_clock(config.DEFAULT_CLOSE_TIME)


def slot_step_for(organization: Organization) -> int:
    step = (organization.settings or {}).get("slot_step_minutes") or config.SLOT_STEP_MINUTES
    return int(step)


def operating_window(organization: Organization, day: date) -> Optional[OperatingWindow]:
    """
    Operating window for a calendar date in the organization's timezone.

    Returns:
        OperatingWindow with UTC bounds, or None if the organization is closed
    """
    hours = opening_hours_for(organization, day)
    if not hours:
        return None

    open_time, close_time = hours
    tz = get_timezone(organization.timezone)
    start = tz.localize(datetime.combine(day, open_time)).astimezone(timezone.utc)
    end = tz.localize(datetime.combine(day, close_time)).astimezone(timezone.utc)

    if end <= start:
        return None

    return OperatingWindow(start=start, end=end)


# ============ Slot arithmetic ============

def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open intervals [start_a, end_a) and [start_b, end_b) intersect"""
    return start_a < end_b and end_a > start_b


def generate_candidates(window: OperatingWindow, duration_minutes: int, step_minutes: int) -> List[datetime]:
    """Slot starts every step_minutes whose service end still fits in the window"""
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=step_minutes)

    candidates = []
    current = window.start
    while current + duration <= window.end:
        candidates.append(current)
        current = current + step
    return candidates


def compute_slots(
    window: Optional[OperatingWindow],
    busy: Sequence[Interval],
    duration_minutes: int,
    step_minutes: int,
    now: datetime,
) -> List[datetime]:
    """
    Pure slot computation over a snapshot of busy intervals.

    Args:
        window: operating window for the day (None when closed)
        busy: [(start, end), ...] of appointments that occupy the schedule
        duration_minutes: service duration
        step_minutes: slot granularity
        now: current instant; earlier candidates are dropped

    Returns:
        list[datetime]: ascending slot starts (UTC)
    """
    if duration_minutes is None or duration_minutes <= 0:
        raise ValidationError("Service duration must be greater than zero")
    if step_minutes <= 0:
        raise ValidationError("Slot step must be greater than zero")
    if window is None:
        return []

    duration = timedelta(minutes=duration_minutes)
    slots = []
    for candidate in generate_candidates(window, duration_minutes, step_minutes):
        if candidate < now:
            continue
        candidate_end = candidate + duration
        if any(overlaps(candidate, candidate_end, b_start, b_end) for b_start, b_end in busy):
            continue
        slots.append(candidate)
    return slots


def is_bookable_start(organization: Organization, start: datetime, duration_minutes: int) -> bool:
    """True when start is a grid slot of its local day and the service ends inside the window"""
    tz = get_timezone(organization.timezone)
    local_day = start.astimezone(tz).date()
    window = operating_window(organization, local_day)
    if window is None:
        return False
    end = start + timedelta(minutes=duration_minutes)
    if start < window.start or end > window.end:
        return False
    step = timedelta(minutes=slot_step_for(organization))
    return (start - window.start) % step == timedelta(0)


# ============ Data access ============

def fetch_busy_intervals(
    db: Session,
    organization_id: uuid.UUID,
    range_start: datetime,
    range_end: datetime,
    professional: ProfessionalChoice = ANY_PROFESSIONAL,
) -> List[Interval]:
    """
    Non-cancelled appointments overlapping [range_start, range_end).

    Raises:
        DataAccessError: if the read fails; callers must not treat it as an empty schedule
    """
    try:
        query = db.query(Appointment.start_time, Appointment.end_time).filter(
            Appointment.organization_id == organization_id,
            Appointment.status != AppointmentStatus.CANCELLED,
            Appointment.start_time < range_end,
            Appointment.end_time > range_start,
        )
        if isinstance(professional, SpecificProfessional):
            query = query.filter(Appointment.professional_id == professional.professional_id)
        rows = query.order_by(Appointment.start_time.asc()).all()
    except SQLAlchemyError as exc:
        logger.error(f"[availability] Appointment read failed for org {organization_id}: {exc}")
        raise DataAccessError() from exc

    return [(row.start_time, row.end_time) for row in rows]


def resolve_organization(db: Session, slug: str) -> Organization:
    try:
        organization = db.query(Organization).filter(Organization.slug == (slug or "").strip().lower()).first()
    except SQLAlchemyError as exc:
        logger.error(f"[availability] Organization lookup failed for '{slug}': {exc}")
        raise DataAccessError() from exc
    if not organization:
        raise OrganizationNotFound()
    return organization


def get_active_service(db: Session, organization: Organization, service_id) -> Service:
    parsed = parse_uuid(service_id)
    if not parsed:
        raise ValidationError("Invalid service id")
    try:
        service = db.query(Service).filter(
            Service.id == parsed,
            Service.organization_id == organization.id,
            Service.is_active == True,  # noqa: E712
        ).first()
    except SQLAlchemyError as exc:
        logger.error(f"[availability] Service lookup failed for org {organization.slug}: {exc}")
        raise DataAccessError() from exc
    if not service:
        raise NotFound("Service not found")
    return service


def get_professional(db: Session, organization: Organization, professional_id: uuid.UUID) -> Professional:
    try:
        professional = db.query(Professional).filter(
            Professional.id == professional_id,
            Professional.organization_id == organization.id,
            Professional.is_active == True,  # noqa: E712
        ).first()
    except SQLAlchemyError as exc:
        logger.error(f"[availability] Professional lookup failed for org {organization.slug}: {exc}")
        raise DataAccessError() from exc
    if not professional:
        raise NotFound("Professional not found")
    return professional


def find_available_slots(
    db: Session,
    organization: Organization,
    day: date,
    duration_minutes: int,
    professional: ProfessionalChoice = ANY_PROFESSIONAL,
    now: Optional[datetime] = None,
) -> List[datetime]:
    """
    Bookable slot starts for one day.

    Algorithm:
        1. Operating window for the weekday (closed -> [])
        2. Non-cancelled appointments overlapping the window, per professional choice
        3. Candidates every step minutes whose end fits in the window
        4. Drop past candidates and candidates overlapping an appointment
    """
    if duration_minutes is None or duration_minutes <= 0:
        raise ValidationError("Service duration must be greater than zero")

    now = now or datetime.now(timezone.utc)
    window = operating_window(organization, day)
    if window is None:
        return []

    busy = fetch_busy_intervals(db, organization.id, window.start, window.end, professional)
    slots = compute_slots(window, busy, duration_minutes, slot_step_for(organization), now)

    logger.info(
        f"[availability] org={organization.slug} day={day.isoformat()} duration={duration_minutes} "
        f"busy={len(busy)} slots={len(slots)}"
    )
    return slots


def get_available_slots(
    db: Session,
    organization: Organization,
    day: date,
    service_id,
    professional: ProfessionalChoice = ANY_PROFESSIONAL,
    now: Optional[datetime] = None,
) -> Tuple[Service, List[datetime]]:
    """Resolve the service and professional, then compute the day's slots"""
    service = get_active_service(db, organization, service_id)
    if isinstance(professional, SpecificProfessional):
        get_professional(db, organization, professional.professional_id)
    return service, find_available_slots(db, organization, day, service.duration_minutes, professional, now)
