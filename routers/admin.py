from typing import Any, Dict, Optional

import pytz
from fastapi import APIRouter, Request, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.auth import require_admin
from core.config import logger
from core.database import get_db
from core.errors import Conflict, NotFound, ValidationError
from models.appointment import Appointment
from models.customer import Customer
from models.organization import Organization, Professional, Service
from services.availability import WEEKDAYS, parse_clock, parse_professional_choice, resolve_organization
from services.booking import list_agenda, parse_status, update_appointment_status
from utils.validation import normalize_phone, parse_day, parse_uuid, validate_color, validate_slug

router = APIRouter(prefix="/api/admin", tags=["admin"])  # secure endpoints via ADMIN_SECRET


# --- Models ---

class OrganizationCreate(BaseModel):
    slug: str
    name: str
    whatsapp_number: Optional[str] = None
    timezone: Optional[str] = "America/Bogota"
    logo_url: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None


class SettingsUpdate(BaseModel):
    slug: Optional[str] = None  # accepted only if unchanged
    name: Optional[str] = None
    whatsapp_number: Optional[str] = None
    timezone: Optional[str] = None
    logo_url: Optional[str] = None
    opening_hours: Optional[Dict[str, Any]] = None
    slot_step_minutes: Optional[int] = None


class StatusUpdate(BaseModel):
    status: str


class ServiceCreate(BaseModel):
    name: str
    duration_minutes: int
    price: float = 0


class ServiceUpdate(BaseModel):
    name: Optional[str] = None
    duration_minutes: Optional[int] = None
    price: Optional[float] = None
    is_active: Optional[bool] = None


class ProfessionalCreate(BaseModel):
    name: str
    color_code: Optional[str] = "#6366f1"


class ProfessionalUpdate(BaseModel):
    name: Optional[str] = None
    color_code: Optional[str] = None
    is_active: Optional[bool] = None


class CustomerUpdate(BaseModel):
    full_name: Optional[str] = None
    internal_notes: Optional[str] = None


# --- Helpers ---

def _check_timezone(name: str) -> str:
    try:
        pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        raise ValidationError(f"Unknown timezone: {name}")
    return name


def _check_slot_step(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 240:
        raise ValidationError("Slot step must be a whole number between 1 and 240 minutes")
    return value


def _check_opening_hours(hours: Dict[str, Any]) -> Dict[str, Any]:
    """weekday -> {"open": "HH:MM", "close": "HH:MM"} or null for closed"""
    cleaned = {}
    for day, entry in hours.items():
        key = str(day).strip().lower()
        if key not in WEEKDAYS:
            raise ValidationError(f"Unknown weekday: {day}")
        if entry is None:
            cleaned[key] = None
            continue
        try:
            open_time = parse_clock(entry["open"])
            close_time = parse_clock(entry["close"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError(f"Opening hours for {key} must be {{'open': 'HH:MM', 'close': 'HH:MM'}}")
        if close_time <= open_time:
            raise ValidationError(f"Closing time must be after opening time on {key}")
        cleaned[key] = {"open": open_time.strftime("%H:%M"), "close": close_time.strftime("%H:%M")}
    return cleaned


def _check_service_fields(name: Optional[str], duration: Optional[int], price: Optional[float]):
    if name is not None and not name.strip():
        raise ValidationError("Service name is required")
    if duration is not None and duration <= 0:
        raise ValidationError("Duration must be greater than zero")
    if price is not None and price < 0:
        raise ValidationError("Price must not be negative")


def _get_service(db: Session, organization: Organization, service_id: str) -> Service:
    parsed = parse_uuid(service_id)
    service = db.query(Service).filter(
        Service.id == parsed,
        Service.organization_id == organization.id,
    ).first() if parsed else None
    if not service:
        raise NotFound("Service not found")
    return service


def _get_professional(db: Session, organization: Organization, professional_id: str) -> Professional:
    parsed = parse_uuid(professional_id)
    professional = db.query(Professional).filter(
        Professional.id == parsed,
        Professional.organization_id == organization.id,
    ).first() if parsed else None
    if not professional:
        raise NotFound("Professional not found")
    return professional


def _get_customer(db: Session, organization: Organization, customer_id: str) -> Customer:
    parsed = parse_uuid(customer_id)
    customer = db.query(Customer).filter(
        Customer.id == parsed,
        Customer.organization_id == organization.id,
    ).first() if parsed else None
    if not customer:
        raise NotFound("Customer not found")
    return customer


# --- Organizations ---

@router.post("/organizations")
async def create_organization(payload: OrganizationCreate, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec

    slug = (payload.slug or "").strip().lower()
    ok, error = validate_slug(slug)
    if not ok:
        raise ValidationError(error)
    if not (payload.name or "").strip():
        raise ValidationError("Name is required")

    settings = dict(payload.settings or {})
    if "opening_hours" in settings:
        settings["opening_hours"] = _check_opening_hours(settings["opening_hours"] or {})
    if settings.get("slot_step_minutes") is not None:
        settings["slot_step_minutes"] = _check_slot_step(settings["slot_step_minutes"])

    organization = Organization(
        slug=slug,
        name=payload.name.strip(),
        whatsapp_number=normalize_phone(payload.whatsapp_number) or None,
        timezone=_check_timezone(payload.timezone or "America/Bogota"),
        logo_url=payload.logo_url,
        settings=settings,
    )
    try:
        db.add(organization)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("That slug is already taken")

    db.refresh(organization)
    logger.info(f"[admin] Organization created: {organization.slug}")
    return JSONResponse(organization.to_dict(), status_code=201)


@router.get("/{slug}/settings")
async def get_settings(slug: str, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec
    return resolve_organization(db, slug).to_dict()


@router.put("/{slug}/settings")
async def update_settings(slug: str, payload: SettingsUpdate, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec

    organization = resolve_organization(db, slug)
    if payload.slug is not None and payload.slug.strip().lower() != organization.slug:
        raise ValidationError("The booking link slug cannot be changed")

    if payload.name is not None:
        if not payload.name.strip():
            raise ValidationError("Name is required")
        organization.name = payload.name.strip()
    if payload.whatsapp_number is not None:
        organization.whatsapp_number = normalize_phone(payload.whatsapp_number) or None
    if payload.timezone is not None:
        organization.timezone = _check_timezone(payload.timezone.strip())
    if payload.logo_url is not None:
        organization.logo_url = payload.logo_url or None

    settings = dict(organization.settings or {})
    if payload.opening_hours is not None:
        current = dict(settings.get("opening_hours") or {})
        current.update(_check_opening_hours(payload.opening_hours))
        settings["opening_hours"] = current
    if payload.slot_step_minutes is not None:
        settings["slot_step_minutes"] = _check_slot_step(payload.slot_step_minutes)
    # Reassign so the JSON column is flagged dirty
    organization.settings = settings

    db.commit()
    db.refresh(organization)
    logger.info(f"[admin] Settings updated for {organization.slug}")
    return organization.to_dict()


# --- Agenda ---

@router.get("/{slug}/agenda")
async def get_agenda(
    slug: str,
    request: Request,
    start: str = Query(...),
    end: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    professional_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    sec = require_admin(request)
    if sec is not None:
        return sec

    organization = resolve_organization(db, slug)
    start_day = parse_day(start)
    if not start_day:
        raise ValidationError("Invalid start date, expected YYYY-MM-DD")
    end_day = parse_day(end) if end else None
    if end and not end_day:
        raise ValidationError("Invalid end date, expected YYYY-MM-DD")

    appointments = list_agenda(
        db,
        organization,
        start_day,
        end_day,
        status=parse_status(status) if status else None,
        professional=parse_professional_choice(professional_id),
    )
    return {
        "timezone": organization.timezone,
        "appointments": [a.to_agenda_dict() for a in appointments],
    }


@router.patch("/{slug}/appointments/{appointment_id}/status")
async def change_status(slug: str, appointment_id: str, payload: StatusUpdate, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec
    organization = resolve_organization(db, slug)
    appointment = update_appointment_status(db, organization, appointment_id, payload.status)
    return appointment.to_dict()


# --- Customers ---

@router.get("/{slug}/customers")
async def list_customers(slug: str, request: Request, search: Optional[str] = Query(None), db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec

    organization = resolve_organization(db, slug)
    query = db.query(
        Customer,
        func.count(Appointment.id),
        func.max(Appointment.start_time),
    ).outerjoin(
        Appointment, Appointment.customer_id == Customer.id
    ).filter(
        Customer.organization_id == organization.id
    )
    if search and search.strip():
        term = f"%{search.strip()}%"
        query = query.filter(or_(Customer.full_name.ilike(term), Customer.whatsapp_number.ilike(term)))

    rows = query.group_by(Customer.id).order_by(Customer.full_name.asc()).all()
    customers = []
    for customer, count, last_start in rows:
        item = customer.to_dict()
        item["appointment_count"] = count or 0
        item["last_appointment_at"] = last_start.isoformat() if last_start else None
        customers.append(item)
    return {"customers": customers}


@router.get("/{slug}/customers/{customer_id}")
async def get_customer(slug: str, customer_id: str, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec

    organization = resolve_organization(db, slug)
    customer = _get_customer(db, organization, customer_id)
    history = db.query(Appointment).filter(
        Appointment.customer_id == customer.id
    ).order_by(Appointment.start_time.desc()).all()

    result = customer.to_dict()
    result["appointments"] = [a.to_agenda_dict() for a in history]
    return result


@router.put("/{slug}/customers/{customer_id}")
async def update_customer(slug: str, customer_id: str, payload: CustomerUpdate, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec

    organization = resolve_organization(db, slug)
    customer = _get_customer(db, organization, customer_id)
    if payload.full_name is not None:
        if not payload.full_name.strip():
            raise ValidationError("Full name is required")
        customer.full_name = payload.full_name.strip()
    if payload.internal_notes is not None:
        customer.internal_notes = payload.internal_notes or None
    db.commit()
    db.refresh(customer)
    return customer.to_dict()


# --- Services ---

@router.get("/{slug}/services")
async def list_services(slug: str, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec
    organization = resolve_organization(db, slug)
    services = db.query(Service).filter(Service.organization_id == organization.id).order_by(Service.name.asc()).all()
    return {"services": [s.to_dict() for s in services]}


@router.post("/{slug}/services")
async def create_service(slug: str, payload: ServiceCreate, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec

    organization = resolve_organization(db, slug)
    _check_service_fields(payload.name, payload.duration_minutes, payload.price)
    service = Service(
        organization_id=organization.id,
        name=payload.name.strip(),
        duration_minutes=payload.duration_minutes,
        price=payload.price,
    )
    db.add(service)
    db.commit()
    db.refresh(service)
    logger.info(f"[admin] Service {service.id} created for {organization.slug}")
    return JSONResponse(service.to_dict(), status_code=201)


@router.put("/{slug}/services/{service_id}")
async def update_service(slug: str, service_id: str, payload: ServiceUpdate, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec

    organization = resolve_organization(db, slug)
    service = _get_service(db, organization, service_id)
    _check_service_fields(payload.name, payload.duration_minutes, payload.price)
    if payload.name is not None:
        service.name = payload.name.strip()
    if payload.duration_minutes is not None:
        service.duration_minutes = payload.duration_minutes
    if payload.price is not None:
        service.price = payload.price
    if payload.is_active is not None:
        service.is_active = payload.is_active
    db.commit()
    db.refresh(service)
    return service.to_dict()


@router.delete("/{slug}/services/{service_id}")
async def deactivate_service(slug: str, service_id: str, request: Request, db: Session = Depends(get_db)):
    """Soft delete; existing appointments keep their service"""
    sec = require_admin(request)
    if sec is not None:
        return sec
    organization = resolve_organization(db, slug)
    service = _get_service(db, organization, service_id)
    service.is_active = False
    db.commit()
    return {"ok": True}


# --- Professionals ---

@router.get("/{slug}/professionals")
async def list_professionals(slug: str, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec
    organization = resolve_organization(db, slug)
    professionals = db.query(Professional).filter(
        Professional.organization_id == organization.id
    ).order_by(Professional.name.asc()).all()
    return {"professionals": [p.to_dict() for p in professionals]}


@router.post("/{slug}/professionals")
async def create_professional(slug: str, payload: ProfessionalCreate, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec

    organization = resolve_organization(db, slug)
    if not (payload.name or "").strip():
        raise ValidationError("Name is required")
    color = payload.color_code or "#6366f1"
    ok, error = validate_color(color)
    if not ok:
        raise ValidationError(error)

    professional = Professional(organization_id=organization.id, name=payload.name.strip(), color_code=color)
    db.add(professional)
    db.commit()
    db.refresh(professional)
    logger.info(f"[admin] Professional {professional.id} created for {organization.slug}")
    return JSONResponse(professional.to_dict(), status_code=201)


@router.put("/{slug}/professionals/{professional_id}")
async def update_professional(slug: str, professional_id: str, payload: ProfessionalUpdate, request: Request, db: Session = Depends(get_db)):
    sec = require_admin(request)
    if sec is not None:
        return sec

    organization = resolve_organization(db, slug)
    professional = _get_professional(db, organization, professional_id)
    if payload.name is not None:
        if not payload.name.strip():
            raise ValidationError("Name is required")
        professional.name = payload.name.strip()
    if payload.color_code is not None:
        ok, error = validate_color(payload.color_code)
        if not ok:
            raise ValidationError(error)
        professional.color_code = payload.color_code
    if payload.is_active is not None:
        professional.is_active = payload.is_active
    db.commit()
    db.refresh(professional)
    return professional.to_dict()


@router.delete("/{slug}/professionals/{professional_id}")
async def deactivate_professional(slug: str, professional_id: str, request: Request, db: Session = Depends(get_db)):
    """Soft delete; booked appointments stay assigned"""
    sec = require_admin(request)
    if sec is not None:
        return sec
    organization = resolve_organization(db, slug)
    professional = _get_professional(db, organization, professional_id)
    professional.is_active = False
    db.commit()
    return {"ok": True}
