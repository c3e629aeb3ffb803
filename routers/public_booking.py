"""
Public Booking Router
Customer-facing booking flow, keyed by organization slug:
services -> professional -> slot -> contact details -> confirm
"""
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Request, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import client_ip
from core.config import logger
from core.database import get_db
from core.errors import ValidationError
from models.organization import Professional, Service
from services.availability import (
    SpecificProfessional,
    get_available_slots,
    get_timezone,
    parse_professional_choice,
    resolve_organization,
)
from services.booking import CustomerInfo, commit_booking
from services.draft import (
    BookingDraft,
    BookingReceipt,
    DraftRedirect,
    choose_professional,
    choose_service,
    choose_slot,
    commit_draft,
    decode_draft,
    decode_receipt,
    encode_draft,
    encode_receipt,
    provide_contact,
)
from utils.rate_limit import check_booking_rate_limit
from utils.validation import parse_day

router = APIRouter(prefix="/api/public", tags=["public-booking"])

DRAFT_HEADER = "X-Booking-Draft"
RECEIPT_HEADER = "X-Booking-Receipt"


# ============ Pydantic Models ============

class ServiceStep(BaseModel):
    service_id: str


class ProfessionalStep(BaseModel):
    professional_id: Optional[str] = None  # null or "any" for any professional


class SlotStep(BaseModel):
    start: str


class ContactStep(BaseModel):
    full_name: str
    phone: str


class DirectBooking(BaseModel):
    service_id: str
    professional_id: Optional[str] = None
    slot_start: str
    slot_end: Optional[str] = None
    full_name: str
    phone: str


# ============ Helpers ============

def _draft_response(draft: BookingDraft, tz_name: str, status_code: int = 200, **extra) -> JSONResponse:
    body = {"ok": True, "draft": draft.to_dict(tz_name), "draft_token": encode_draft(draft)}
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


def _redirect_response(draft: BookingDraft, tz_name: str, redirect: DraftRedirect) -> JSONResponse:
    # Not an error: the client goes back to the first step still missing
    return _draft_response(draft, tz_name, ok=False, redirect_to=redirect.step.value)


def _rate_limited(request: Request) -> Optional[JSONResponse]:
    allowed, message = check_booking_rate_limit(client_ip(request))
    if not allowed:
        return JSONResponse({"error": "rate_limited", "message": message}, status_code=429)
    return None


# ============ Organization & Catalog ============

@router.get("/{slug}")
async def get_organization(slug: str, db: Session = Depends(get_db)):
    """Business profile plus its active services"""
    organization = resolve_organization(db, slug)
    services = db.query(Service).filter(
        Service.organization_id == organization.id,
        Service.is_active == True,  # noqa: E712
    ).order_by(Service.name.asc()).all()
    return {
        "organization": organization.to_public_dict(),
        "services": [s.to_dict() for s in services],
    }


@router.get("/{slug}/professionals")
async def list_professionals(slug: str, db: Session = Depends(get_db)):
    organization = resolve_organization(db, slug)
    professionals = db.query(Professional).filter(
        Professional.organization_id == organization.id,
        Professional.is_active == True,  # noqa: E712
    ).order_by(Professional.name.asc()).all()
    return {"professionals": [p.to_dict() for p in professionals]}


@router.get("/{slug}/availability")
async def get_availability(
    slug: str,
    date: str = Query(...),
    service_id: str = Query(...),
    professional_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Bookable slots for a service on a date, in the organization's local time"""
    organization = resolve_organization(db, slug)
    day = parse_day(date)
    if not day:
        raise ValidationError("Invalid date, expected YYYY-MM-DD")
    choice = parse_professional_choice(professional_id)

    service, slots = get_available_slots(db, organization, day, service_id, choice)

    tz = get_timezone(organization.timezone)
    duration = timedelta(minutes=service.duration_minutes)
    return {
        "date": day.isoformat(),
        "timezone": organization.timezone,
        "service": service.to_dict(),
        "professional_id": str(choice.professional_id) if isinstance(choice, SpecificProfessional) else None,
        "slots": [
            {"start": s.astimezone(tz).isoformat(), "end": (s + duration).astimezone(tz).isoformat()}
            for s in slots
        ],
    }


# ============ Booking Draft ============

@router.get("/{slug}/draft")
async def get_draft(slug: str, request: Request, db: Session = Depends(get_db)):
    organization = resolve_organization(db, slug)
    draft = decode_draft(request.headers.get(DRAFT_HEADER), organization.slug)
    return _draft_response(draft, organization.timezone)


@router.post("/{slug}/draft/service")
async def draft_select_service(slug: str, payload: ServiceStep, request: Request, db: Session = Depends(get_db)):
    organization = resolve_organization(db, slug)
    draft = decode_draft(request.headers.get(DRAFT_HEADER), organization.slug)
    try:
        draft = choose_service(db, organization, draft, payload.service_id)
    except DraftRedirect as redirect:
        return _redirect_response(draft, organization.timezone, redirect)
    return _draft_response(draft, organization.timezone)


@router.post("/{slug}/draft/professional")
async def draft_select_professional(slug: str, payload: ProfessionalStep, request: Request, db: Session = Depends(get_db)):
    organization = resolve_organization(db, slug)
    draft = decode_draft(request.headers.get(DRAFT_HEADER), organization.slug)
    try:
        draft = choose_professional(db, organization, draft, payload.professional_id)
    except DraftRedirect as redirect:
        return _redirect_response(draft, organization.timezone, redirect)
    return _draft_response(draft, organization.timezone)


@router.post("/{slug}/draft/slot")
async def draft_select_slot(slug: str, payload: SlotStep, request: Request, db: Session = Depends(get_db)):
    organization = resolve_organization(db, slug)
    draft = decode_draft(request.headers.get(DRAFT_HEADER), organization.slug)
    try:
        draft = choose_slot(db, organization, draft, payload.start)
    except DraftRedirect as redirect:
        return _redirect_response(draft, organization.timezone, redirect)
    return _draft_response(draft, organization.timezone)


@router.post("/{slug}/draft/contact")
async def draft_provide_contact(slug: str, payload: ContactStep, request: Request, db: Session = Depends(get_db)):
    organization = resolve_organization(db, slug)
    draft = decode_draft(request.headers.get(DRAFT_HEADER), organization.slug)
    try:
        draft = provide_contact(draft, payload.full_name, payload.phone)
    except DraftRedirect as redirect:
        return _redirect_response(draft, organization.timezone, redirect)
    return _draft_response(draft, organization.timezone)


@router.post("/{slug}/draft/commit")
async def draft_commit(slug: str, request: Request, db: Session = Depends(get_db)):
    """Book the draft; on success the draft is cleared and replaced by a receipt"""
    organization = resolve_organization(db, slug)
    draft = decode_draft(request.headers.get(DRAFT_HEADER), organization.slug)
    limited = _rate_limited(request)
    if limited is not None:
        return limited
    try:
        appointment, receipt = commit_draft(db, organization, draft)
    except DraftRedirect as redirect:
        return _redirect_response(draft, organization.timezone, redirect)

    return JSONResponse({
        "ok": True,
        "appointment": appointment.to_dict(),
        "receipt": receipt.to_dict(),
        "receipt_token": encode_receipt(receipt),
        "draft_token": None,
    }, status_code=201)


# ============ Direct booking & receipt ============

@router.post("/{slug}/bookings")
async def create_booking(slug: str, payload: DirectBooking, request: Request, db: Session = Depends(get_db)):
    """Single-request booking for clients that keep their own wizard state"""
    organization = resolve_organization(db, slug)
    limited = _rate_limited(request)
    if limited is not None:
        return limited

    appointment = commit_booking(
        db,
        organization,
        CustomerInfo(full_name=payload.full_name, phone=payload.phone),
        payload.service_id,
        parse_professional_choice(payload.professional_id),
        slot_start=payload.slot_start,
        slot_end=payload.slot_end,
    )
    receipt = BookingReceipt.from_appointment(appointment, organization)
    logger.info(f"[public] Direct booking {appointment.id} for {organization.slug}")
    return JSONResponse({
        "ok": True,
        "appointment": appointment.to_dict(),
        "receipt": receipt.to_dict(),
        "receipt_token": encode_receipt(receipt),
    }, status_code=201)


@router.get("/{slug}/receipt")
async def get_receipt(slug: str, request: Request, token: Optional[str] = Query(None), db: Session = Depends(get_db)):
    organization = resolve_organization(db, slug)
    receipt = decode_receipt(request.headers.get(RECEIPT_HEADER) or token, organization.slug)
    if not receipt:
        return JSONResponse({"error": "not_found", "message": "No recent booking found"}, status_code=404)
    return {"receipt": receipt.to_dict()}
