"""
Booking Draft

Typed wizard state for the public booking flow:
    Empty -> ServiceSelected -> ProfessionalSelected -> SlotSelected -> ContactProvided -> Committed

The draft lives on the client as a signed, expiring JWT bound to the
organization slug. Nothing is persisted server side until commit, which
replaces the draft with a read-only receipt token.
"""
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional, Tuple

import jwt
from sqlalchemy.orm import Session

from core import config
from core.config import logger
from core.errors import SlotNoLongerAvailable, ValidationError
from models.appointment import Appointment
from models.organization import Organization
from services.availability import (
    ANY_PROFESSIONAL,
    AnyProfessional,
    ProfessionalChoice,
    SpecificProfessional,
    find_available_slots,
    get_active_service,
    get_professional,
    get_timezone,
    is_bookable_start,
    parse_professional_choice,
)
from services.booking import CustomerInfo, commit_booking, to_utc, validate_customer_info
from services.notifications import BookingConfirmation, dispatch_booking_confirmation
from utils.validation import parse_uuid

DRAFT_TOKEN_TYPE = "booking_draft"
RECEIPT_TOKEN_TYPE = "booking_receipt"
RECEIPT_TTL_HOURS = 24
ANY_PROFESSIONAL_LABEL = "Cualquiera"


class DraftStep(str, Enum):
    SERVICE = "service"
    PROFESSIONAL = "professional"
    SLOT = "slot"
    CONTACT = "contact"
    CONFIRM = "confirm"


class DraftState(str, Enum):
    EMPTY = "empty"
    SERVICE_SELECTED = "service_selected"
    PROFESSIONAL_SELECTED = "professional_selected"
    SLOT_SELECTED = "slot_selected"
    CONTACT_PROVIDED = "contact_provided"
    COMMITTED = "committed"


# Fields a step needs before it can be entered, in wizard order
STEP_PREREQUISITES = {
    DraftStep.SERVICE: (),
    DraftStep.PROFESSIONAL: (DraftStep.SERVICE,),
    DraftStep.SLOT: (DraftStep.SERVICE, DraftStep.PROFESSIONAL),
    DraftStep.CONTACT: (DraftStep.SERVICE, DraftStep.PROFESSIONAL, DraftStep.SLOT),
    DraftStep.CONFIRM: (DraftStep.SERVICE, DraftStep.PROFESSIONAL, DraftStep.SLOT, DraftStep.CONTACT),
}


class DraftRedirect(Exception):
    """A step was requested before its prerequisites; send the client back to `step`"""

    def __init__(self, step: DraftStep):
        self.step = step
        super().__init__(f"Draft step '{step.value}' must be completed first")


@dataclass(frozen=True)
class ServiceSelection:
    service_id: uuid.UUID
    name: str
    duration_minutes: int
    price: float


@dataclass(frozen=True)
class ProfessionalSelection:
    choice: ProfessionalChoice
    name: str

    @property
    def professional_id(self) -> Optional[uuid.UUID]:
        if isinstance(self.choice, SpecificProfessional):
            return self.choice.professional_id
        return None


@dataclass(frozen=True)
class SlotSelection:
    start: datetime


@dataclass(frozen=True)
class ContactSelection:
    full_name: str
    phone: str


@dataclass(frozen=True)
class BookingDraft:
    organization_slug: str
    service: Optional[ServiceSelection] = None
    professional: Optional[ProfessionalSelection] = None
    slot: Optional[SlotSelection] = None
    contact: Optional[ContactSelection] = None

    @property
    def slot_end(self) -> Optional[datetime]:
        if not self.service or not self.slot:
            return None
        return self.slot.start + timedelta(minutes=self.service.duration_minutes)

    @property
    def state(self) -> DraftState:
        if not self.service:
            return DraftState.EMPTY
        if not self.professional:
            return DraftState.SERVICE_SELECTED
        if not self.slot:
            return DraftState.PROFESSIONAL_SELECTED
        if not self.contact:
            return DraftState.SLOT_SELECTED
        return DraftState.CONTACT_PROVIDED

    def has(self, step: DraftStep) -> bool:
        return {
            DraftStep.SERVICE: self.service is not None,
            DraftStep.PROFESSIONAL: self.professional is not None,
            DraftStep.SLOT: self.slot is not None,
            DraftStep.CONTACT: self.contact is not None,
            DraftStep.CONFIRM: False,
        }[step]

    def first_missing(self, step: DraftStep) -> Optional[DraftStep]:
        """First prerequisite of `step` that is not filled in, or None if it may be entered"""
        for required in STEP_PREREQUISITES[step]:
            if not self.has(required):
                return required
        return None

    @property
    def next_step(self) -> DraftStep:
        for step in (DraftStep.SERVICE, DraftStep.PROFESSIONAL, DraftStep.SLOT, DraftStep.CONTACT):
            if not self.has(step):
                return step
        return DraftStep.CONFIRM

    def guard(self, step: DraftStep) -> None:
        missing = self.first_missing(step)
        if missing is not None:
            raise DraftRedirect(missing)

    # Going back to an earlier step keeps later fields until they are overwritten

    def with_service(self, selection: ServiceSelection) -> "BookingDraft":
        self.guard(DraftStep.SERVICE)
        return replace(self, service=selection)

    def with_professional(self, selection: ProfessionalSelection) -> "BookingDraft":
        self.guard(DraftStep.PROFESSIONAL)
        return replace(self, professional=selection)

    def with_slot(self, selection: SlotSelection) -> "BookingDraft":
        self.guard(DraftStep.SLOT)
        return replace(self, slot=selection)

    def with_contact(self, selection: ContactSelection) -> "BookingDraft":
        self.guard(DraftStep.CONTACT)
        return replace(self, contact=selection)

    def to_dict(self, tz_name: Optional[str] = None) -> dict:
        tz = get_timezone(tz_name)
        return {
            "state": self.state.value,
            "next_step": self.next_step.value,
            "service": {
                "id": str(self.service.service_id),
                "name": self.service.name,
                "duration_minutes": self.service.duration_minutes,
                "price": self.service.price,
            } if self.service else None,
            "professional": {
                "id": str(self.professional.professional_id) if self.professional.professional_id else None,
                "name": self.professional.name,
                "any": isinstance(self.professional.choice, AnyProfessional),
            } if self.professional else None,
            "slot": {
                "start": self.slot.start.astimezone(tz).isoformat(),
                "end": self.slot_end.astimezone(tz).isoformat() if self.slot_end else None,
            } if self.slot else None,
            "contact": {
                "full_name": self.contact.full_name,
                "phone": self.contact.phone,
            } if self.contact else None,
        }

    # ---- token claims ----

    def to_claims(self) -> dict:
        claims = {"typ": DRAFT_TOKEN_TYPE, "org": self.organization_slug}
        if self.service:
            claims["svc"] = {
                "id": str(self.service.service_id),
                "name": self.service.name,
                "dur": self.service.duration_minutes,
                "price": self.service.price,
            }
        if self.professional:
            pid = self.professional.professional_id
            claims["pro"] = {"id": str(pid) if pid else None, "name": self.professional.name}
        if self.slot:
            claims["slot"] = self.slot.start.astimezone(timezone.utc).isoformat()
        if self.contact:
            claims["contact"] = {"name": self.contact.full_name, "phone": self.contact.phone}
        return claims

    @classmethod
    def from_claims(cls, organization_slug: str, claims: dict) -> "BookingDraft":
        service = professional = slot = contact = None

        svc = claims.get("svc")
        if svc:
            service_id = parse_uuid(svc["id"])
            if not service_id:
                raise ValueError("bad service id")
            service = ServiceSelection(service_id, str(svc["name"]), int(svc["dur"]), float(svc["price"]))

        pro = claims.get("pro")
        if pro:
            professional = ProfessionalSelection(parse_professional_choice(pro.get("id")), str(pro.get("name") or ""))

        if claims.get("slot"):
            start = datetime.fromisoformat(claims["slot"])
            if start.tzinfo is None:
                raise ValueError("slot start without offset")
            slot = SlotSelection(start.astimezone(timezone.utc))

        c = claims.get("contact")
        if c:
            contact = ContactSelection(str(c["name"]), str(c["phone"]))

        return cls(organization_slug, service, professional, slot, contact)


def empty_draft(organization_slug: str) -> BookingDraft:
    return BookingDraft(organization_slug=organization_slug)


def encode_draft(draft: BookingDraft, secret: Optional[str] = None, ttl_minutes: Optional[int] = None) -> str:
    payload = draft.to_claims()
    payload["exp"] = int((datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes or config.BOOKING_DRAFT_TTL_MINUTES)).timestamp())
    return jwt.encode(payload, secret or config.BOOKING_DRAFT_SECRET, algorithm="HS256")


def decode_draft(token: Optional[str], organization_slug: str, secret: Optional[str] = None) -> BookingDraft:
    """
    Restore a draft from its token.
    Missing, expired, tampered or foreign-organization tokens start a new draft.
    """
    if not token:
        return empty_draft(organization_slug)
    try:
        payload = jwt.decode(token, secret or config.BOOKING_DRAFT_SECRET, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        logger.info(f"[draft] Discarding draft token for {organization_slug}: {e}")
        return empty_draft(organization_slug)

    if payload.get("typ") != DRAFT_TOKEN_TYPE or payload.get("org") != organization_slug:
        logger.info(f"[draft] Draft token does not belong to {organization_slug}")
        return empty_draft(organization_slug)

    try:
        return BookingDraft.from_claims(organization_slug, payload)
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        logger.info(f"[draft] Malformed draft token for {organization_slug}: {e}")
        return empty_draft(organization_slug)


# ============ Receipt ============

@dataclass(frozen=True)
class BookingReceipt:
    """Read-only summary shown after a successful booking"""
    appointment_id: uuid.UUID
    organization_slug: str
    organization_name: str
    service_name: str
    professional_name: str
    customer_name: str
    start_time: datetime
    end_time: datetime
    timezone: str
    status: str

    state = DraftState.COMMITTED

    @classmethod
    def from_appointment(cls, appointment: Appointment, organization: Organization) -> "BookingReceipt":
        return cls(
            appointment_id=appointment.id,
            organization_slug=organization.slug,
            organization_name=organization.name,
            service_name=appointment.service.name,
            professional_name=appointment.professional.name,
            customer_name=appointment.customer.full_name,
            start_time=appointment.start_time,
            end_time=appointment.end_time,
            timezone=organization.timezone,
            status=appointment.status.value,
        )

    def to_dict(self) -> dict:
        tz = get_timezone(self.timezone)
        return {
            "state": self.state.value,
            "appointment_id": str(self.appointment_id),
            "organization": {"slug": self.organization_slug, "name": self.organization_name},
            "service": self.service_name,
            "professional": self.professional_name,
            "customer": self.customer_name,
            "start_time": self.start_time.astimezone(tz).isoformat(),
            "end_time": self.end_time.astimezone(tz).isoformat(),
            "status": self.status,
        }


def encode_receipt(receipt: BookingReceipt, secret: Optional[str] = None) -> str:
    payload = {
        "typ": RECEIPT_TOKEN_TYPE,
        "org": receipt.organization_slug,
        "apt": str(receipt.appointment_id),
        "org_name": receipt.organization_name,
        "svc": receipt.service_name,
        "pro": receipt.professional_name,
        "cus": receipt.customer_name,
        "start": receipt.start_time.astimezone(timezone.utc).isoformat(),
        "end": receipt.end_time.astimezone(timezone.utc).isoformat(),
        "tz": receipt.timezone,
        "status": receipt.status,
        "exp": int((datetime.now(timezone.utc) + timedelta(hours=RECEIPT_TTL_HOURS)).timestamp()),
    }
    return jwt.encode(payload, secret or config.BOOKING_DRAFT_SECRET, algorithm="HS256")


def decode_receipt(token: Optional[str], organization_slug: str, secret: Optional[str] = None) -> Optional[BookingReceipt]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, secret or config.BOOKING_DRAFT_SECRET, algorithms=["HS256"])
    except jwt.PyJWTError as e:
        logger.info(f"[draft] Invalid receipt token for {organization_slug}: {e}")
        return None
    if payload.get("typ") != RECEIPT_TOKEN_TYPE or payload.get("org") != organization_slug:
        return None
    try:
        return BookingReceipt(
            appointment_id=uuid.UUID(payload["apt"]),
            organization_slug=payload["org"],
            organization_name=payload["org_name"],
            service_name=payload["svc"],
            professional_name=payload["pro"],
            customer_name=payload["cus"],
            start_time=datetime.fromisoformat(payload["start"]),
            end_time=datetime.fromisoformat(payload["end"]),
            timezone=payload["tz"],
            status=payload["status"],
        )
    except (KeyError, TypeError, ValueError):
        return None


# ============ Step handlers ============

def choose_service(db: Session, organization: Organization, draft: BookingDraft, service_id) -> BookingDraft:
    service = get_active_service(db, organization, service_id)
    selection = ServiceSelection(
        service_id=service.id,
        name=service.name,
        duration_minutes=service.duration_minutes,
        price=float(service.price or 0),
    )
    return draft.with_service(selection)


def choose_professional(db: Session, organization: Organization, draft: BookingDraft, value) -> BookingDraft:
    draft.guard(DraftStep.PROFESSIONAL)
    choice = parse_professional_choice(value)
    if isinstance(choice, SpecificProfessional):
        name = get_professional(db, organization, choice.professional_id).name
    else:
        name = ANY_PROFESSIONAL_LABEL
    return draft.with_professional(ProfessionalSelection(choice=choice, name=name))


def choose_slot(
    db: Session,
    organization: Organization,
    draft: BookingDraft,
    slot_start,
    now: Optional[datetime] = None,
) -> BookingDraft:
    """Accept a slot only if it is currently offered for the draft's service and professional"""
    draft.guard(DraftStep.SLOT)
    now = now or datetime.now(timezone.utc)
    start = to_utc(slot_start, organization)
    duration = draft.service.duration_minutes

    if start < now or not is_bookable_start(organization, start, duration):
        raise ValidationError("That time is not bookable")

    local_day = start.astimezone(get_timezone(organization.timezone)).date()
    offered = find_available_slots(db, organization, local_day, duration, draft.professional.choice, now)
    if start not in offered:
        raise SlotNoLongerAvailable()
    return draft.with_slot(SlotSelection(start=start))


def provide_contact(draft: BookingDraft, full_name: Optional[str], phone: Optional[str]) -> BookingDraft:
    draft.guard(DraftStep.CONTACT)
    info = validate_customer_info(CustomerInfo(full_name=full_name or "", phone=phone or ""))
    return draft.with_contact(ContactSelection(full_name=info.full_name, phone=info.phone))


def commit_draft(
    db: Session,
    organization: Organization,
    draft: BookingDraft,
    now: Optional[datetime] = None,
    notify: Optional[Callable[[BookingConfirmation], None]] = dispatch_booking_confirmation,
) -> Tuple[Appointment, BookingReceipt]:
    """
    Run the booking transaction for a complete draft.
    On failure the caller keeps its draft token unchanged.
    """
    draft.guard(DraftStep.CONFIRM)
    appointment = commit_booking(
        db,
        organization,
        CustomerInfo(full_name=draft.contact.full_name, phone=draft.contact.phone),
        draft.service.service_id,
        draft.professional.choice if draft.professional else ANY_PROFESSIONAL,
        slot_start=draft.slot.start,
        now=now,
        notify=notify,
    )
    return appointment, BookingReceipt.from_appointment(appointment, organization)
