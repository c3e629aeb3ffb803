"""
Validation utilities for booking input (names, phones, ids, dates)
Validators return (is_valid, error_message); parsers return None on bad input
"""
import re
import uuid
from datetime import date, datetime
from typing import Optional, Tuple, Union


SLUG_RE = re.compile(r'^[a-z0-9]+(?:-[a-z0-9]+)*$')
COLOR_RE = re.compile(r'^#[0-9a-fA-F]{6}$')
PHONE_RE = re.compile(r'^\+?[0-9]{7,15}$')


def validate_full_name(name: Optional[str]) -> Tuple[bool, str]:
    """
    Validate a customer's name.
    Returns (is_valid, error_message).
    """
    trimmed = (name or "").strip()

    if not trimmed:
        return False, "Full name is required"

    if len(trimmed) < 2:
        return False, "Full name must be at least 2 characters"

    if len(trimmed) > 255:
        return False, "Full name is too long"

    if not re.search(r'[^\W\d_]', trimmed):
        return False, "Full name must contain letters"

    return True, ""


def normalize_phone(phone: Optional[str]) -> str:
    """Strip common formatting characters so one number maps to one customer"""
    return re.sub(r'[\s\-\.\(\)]+', '', (phone or "").strip())


def validate_phone(phone: Optional[str]) -> Tuple[bool, str]:
    """Validate WhatsApp number format"""
    clean = normalize_phone(phone)
    if not clean:
        return False, "WhatsApp number is required"

    # Should be mostly digits, optionally starting with +
    if not PHONE_RE.match(clean):
        return False, "Please enter a valid phone number"

    return True, ""


def validate_slug(slug: Optional[str]) -> Tuple[bool, str]:
    value = (slug or "").strip()
    if not value:
        return False, "Slug is required"
    if len(value) < 3 or len(value) > 100:
        return False, "Slug must be between 3 and 100 characters"
    if not SLUG_RE.match(value):
        return False, "Slug may only contain lowercase letters, numbers and hyphens"
    return True, ""


def validate_color(code: Optional[str]) -> Tuple[bool, str]:
    if not code or not COLOR_RE.match(code):
        return False, "Color must be a hex value like #6366f1"
    return True, ""


def parse_uuid(value: Union[str, uuid.UUID, None]) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    if not value:
        return None
    try:
        return uuid.UUID(str(value).strip())
    except (ValueError, AttributeError):
        return None


def parse_day(value: Union[str, date, None]) -> Optional[date]:
    """Parse a calendar date (YYYY-MM-DD)"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value:
        return None
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        return None


def parse_instant(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; the result may be naive if no offset was given"""
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    except ValueError:
        return None
