"""
Booking error taxonomy
Services raise these; main.py renders them as JSON responses
"""
from typing import Optional


class AgendaError(Exception):
    """Base class for errors surfaced to API callers"""
    code = "error"
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class NotFound(AgendaError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class OrganizationNotFound(NotFound):
    default_message = "Organization not found"


class ValidationError(AgendaError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid input"


class Conflict(AgendaError):
    code = "conflict"
    status_code = 409
    default_message = "Conflict"


class SlotNoLongerAvailable(Conflict):
    """Another booking took the slot; the caller should refresh availability, not retry"""
    code = "slot_unavailable"
    default_message = "That time was just taken. Please pick another time."

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["retry"] = "refresh_availability"
        return result


class Transient(AgendaError):
    code = "temporarily_unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable. Please try again."


class DataAccessError(Transient):
    default_message = "Could not read the schedule right now. Please try again."
