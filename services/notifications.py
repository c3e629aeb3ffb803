"""
WhatsApp Notification Service

Sends booking confirmations through the configured provider:
- mock: logs only (default)
- meta: WhatsApp Cloud API
- evolution: self-hosted Evolution API gateway

Dispatch is fire-and-forget; failures are logged and never reach the booking.
"""
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx

from core import config
from core.config import logger
from services.availability import get_timezone


@dataclass
class NotificationResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class BookingConfirmation:
    """Plain snapshot of a committed booking, safe to hand to another thread"""
    recipient_phone: str
    organization_name: str
    start_time: datetime
    timezone: str


class NotificationBackend(ABC):
    """Interface every WhatsApp provider implements"""
    name = "base"

    @abstractmethod
    def send_message(self, to: str, text: str) -> NotificationResult:
        pass


class MockBackend(NotificationBackend):
    name = "mock"

    def send_message(self, to: str, text: str) -> NotificationResult:
        logger.info(f"[whatsapp mock] Sending to {to}: {text}")
        return NotificationResult(success=True, message_id=f"mock-id-{int(datetime.now(timezone.utc).timestamp() * 1000)}")


class MetaCloudBackend(NotificationBackend):
    name = "meta"

    def __init__(self, phone_number_id: str, access_token: str, api_version: str = "v17.0", timeout: float = 10.0):
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout

    def send_message(self, to: str, text: str) -> NotificationResult:
        if not self.phone_number_id or not self.access_token:
            return NotificationResult(success=False, error="Meta WhatsApp configuration missing")

        url = f"https://graph.facebook.com/{self.api_version}/{self.phone_number_id}/messages"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        try:
            response = httpx.post(url, headers=headers, json=payload, timeout=self.timeout)
        except httpx.RequestError as e:
            return NotificationResult(success=False, error=f"Request error: {e}")

        if response.status_code not in (200, 201):
            return NotificationResult(success=False, error=f"{response.status_code} - {response.text}")

        data = response.json()
        messages = data.get("messages") or [{}]
        return NotificationResult(success=True, message_id=messages[0].get("id"))


class EvolutionBackend(NotificationBackend):
    name = "evolution"

    def __init__(self, base_url: str, instance: str, api_key: str, timeout: float = 10.0):
        self.base_url = (base_url or "").rstrip("/")
        self.instance = instance
        self.api_key = api_key
        self.timeout = timeout

    def send_message(self, to: str, text: str) -> NotificationResult:
        if not self.base_url or not self.instance:
            return NotificationResult(success=False, error="Evolution API configuration missing")

        url = f"{self.base_url}/message/sendText/{self.instance}"
        headers = {
            "apikey": self.api_key or "",
            "Content-Type": "application/json",
        }
        payload = {
            "number": to,
            "text": text,
            "delay": 1200,
            "linkPreview": False,
        }
        try:
            response = httpx.post(url, headers=headers, json=payload, timeout=self.timeout)
        except httpx.RequestError as e:
            return NotificationResult(success=False, error=f"Request error: {e}")

        if response.status_code not in (200, 201):
            return NotificationResult(success=False, error=f"{response.status_code} - {response.text}")

        data = response.json()
        key = data.get("key") or {}
        return NotificationResult(success=True, message_id=key.get("id") or data.get("id"))


def get_notification_backend(provider: Optional[str] = None) -> NotificationBackend:
    """
    Factory for the configured provider.

    Raises:
        ValueError: if the provider is not supported
    """
    provider = (provider or config.WHATSAPP_PROVIDER or "mock").strip().lower()
    if provider == "mock":
        return MockBackend()
    elif provider == "meta":
        return MetaCloudBackend(
            config.META_PHONE_NUMBER_ID,
            config.META_ACCESS_TOKEN,
            api_version=config.META_API_VERSION,
            timeout=config.WHATSAPP_TIMEOUT_SECONDS,
        )
    elif provider == "evolution":
        return EvolutionBackend(
            config.EVOLUTION_API_URL,
            config.EVOLUTION_INSTANCE,
            config.EVOLUTION_API_KEY,
            timeout=config.WHATSAPP_TIMEOUT_SECONDS,
        )
    else:
        raise ValueError(f"Unsupported WhatsApp provider: {provider}")


def build_confirmation_message(confirmation: BookingConfirmation) -> str:
    local_start = confirmation.start_time.astimezone(get_timezone(confirmation.timezone))
    date_str = local_start.strftime("%d/%m/%Y")
    time_str = local_start.strftime("%H:%M")
    return (
        f"¡Hola! Tu reserva en *{confirmation.organization_name}* ha sido confirmada.\n\n"
        f"📅 Fecha: {date_str}\n"
        f"⏰ Hora: {time_str}\n\n"
        "Te esperamos. Si necesitas cancelar o reprogramar, avísanos con tiempo."
    )


def send_booking_confirmation(confirmation: BookingConfirmation, backend: Optional[NotificationBackend] = None) -> NotificationResult:
    """Send the confirmation and log the outcome; never raises"""
    try:
        backend = backend or get_notification_backend()
        result = backend.send_message(confirmation.recipient_phone, build_confirmation_message(confirmation))
    except Exception as e:
        logger.error(f"[whatsapp] Error sending booking confirmation to {confirmation.recipient_phone}: {e}")
        return NotificationResult(success=False, error=str(e))

    if result.success:
        logger.info(f"[whatsapp] Booking confirmation sent to {confirmation.recipient_phone} via {backend.name} ({result.message_id})")
    else:
        logger.warning(f"[whatsapp] Failed to send booking confirmation to {confirmation.recipient_phone}: {result.error}")
    return result


def dispatch_booking_confirmation(confirmation: BookingConfirmation) -> None:
    """Send in a background thread so the booking response is not blocked"""
    thread = threading.Thread(target=send_booking_confirmation, args=(confirmation,))
    thread.daemon = True
    thread.start()
