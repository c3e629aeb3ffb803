import os
import logging
import secrets
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("agenda")

# Database
DATABASE_URL = (os.getenv("DATABASE_URL", "") or "").strip()

# Scheduling defaults (per-organization settings override these)
DEFAULT_TIMEZONE = (os.getenv("DEFAULT_TIMEZONE", "America/Bogota") or "America/Bogota").strip()
DEFAULT_OPEN_TIME = (os.getenv("DEFAULT_OPEN_TIME", "09:00") or "09:00").strip()
DEFAULT_CLOSE_TIME = (os.getenv("DEFAULT_CLOSE_TIME", "18:00") or "18:00").strip()
SLOT_STEP_MINUTES = int(os.getenv("SLOT_STEP_MINUTES", "30"))

# Booking draft tokens (client-held wizard state)
BOOKING_DRAFT_SECRET = (os.getenv("BOOKING_DRAFT_SECRET", "") or os.getenv("SECRET_KEY", "")).strip()
if not BOOKING_DRAFT_SECRET:
    # Drafts signed with this key do not survive a restart or cross instances
    BOOKING_DRAFT_SECRET = secrets.token_urlsafe(32)
    logger.warning("BOOKING_DRAFT_SECRET not set - using a random per-process key")
BOOKING_DRAFT_TTL_MINUTES = int(os.getenv("BOOKING_DRAFT_TTL_MINUTES", "120"))

# WhatsApp notifications: mock | meta | evolution
WHATSAPP_PROVIDER = (os.getenv("WHATSAPP_PROVIDER", "mock") or "mock").strip().lower()
META_API_VERSION = (os.getenv("META_API_VERSION", "v17.0") or "v17.0").strip()
META_PHONE_NUMBER_ID = os.getenv("META_PHONE_NUMBER_ID", "").strip()
META_ACCESS_TOKEN = os.getenv("META_ACCESS_TOKEN", "").strip()
EVOLUTION_API_URL = (os.getenv("EVOLUTION_API_URL", "") or "").strip().rstrip("/")
EVOLUTION_INSTANCE = os.getenv("EVOLUTION_INSTANCE", "").strip()
EVOLUTION_API_KEY = os.getenv("EVOLUTION_API_KEY", "").strip()
WHATSAPP_TIMEOUT_SECONDS = float(os.getenv("WHATSAPP_TIMEOUT_SECONDS", "10"))

# Admin surface
ADMIN_ALLOWLIST_IPS = [ip.strip() for ip in (os.getenv("ADMIN_ALLOWLIST_IPS", "").split(",") if os.getenv("ADMIN_ALLOWLIST_IPS") else []) if ip.strip()]

# Rate limiting
REDIS_URL = os.getenv("REDIS_URL", "").strip()
BOOKING_RATE_LIMIT_PER_HOUR = int(os.getenv("BOOKING_RATE_LIMIT_PER_HOUR", "30"))
