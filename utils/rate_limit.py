"""Rate limiting utilities using throttled-py"""
from datetime import timedelta
from throttled import Throttled, RateLimiterType, store, rate_limiter

from core.config import logger, REDIS_URL, BOOKING_RATE_LIMIT_PER_HOUR

# Initialize storage - Redis for production, MemoryStore for development
_storage_type = "memory"
try:
    if REDIS_URL:
        # RedisStore expects the URL string, not a Redis client object
        storage = store.RedisStore(server=REDIS_URL)
        _storage_type = "redis"
        logger.info("[rate_limit] Using Redis for rate limiting")
    else:
        storage = store.MemoryStore()
        logger.warning("[rate_limit] REDIS_URL not set - using in-memory storage (not suitable for production with multiple workers)")
except Exception as ex:
    # Fallback to memory storage if Redis is not available
    storage = store.MemoryStore()
    logger.warning(f"[rate_limit] Redis connection failed, using in-memory storage: {ex}")

# Booking commit limiter: BOOKING_RATE_LIMIT_PER_HOUR commits per IP per hour
booking_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(hours=1), limit=BOOKING_RATE_LIMIT_PER_HOUR),
    store=storage,
)


def check_booking_rate_limit(ip: str) -> tuple[bool, str]:
    """
    Check if a booking commit is allowed for this client.

    Args:
        ip: Client IP address

    Returns:
        Tuple of (allowed: bool, error_message: str)
    """
    try:
        result = booking_throttle.limit(f"booking:{ip or 'unknown'}", cost=1)
        if result.limited:
            return False, "Too many booking attempts. Please try again later."
        return True, ""
    except Exception as ex:
        logger.warning(f"[rate_limit] Booking rate limit check failed: {ex}")
        # Fail open - a limiter outage must not block bookings
        return True, ""
