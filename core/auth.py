import os
import secrets
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from core.config import logger, ADMIN_ALLOWLIST_IPS


def get_admin_secret() -> str:
    # Read at call time so tests and rotations don't need a restart
    return (os.getenv("ADMIN_SECRET") or "").strip()


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def require_admin(request: Request) -> Optional[JSONResponse]:
    """
    Check the X-Admin-Secret header (and the IP allowlist when configured).
    Returns an error response to send back, or None when the caller is allowed.
    """
    configured = get_admin_secret()
    if not configured:
        return JSONResponse({"error": "admin_not_configured", "message": "Admin access is not configured"}, status_code=503)

    provided = (request.headers.get("X-Admin-Secret") or "").strip()
    if not provided or not secrets.compare_digest(provided.encode(), configured.encode()):
        return JSONResponse({"error": "unauthorized", "message": "Invalid admin secret"}, status_code=401)

    if ADMIN_ALLOWLIST_IPS:
        ip = client_ip(request)
        if ip and ip not in ADMIN_ALLOWLIST_IPS:
            logger.warning(f"[admin] Rejected admin request from {ip}")
            return JSONResponse({"error": "forbidden", "message": "Not allowed from this address"}, status_code=403)
    return None
