from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
import os

from core.config import logger, DATABASE_URL  # type: ignore
from core.database import create_db_engine, create_session_factory, init_db
from core.errors import AgendaError, DataAccessError

# Routers
from routers import admin, public_booking  # type: ignore


def _allowed_origins() -> list:
    _default_origins = ",".join([
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ])
    _origins_env = os.getenv("ALLOWED_ORIGINS") or os.getenv("CORS_ORIGINS") or os.getenv("FRONTEND_ORIGIN") or _default_origins
    return [o.strip() for o in _origins_env.split(",") if o.strip()]


def create_app(database_url: Optional[str] = None) -> FastAPI:
    """
    Build the application with its own engine and session factory.
    Routes reach the database only through app.state via get_db.
    """
    app = FastAPI(title="Agenda Booking")

    engine = create_db_engine(database_url or DATABASE_URL)
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    try:
        init_db(engine)
    except Exception as _ex:
        logger.warning(f"init_db failed: {_ex}")

    # ---- CORS setup ----
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Booking-Draft"],
    )

    # --- Security headers ---
    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
        return response

    # --- Error rendering ---
    @app.exception_handler(AgendaError)
    async def agenda_error_handler(request: Request, exc: AgendaError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(OperationalError)
    async def database_unavailable_handler(request: Request, exc: OperationalError):
        logger.error(f"[db] {request.method} {request.url.path} failed: {exc}")
        err = DataAccessError()
        return JSONResponse(err.to_dict(), status_code=err.status_code)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse({"error": "internal_error", "message": "Something went wrong"}, status_code=500)

    app.include_router(public_booking.router)
    app.include_router(admin.router)

    @app.get("/")
    async def root():
        return {"ok": True}

    return app


app = create_app()
