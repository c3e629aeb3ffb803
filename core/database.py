"""
Database connection and setup
Engine and session factory are built per application (see main.create_app)
and handed to routes through the get_db dependency
"""
from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import DateTime, TypeDecorator

from core.config import logger

# Base class for ORM models
Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp stored as UTC.
    SQLite drops offsets, so values are normalized on the way in and
    re-tagged as UTC on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime cannot be stored; attach a timezone first")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_db_engine(database_url: str) -> Engine:
    """Create the SQLAlchemy engine for a database URL"""
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("sqlite"):
        # Concurrent writers wait on the file lock instead of failing fast
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        echo=False  # Set to True for SQL query logging in development
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request):
    """
    Dependency for FastAPI routes to get database session
    Usage:
        @router.get("/items")
        def list_items(db: Session = Depends(get_db)):
            ...
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Engine):
    """
    Initialize database tables
    Call this on application startup
    """
    # Models register themselves (and their DDL hooks) on Base.metadata at import
    from models.organization import Organization, Service, Professional  # noqa: F401
    from models.customer import Customer  # noqa: F401
    from models.appointment import Appointment  # noqa: F401

    if engine.dialect.name == "postgresql":
        # GiST exclusion on (uuid =, tstzrange &&) needs btree_gist
        with engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))

    Base.metadata.create_all(bind=engine)
    logger.info(f"Database initialized ({engine.dialect.name})")
