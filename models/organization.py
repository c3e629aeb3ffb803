"""
Organization (tenant) and catalog models
An organization owns its services and professionals; public booking links are keyed by slug
"""
import uuid

from sqlalchemy import Column, String, Text, Boolean, Integer, Numeric, ForeignKey, JSON, Uuid, CheckConstraint
from sqlalchemy.orm import relationship

from core.database import Base, UTCDateTime, utcnow


class Organization(Base):
    """Tenant business"""
    __tablename__ = "organizations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    slug = Column(String(100), nullable=False, unique=True, index=True)  # immutable once published
    name = Column(String(255), nullable=False)
    whatsapp_number = Column(String(50), nullable=True)
    timezone = Column(String(64), nullable=False, default="America/Bogota")
    logo_url = Column(Text, nullable=True)

    # {"opening_hours": {"monday": {"open": "09:00", "close": "18:00"}, "sunday": null}, "slot_step_minutes": 30}
    settings = Column(JSON, default=dict)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    services = relationship("Service", back_populates="organization", cascade="all, delete-orphan")
    professionals = relationship("Professional", back_populates="organization", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": str(self.id),
            "slug": self.slug,
            "name": self.name,
            "whatsapp_number": self.whatsapp_number,
            "timezone": self.timezone,
            "logo_url": self.logo_url,
            "settings": self.settings or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def to_public_dict(self):
        return {
            "slug": self.slug,
            "name": self.name,
            "timezone": self.timezone,
            "logo_url": self.logo_url,
        }


class Service(Base):
    """Bookable offering with a fixed duration"""
    __tablename__ = "services"
    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_services_duration_positive"),
        CheckConstraint("price >= 0", name="ck_services_price_non_negative"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)  # soft delete keeps past appointments intact

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="services")

    def to_dict(self):
        return {
            "id": str(self.id),
            "name": self.name,
            "duration_minutes": self.duration_minutes,
            "price": float(self.price) if self.price is not None else 0.0,
            "is_active": self.is_active,
        }


class Professional(Base):
    """Staff member appointments are assigned to"""
    __tablename__ = "professionals"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String(255), nullable=False)
    color_code = Column(String(7), nullable=False, default="#6366f1")
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    organization = relationship("Organization", back_populates="professionals")

    def to_dict(self):
        return {
            "id": str(self.id),
            "name": self.name,
            "color_code": self.color_code,
            "is_active": self.is_active,
        }
