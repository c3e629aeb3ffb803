"""
Customer model
One record per (organization, WhatsApp number); reused across bookings
"""
import uuid

from sqlalchemy import Column, String, Text, ForeignKey, Uuid, UniqueConstraint
from sqlalchemy.orm import relationship

from core.database import Base, UTCDateTime, utcnow


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("organization_id", "whatsapp_number", name="uq_customers_org_phone"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)

    full_name = Column(String(255), nullable=False)
    whatsapp_number = Column(String(50), nullable=False)
    internal_notes = Column(Text, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    appointments = relationship("Appointment", back_populates="customer")

    def to_dict(self):
        return {
            "id": str(self.id),
            "full_name": self.full_name,
            "whatsapp_number": self.whatsapp_number,
            "internal_notes": self.internal_notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
