"""
Appointment model
Source of truth for schedule collisions. Non-cancelled rows for the same
professional may never overlap; the database enforces it.
"""
import enum
import uuid

from sqlalchemy import Column, ForeignKey, Uuid, Index, CheckConstraint, DDL, Enum as SQLEnum, event, text
from sqlalchemy.orm import relationship

from core.database import Base, UTCDateTime, utcnow


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Statuses that hold their slot on the schedule
OCCUPYING_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.COMPLETED,
)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_appointments_positive_range"),
        Index("ix_appointments_org_start", "organization_id", "start_time"),
        # Portable guard: two live appointments cannot start at the same instant for one professional
        Index(
            "uq_appointments_professional_start",
            "professional_id",
            "start_time",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(Uuid(as_uuid=True), ForeignKey("customers.id", ondelete="RESTRICT"), nullable=False, index=True)
    service_id = Column(Uuid(as_uuid=True), ForeignKey("services.id", ondelete="RESTRICT"), nullable=False)
    professional_id = Column(Uuid(as_uuid=True), ForeignKey("professionals.id", ondelete="RESTRICT"), nullable=False, index=True)

    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    status = Column(
        SQLEnum(
            AppointmentStatus,
            name="appointment_status",
            native_enum=False,
            create_constraint=True,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=AppointmentStatus.CONFIRMED,
    )

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    customer = relationship("Customer", back_populates="appointments")
    service = relationship("Service")
    professional = relationship("Professional")

    @property
    def occupies_schedule(self) -> bool:
        return self.status != AppointmentStatus.CANCELLED

    def to_dict(self):
        result = {
            "id": str(self.id),
            "organization_id": str(self.organization_id),
            "customer_id": str(self.customer_id),
            "service_id": str(self.service_id),
            "professional_id": str(self.professional_id),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "status": self.status.value if self.status else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        return result

    def to_agenda_dict(self):
        result = self.to_dict()
        result["customer"] = self.customer.to_dict() if self.customer else None
        result["service"] = self.service.to_dict() if self.service else None
        result["professional"] = self.professional.to_dict() if self.professional else None
        return result


# Full overlap guarantee on PostgreSQL: no two live ranges intersect for one professional
event.listen(
    Appointment.__table__,
    "after_create",
    DDL(
        "ALTER TABLE appointments ADD CONSTRAINT ex_appointments_professional_overlap "
        "EXCLUDE USING gist (professional_id WITH =, tstzrange(start_time, end_time, '[)') WITH &&) "
        "WHERE (status <> 'cancelled')"
    ).execute_if(dialect="postgresql"),
)


# Same guarantee on SQLite, which has no exclusion constraints. RAISE(ABORT)
# surfaces as an IntegrityError, like the PostgreSQL constraint violation.
_SQLITE_OVERLAP_CHECK = (
    "SELECT RAISE(ABORT, 'appointment overlaps a live appointment for this professional') "
    "WHERE EXISTS ("
    "SELECT 1 FROM appointments a "
    "WHERE a.professional_id = NEW.professional_id "
    "AND a.status != 'cancelled' "
    "AND a.start_time < NEW.end_time "
    "AND a.end_time > NEW.start_time "
    "AND a.id != NEW.id"
    ");"
)

event.listen(
    Appointment.__table__,
    "after_create",
    DDL(
        "CREATE TRIGGER trg_appointments_no_overlap_insert "
        "BEFORE INSERT ON appointments "
        "WHEN NEW.status != 'cancelled' "
        f"BEGIN {_SQLITE_OVERLAP_CHECK} END"
    ).execute_if(dialect="sqlite"),
)

event.listen(
    Appointment.__table__,
    "after_create",
    DDL(
        "CREATE TRIGGER trg_appointments_no_overlap_update "
        "BEFORE UPDATE OF professional_id, start_time, end_time, status ON appointments "
        "WHEN NEW.status != 'cancelled' "
        f"BEGIN {_SQLITE_OVERLAP_CHECK} END"
    ).execute_if(dialect="sqlite"),
)
