# ot_allocation/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Time, ForeignKey, Text, Date, Table,
    Enum as SQLAlchemyEnum, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base
import enum


class CatalogStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"


class RecordStatus(str, enum.Enum):
    Active = "Active"
    InActive = "InActive"


class OperationStatus(str, enum.Enum):
    Scheduled = "Scheduled"
    InProgress = "InProgress"
    Completed = "Completed"
    Cancelled = "Cancelled"
    Postponed = "Postponed"

    @property
    def is_override(self) -> bool:
        return self in (OperationStatus.Cancelled, OperationStatus.Postponed)

    @property
    def holds_slot(self) -> bool:
        return self in (OperationStatus.Scheduled, OperationStatus.InProgress)


class PatientSourceKind(str, enum.Enum):
    direct = "direct"
    room_admission = "room_admission"
    appointment = "appointment"
    emergency_bed = "emergency_bed"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# ==================== Directory tables (owned by the surrounding HMS) ====================

class Patient(Base):
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, index=True)
    patient_no = Column(String(50), unique=True, nullable=True)
    first_name = Column(String(255), nullable=False)
    last_name = Column(String(255), nullable=True)
    status = Column(SQLAlchemyEnum(RecordStatus, name='patient_status'), default=RecordStatus.Active, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    @property
    def name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class RoomAdmission(Base):
    __tablename__ = "room_admissions"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    room_bed_no = Column(String(50), nullable=True)
    admitted_at = Column(DateTime(timezone=True), server_default=func.now())
    status = Column(SQLAlchemyEnum(RecordStatus, name='admission_status'), default=RecordStatus.Active, nullable=False)


class PatientAppointment(Base):
    __tablename__ = "patient_appointments"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    token_no = Column(String(20), nullable=True)
    appointment_date = Column(Date, nullable=True)
    status = Column(SQLAlchemyEnum(RecordStatus, name='appointment_status'), default=RecordStatus.Active, nullable=False)


class EmergencyBedSlot(Base):
    __tablename__ = "emergency_bed_slots"

    id = Column(Integer, primary_key=True, index=True)
    emergency_bed_id = Column(Integer, nullable=False)
    # Current occupant; NULL while the bed slot is free
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=True)
    status = Column(SQLAlchemyEnum(RecordStatus, name='bed_slot_status'), default=RecordStatus.Active, nullable=False)


class Staff(Base):
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    role_name = Column(String(100), nullable=False)
    status = Column(SQLAlchemyEnum(RecordStatus, name='staff_status'), default=RecordStatus.Active, nullable=False)


class Bill(Base):
    __tablename__ = "bills"

    id = Column(Integer, primary_key=True, index=True)
    bill_no = Column(String(50), unique=True, nullable=False)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=True)


# ==================== OT catalog ====================

class OTRoom(Base):
    """An operating theatre and its daily operating window."""
    __tablename__ = "ot_rooms"

    id = Column(Integer, primary_key=True, index=True)
    ot_no = Column(String(20), unique=True, nullable=False)
    ot_type = Column(String(50), nullable=False, default="General")
    ot_name = Column(String(255), nullable=False)
    ot_description = Column(Text, nullable=True)
    start_time_of_day = Column(Time, nullable=False)
    end_time_of_day = Column(Time, nullable=False)
    status = Column(SQLAlchemyEnum(CatalogStatus, name='ot_room_status'), default=CatalogStatus.active, nullable=False)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    slots = relationship("OTSlot", back_populates="room", order_by="OTSlot.slot_start_time")


class OTSlot(Base):
    """A recurring daily time-of-day window inside one theatre."""
    __tablename__ = "ot_slots"
    __table_args__ = (
        UniqueConstraint('ot_id', 'ot_slot_no', name='uq_ot_slot_no'),
        Index('idx_ot_slots_room_start', 'ot_id', 'slot_start_time'),
    )

    id = Column(Integer, primary_key=True, index=True)
    ot_id = Column(Integer, ForeignKey("ot_rooms.id"), nullable=False)
    ot_slot_no = Column(Integer, nullable=False)
    slot_start_time = Column(Time, nullable=False)
    slot_end_time = Column(Time, nullable=False)
    status = Column(SQLAlchemyEnum(CatalogStatus, name='ot_slot_status'), default=CatalogStatus.active, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    room = relationship("OTRoom", back_populates="slots")


patient_ot_allocation_slots = Table(
    "patient_ot_allocation_slots",
    Base.metadata,
    Column("allocation_id", Integer, ForeignKey("patient_ot_allocations.id", ondelete="CASCADE"), primary_key=True),
    Column("ot_slot_id", Integer, ForeignKey("ot_slots.id"), primary_key=True),
)


class PatientOTAllocation(Base):
    """A booking of a patient and surgical team into a theatre on a date.

    Only the manual override (Cancelled/Postponed) is persisted. Scheduled,
    InProgress and Completed are re-derived from the clock on every read.
    """
    __tablename__ = "patient_ot_allocations"
    __table_args__ = (
        Index('idx_ot_allocations_room_date', 'ot_id', 'ot_allocation_date'),
        Index('idx_ot_allocations_patient', 'patient_id'),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Resolved patient plus the single source it came from
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    patient_source_kind = Column(SQLAlchemyEnum(PatientSourceKind, name='patient_source_kind'), nullable=False)
    room_admission_id = Column(Integer, ForeignKey("room_admissions.id"), nullable=True)
    patient_appointment_id = Column(Integer, ForeignKey("patient_appointments.id"), nullable=True)
    emergency_bed_slot_id = Column(Integer, ForeignKey("emergency_bed_slots.id"), nullable=True)

    ot_id = Column(Integer, ForeignKey("ot_rooms.id"), nullable=False)
    surgery_id = Column(Integer, nullable=True)

    # Surgical team
    lead_surgeon_id = Column(Integer, ForeignKey("staff.id"), nullable=False)
    assistant_doctor_id = Column(Integer, ForeignKey("staff.id"), nullable=True)
    anaesthetist_id = Column(Integer, ForeignKey("staff.id"), nullable=True)
    nurse_id = Column(Integer, ForeignKey("staff.id"), nullable=True)

    # Timing
    ot_allocation_date = Column(Date, nullable=False, index=True)
    duration = Column(Integer, nullable=True)
    ot_start_time = Column(Time, nullable=True)
    ot_end_time = Column(Time, nullable=True)
    ot_actual_start_time = Column(Time, nullable=True)
    ot_actual_end_time = Column(Time, nullable=True)

    # Clinical details
    operation_description = Column(Text, nullable=True)
    operation_status_override = Column(SQLAlchemyEnum(OperationStatus, name='operation_status'), nullable=True)
    pre_operation_notes = Column(Text, nullable=True)
    post_operation_notes = Column(Text, nullable=True)
    ot_documents = Column(Text, nullable=True)

    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=True)
    status = Column(SQLAlchemyEnum(RecordStatus, name='allocation_status'), default=RecordStatus.Active, nullable=False, index=True)

    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    patient = relationship("Patient")
    room = relationship("OTRoom")
    lead_surgeon = relationship("Staff", foreign_keys=[lead_surgeon_id])
    slots = relationship("OTSlot", secondary=patient_ot_allocation_slots, order_by="OTSlot.slot_start_time")

    @property
    def slot_ids(self):
        return [slot.id for slot in self.slots]


class AuditLog(Base):
    """Structured audit trail for catalog and allocation mutations."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_logs_category_time', 'category', 'timestamp'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True)
    username = Column(String(50), nullable=False, default="System")
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    category = Column(String(50), nullable=False, default="GENERAL")
    severity = Column(String(10), nullable=False, default="INFO")
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Integer, nullable=True)
    details = Column(Text, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now())
