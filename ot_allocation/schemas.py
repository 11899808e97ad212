# ot_allocation/schemas.py
from datetime import datetime, date, time
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from .models import CatalogStatus, OperationStatus, PatientSourceKind, RecordStatus


# --- Base Schemas ---
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- OT Room Schemas ---
class OTRoomBase(BaseSchema):
    ot_no: str = Field(..., min_length=1, max_length=20)
    ot_type: str = Field("General", max_length=50)
    ot_name: str = Field(..., min_length=1, max_length=255)
    ot_description: Optional[str] = None
    start_time_of_day: time
    end_time_of_day: time
    status: CatalogStatus = CatalogStatus.active

    @model_validator(mode='after')
    def check_operating_window(self):
        if self.start_time_of_day >= self.end_time_of_day:
            raise ValueError('start_time_of_day must be before end_time_of_day')
        return self


class OTRoomCreate(OTRoomBase):
    created_by: Optional[int] = None


class OTRoomUpdate(BaseSchema):
    ot_no: Optional[str] = Field(None, min_length=1, max_length=20)
    ot_type: Optional[str] = Field(None, max_length=50)
    ot_name: Optional[str] = Field(None, min_length=1, max_length=255)
    ot_description: Optional[str] = None
    start_time_of_day: Optional[time] = None
    end_time_of_day: Optional[time] = None
    status: Optional[CatalogStatus] = None


class OTRoomResponse(OTRoomBase):
    id: int
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --- OT Slot Schemas ---
class OTSlotCreate(BaseSchema):
    ot_id: int
    ot_slot_no: Optional[int] = Field(None, ge=1, description="Auto-assigned within the room when omitted.")
    slot_start_time: time
    slot_end_time: time
    status: CatalogStatus = CatalogStatus.active

    @model_validator(mode='after')
    def check_slot_window(self):
        if self.slot_start_time >= self.slot_end_time:
            raise ValueError('slot_start_time must be before slot_end_time')
        return self


class OTSlotUpdate(BaseSchema):
    ot_slot_no: Optional[int] = Field(None, ge=1)
    slot_start_time: Optional[time] = None
    slot_end_time: Optional[time] = None
    status: Optional[CatalogStatus] = None


class OTSlotResponse(BaseSchema):
    id: int
    ot_id: int
    ot_slot_no: int
    slot_start_time: time
    slot_end_time: time
    status: CatalogStatus
    created_at: Optional[datetime] = None
    ot_no: Optional[str] = None
    ot_name: Optional[str] = None
    ot_type: Optional[str] = None

    @classmethod
    def from_slot(cls, slot) -> "OTSlotResponse":
        response = cls.model_validate(slot)
        if slot.room is not None:
            response.ot_no = slot.room.ot_no
            response.ot_name = slot.room.ot_name
            response.ot_type = slot.room.ot_type
        return response


class SlotGenerateRequest(BaseSchema):
    duration_minutes: int = Field(30, gt=0, le=24 * 60)
    max_slots: Optional[int] = Field(None, gt=0)


class SlotGenerateResponse(BaseSchema):
    ot_id: int
    created: List[OTSlotResponse] = []
    skipped_start_times: List[time] = []


# --- Occupancy Schemas ---
class SlotOccupancyView(BaseSchema):
    ot_slot_id: int
    ot_slot_no: int
    slot_start_time: time
    slot_end_time: time
    is_available: bool
    is_occupied: bool
    occupying_allocation_id: Optional[int] = None
    is_selectable: bool


class RoomOccupancyResponse(BaseSchema):
    ot_id: int
    ot_allocation_date: date
    slots: List[SlotOccupancyView] = []


# --- Patient OT Allocation Schemas ---
class _AllocationFields(BaseSchema):
    surgery_id: Optional[int] = None
    assistant_doctor_id: Optional[int] = None
    anaesthetist_id: Optional[int] = None
    nurse_id: Optional[int] = None
    duration: Optional[int] = Field(None, ge=0, description="Planned duration in minutes.")
    ot_start_time: Optional[time] = None
    ot_end_time: Optional[time] = None
    ot_actual_start_time: Optional[time] = None
    ot_actual_end_time: Optional[time] = None
    operation_description: Optional[str] = None
    operation_status: Optional[OperationStatus] = None
    pre_operation_notes: Optional[str] = None
    post_operation_notes: Optional[str] = None
    ot_documents: Optional[str] = None
    bill_id: Optional[int] = None

    @field_validator('operation_status', mode='before')
    @classmethod
    def normalise_operation_status(cls, v):
        # Older clients send "In Progress"
        if isinstance(v, str) and v.strip().lower().replace(' ', '') == 'inprogress':
            return OperationStatus.InProgress
        return v


class PatientOTAllocationCreate(_AllocationFields):
    # Patient source: exactly one of these four
    patient_id: Optional[str] = None
    room_admission_id: Optional[int] = None
    patient_appointment_id: Optional[int] = None
    emergency_bed_slot_id: Optional[int] = None

    ot_id: Optional[int] = None
    ot_slot_ids: List[int] = []
    lead_surgeon_id: Optional[int] = None
    ot_allocation_date: Optional[date] = None
    created_by: Optional[int] = None
    status: RecordStatus = RecordStatus.Active


class PatientOTAllocationUpdate(_AllocationFields):
    patient_id: Optional[str] = None
    room_admission_id: Optional[int] = None
    patient_appointment_id: Optional[int] = None
    emergency_bed_slot_id: Optional[int] = None

    ot_id: Optional[int] = None
    ot_slot_ids: Optional[List[int]] = None
    lead_surgeon_id: Optional[int] = None
    ot_allocation_date: Optional[date] = None
    status: Optional[RecordStatus] = None


class PatientOTAllocationDuplicate(BaseSchema):
    ot_allocation_date: date
    ot_slot_ids: List[int] = []
    created_by: Optional[int] = None


class StatusPreviewRequest(BaseSchema):
    ot_id: int
    ot_allocation_date: date
    ot_slot_ids: List[int] = []
    operation_status: Optional[OperationStatus] = None


class StatusPreviewResponse(BaseSchema):
    ot_allocation_date: date
    reference_slot_id: Optional[int] = None
    operation_status: OperationStatus


class PatientOTAllocationResponse(BaseSchema):
    id: int
    patient_id: str
    patient_source_kind: PatientSourceKind
    room_admission_id: Optional[int] = None
    patient_appointment_id: Optional[int] = None
    emergency_bed_slot_id: Optional[int] = None
    ot_id: int
    ot_slot_ids: List[int] = []
    surgery_id: Optional[int] = None
    lead_surgeon_id: int
    assistant_doctor_id: Optional[int] = None
    anaesthetist_id: Optional[int] = None
    nurse_id: Optional[int] = None
    ot_allocation_date: date
    duration: Optional[int] = None
    ot_start_time: Optional[time] = None
    ot_end_time: Optional[time] = None
    ot_actual_start_time: Optional[time] = None
    ot_actual_end_time: Optional[time] = None
    operation_description: Optional[str] = None
    operation_status: OperationStatus
    pre_operation_notes: Optional[str] = None
    post_operation_notes: Optional[str] = None
    ot_documents: Optional[str] = None
    bill_id: Optional[int] = None
    status: RecordStatus
    created_by: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Display fields
    patient_name: Optional[str] = None
    ot_no: Optional[str] = None
    lead_surgeon_name: Optional[str] = None

    @classmethod
    def from_allocation(cls, allocation, operation_status: OperationStatus) -> "PatientOTAllocationResponse":
        return cls(
            id=allocation.id,
            patient_id=allocation.patient_id,
            patient_source_kind=allocation.patient_source_kind,
            room_admission_id=allocation.room_admission_id,
            patient_appointment_id=allocation.patient_appointment_id,
            emergency_bed_slot_id=allocation.emergency_bed_slot_id,
            ot_id=allocation.ot_id,
            ot_slot_ids=allocation.slot_ids,
            surgery_id=allocation.surgery_id,
            lead_surgeon_id=allocation.lead_surgeon_id,
            assistant_doctor_id=allocation.assistant_doctor_id,
            anaesthetist_id=allocation.anaesthetist_id,
            nurse_id=allocation.nurse_id,
            ot_allocation_date=allocation.ot_allocation_date,
            duration=allocation.duration,
            ot_start_time=allocation.ot_start_time,
            ot_end_time=allocation.ot_end_time,
            ot_actual_start_time=allocation.ot_actual_start_time,
            ot_actual_end_time=allocation.ot_actual_end_time,
            operation_description=allocation.operation_description,
            operation_status=operation_status,
            pre_operation_notes=allocation.pre_operation_notes,
            post_operation_notes=allocation.post_operation_notes,
            ot_documents=allocation.ot_documents,
            bill_id=allocation.bill_id,
            status=allocation.status,
            created_by=allocation.created_by,
            created_at=allocation.created_at,
            updated_at=allocation.updated_at,
            patient_name=allocation.patient.name if allocation.patient else None,
            ot_no=allocation.room.ot_no if allocation.room else None,
            lead_surgeon_name=allocation.lead_surgeon.name if allocation.lead_surgeon else None,
        )


# --- Health Schemas ---
class HealthResponse(BaseSchema):
    status: str
    database: str
    now_ist: datetime


class SlotInconsistency(BaseModel):
    ot_id: int
    ot_slot_id: int
    ot_allocation_date: date
    allocation_ids: List[int]
    issue: str


class ConsistencyReport(BaseModel):
    checked_at: datetime
    double_booked_slots: List[SlotInconsistency] = []
