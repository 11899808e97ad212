# ot_allocation/services/patient_source.py
"""Resolve the single intake source of an allocation to a canonical patient id."""
from dataclasses import dataclass
from typing import Optional, Union

import structlog
from sqlalchemy.orm import Session

from .. import crud
from ..exceptions import AmbiguousPatientSource, PatientSourceMissing, PatientSourceUnresolvable
from ..models import PatientSourceKind

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DirectPatient:
    patient_id: str
    kind = PatientSourceKind.direct
    field = "patient_id"

    @property
    def source_id(self):
        return self.patient_id


@dataclass(frozen=True)
class RoomAdmission:
    room_admission_id: int
    kind = PatientSourceKind.room_admission
    field = "room_admission_id"

    @property
    def source_id(self):
        return self.room_admission_id


@dataclass(frozen=True)
class OPDAppointment:
    patient_appointment_id: int
    kind = PatientSourceKind.appointment
    field = "patient_appointment_id"

    @property
    def source_id(self):
        return self.patient_appointment_id


@dataclass(frozen=True)
class EmergencyBedSlot:
    emergency_bed_slot_id: int
    kind = PatientSourceKind.emergency_bed
    field = "emergency_bed_slot_id"

    @property
    def source_id(self):
        return self.emergency_bed_slot_id


PatientSource = Union[DirectPatient, RoomAdmission, OPDAppointment, EmergencyBedSlot]


def source_from_fields(
    patient_id: Optional[str] = None,
    room_admission_id: Optional[int] = None,
    patient_appointment_id: Optional[int] = None,
    emergency_bed_slot_id: Optional[int] = None,
) -> PatientSource:
    """Build the tagged source from the four flat request fields."""
    if isinstance(patient_id, str):
        patient_id = patient_id.strip() or None

    given = [
        source for source in (
            DirectPatient(patient_id) if patient_id is not None else None,
            RoomAdmission(room_admission_id) if room_admission_id is not None else None,
            OPDAppointment(patient_appointment_id) if patient_appointment_id is not None else None,
            EmergencyBedSlot(emergency_bed_slot_id) if emergency_bed_slot_id is not None else None,
        ) if source is not None
    ]
    if not given:
        raise PatientSourceMissing(
            "Select a patient source: patient, room admission, OPD appointment or emergency bed slot."
        )
    if len(given) > 1:
        fields = [source.field for source in given]
        raise AmbiguousPatientSource(
            f"Exactly one patient source may be given, got: {', '.join(fields)}.",
            field=fields[0],
            fields=fields,
        )
    return given[0]


def resolve_patient(db: Session, source: PatientSource) -> str:
    """Return the canonical patient id for a source, validated against the patient directory."""
    if isinstance(source, DirectPatient):
        patient_id = source.patient_id
    elif isinstance(source, RoomAdmission):
        admission = crud.get_room_admission(db, source.room_admission_id)
        patient_id = admission.patient_id if admission else None
    elif isinstance(source, OPDAppointment):
        appointment = crud.get_patient_appointment(db, source.patient_appointment_id)
        patient_id = appointment.patient_id if appointment else None
    elif isinstance(source, EmergencyBedSlot):
        bed_slot = crud.get_emergency_bed_slot(db, source.emergency_bed_slot_id)
        patient_id = bed_slot.patient_id if bed_slot else None
    else:
        raise TypeError(f"Unknown patient source: {source!r}")

    if not patient_id or crud.get_patient(db, patient_id) is None:
        logger.info("patient_source_unresolvable", kind=source.kind.value, source_id=source.source_id)
        raise PatientSourceUnresolvable(
            f"Could not find a patient for {source.field}={source.source_id}.",
            field=source.field,
        )
    return patient_id


def source_columns(source: PatientSource) -> dict:
    """Column values persisted on the allocation for a resolved source."""
    return {
        "patient_source_kind": source.kind,
        "room_admission_id": source.room_admission_id if isinstance(source, RoomAdmission) else None,
        "patient_appointment_id": source.patient_appointment_id if isinstance(source, OPDAppointment) else None,
        "emergency_bed_slot_id": source.emergency_bed_slot_id if isinstance(source, EmergencyBedSlot) else None,
    }


def source_of(allocation) -> PatientSource:
    """Rebuild the tagged source stored on an allocation row."""
    kind = PatientSourceKind(allocation.patient_source_kind)
    if kind is PatientSourceKind.room_admission:
        return RoomAdmission(allocation.room_admission_id)
    if kind is PatientSourceKind.appointment:
        return OPDAppointment(allocation.patient_appointment_id)
    if kind is PatientSourceKind.emergency_bed:
        return EmergencyBedSlot(allocation.emergency_bed_slot_id)
    return DirectPatient(allocation.patient_id)
