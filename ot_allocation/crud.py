# ot_allocation/crud.py
from sqlalchemy.orm import Session, joinedload, selectinload
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from datetime import date
from typing import Optional, List
import logging

from . import models, schemas
from .compliance_logger import compliance_logger
from .exceptions import DependencyUnavailable, NotFound, ValidationError

logger = logging.getLogger(__name__)


class CRUDError(DependencyUnavailable):
    """A database lookup failed; never defaulted by callers."""
    pass


# ==================== DIRECTORY LOOKUPS (read-only) ====================

def _lookup(db: Session, model, record_id, label: str):
    try:
        return db.query(model).filter(model.id == record_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching {label} {record_id}: {str(e)}")
        raise CRUDError(f"The {label} directory is unavailable.", resource=label)


def get_patient(db: Session, patient_id: str) -> Optional[models.Patient]:
    return _lookup(db, models.Patient, patient_id, "patient")


def get_room_admission(db: Session, admission_id: int) -> Optional[models.RoomAdmission]:
    return _lookup(db, models.RoomAdmission, admission_id, "room admission")


def get_patient_appointment(db: Session, appointment_id: int) -> Optional[models.PatientAppointment]:
    return _lookup(db, models.PatientAppointment, appointment_id, "OPD appointment")


def get_emergency_bed_slot(db: Session, bed_slot_id: int) -> Optional[models.EmergencyBedSlot]:
    return _lookup(db, models.EmergencyBedSlot, bed_slot_id, "emergency bed slot")


def get_staff(db: Session, staff_id: int) -> Optional[models.Staff]:
    return _lookup(db, models.Staff, staff_id, "staff")


def get_bill(db: Session, bill_id: int) -> Optional[models.Bill]:
    return _lookup(db, models.Bill, bill_id, "bill")


# ==================== OT ROOM CRUD OPERATIONS ====================

# Fields that become immutable once any slot references the room
ROOM_STRUCTURAL_FIELDS = ("ot_no", "ot_type", "start_time_of_day", "end_time_of_day")


def get_room(db: Session, room_id: int) -> Optional[models.OTRoom]:
    return db.query(models.OTRoom).filter(models.OTRoom.id == room_id).first()


def get_room_or_404(db: Session, room_id: int) -> models.OTRoom:
    room = get_room(db, room_id)
    if room is None:
        raise NotFound(f"OT room {room_id} not found.", field="ot_id")
    return room


def get_room_by_no(db: Session, ot_no: str) -> Optional[models.OTRoom]:
    return db.query(models.OTRoom).filter(models.OTRoom.ot_no == ot_no).first()


def get_rooms(db: Session, status: Optional[models.CatalogStatus] = None, ot_type: Optional[str] = None) -> List[models.OTRoom]:
    query = db.query(models.OTRoom)
    if status is not None:
        query = query.filter(models.OTRoom.status == status)
    if ot_type:
        query = query.filter(models.OTRoom.ot_type == ot_type)
    return query.order_by(models.OTRoom.ot_no.asc()).all()


def room_has_slots(db: Session, room_id: int) -> bool:
    return db.query(models.OTSlot.id).filter(models.OTSlot.ot_id == room_id).first() is not None


def create_room(db: Session, room: schemas.OTRoomCreate) -> models.OTRoom:
    if get_room_by_no(db, room.ot_no):
        raise ValidationError(f"OT number '{room.ot_no}' is already registered.", field="ot_no")
    db_room = models.OTRoom(**room.model_dump())
    try:
        db.add(db_room)
        db.flush()
        compliance_logger.log_event(
            db=db, action="CREATE", category="OT_ROOM", resource_type="OTRoom",
            resource_id=db_room.id, user_id=room.created_by,
            details=f"Created OT room {db_room.ot_no} ({db_room.ot_type})",
        )
        db.commit()
        db.refresh(db_room)
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Integrity error creating OT room {room.ot_no}: {e}")
        raise ValidationError(f"OT number '{room.ot_no}' is already registered.", field="ot_no")
    logger.info(f"Created OT room {db_room.id} ({db_room.ot_no})")
    return db_room


def update_room(db: Session, room_id: int, room_update: schemas.OTRoomUpdate) -> models.OTRoom:
    db_room = get_room_or_404(db, room_id)
    # Only the description may be cleared
    update_data = {
        key: value for key, value in room_update.model_dump(exclude_unset=True).items()
        if value is not None or key == "ot_description"
    }

    changed_structural = [
        key for key in ROOM_STRUCTURAL_FIELDS
        if key in update_data and update_data[key] != getattr(db_room, key)
    ]
    if changed_structural and room_has_slots(db, room_id):
        raise ValidationError(
            f"Cannot change {', '.join(changed_structural)} while slots reference this OT room.",
            field=changed_structural[0],
        )

    if 'ot_no' in update_data and update_data['ot_no'] != db_room.ot_no:
        if get_room_by_no(db, update_data['ot_no']):
            raise ValidationError(f"OT number '{update_data['ot_no']}' is already registered.", field="ot_no")

    new_start = update_data.get('start_time_of_day', db_room.start_time_of_day)
    new_end = update_data.get('end_time_of_day', db_room.end_time_of_day)
    if new_start >= new_end:
        raise ValidationError("start_time_of_day must be before end_time_of_day.", field="start_time_of_day")

    old_values = {key: getattr(db_room, key) for key in update_data}
    for key, value in update_data.items():
        setattr(db_room, key, value)

    compliance_logger.log_event(
        db=db, action="UPDATE", category="OT_ROOM", resource_type="OTRoom", resource_id=room_id,
        details=f"Updated OT room {db_room.ot_no}", old_values=old_values, new_values=update_data,
    )
    db.commit()
    db.refresh(db_room)
    return db_room


def deactivate_room(db: Session, room_id: int) -> models.OTRoom:
    """OT rooms are never hard-deleted; the DELETE verb flips status only."""
    db_room = get_room_or_404(db, room_id)
    if db_room.status != models.CatalogStatus.inactive:
        db_room.status = models.CatalogStatus.inactive
        compliance_logger.log_event(
            db=db, action="UPDATE", category="OT_ROOM", resource_type="OTRoom", resource_id=room_id,
            details=f"Deactivated OT room {db_room.ot_no}", severity="WARN",
        )
        db.commit()
        db.refresh(db_room)
    return db_room


# ==================== OT SLOT QUERIES ====================

def get_slot(db: Session, slot_id: int) -> Optional[models.OTSlot]:
    return db.query(models.OTSlot).options(joinedload(models.OTSlot.room)).filter(models.OTSlot.id == slot_id).first()


def get_slots(db: Session, ot_id: Optional[int] = None, status: Optional[models.CatalogStatus] = None) -> List[models.OTSlot]:
    query = db.query(models.OTSlot).options(joinedload(models.OTSlot.room))
    if ot_id is not None:
        query = query.filter(models.OTSlot.ot_id == ot_id)
    if status is not None:
        query = query.filter(models.OTSlot.status == status)
    return query.order_by(models.OTSlot.ot_id.asc(), models.OTSlot.slot_start_time.asc()).all()


def get_slots_by_ids(db: Session, slot_ids: List[int]) -> List[models.OTSlot]:
    if not slot_ids:
        return []
    return db.query(models.OTSlot).filter(models.OTSlot.id.in_(slot_ids)).all()


def next_slot_no(db: Session, ot_id: int) -> int:
    current = db.query(func.max(models.OTSlot.ot_slot_no)).filter(models.OTSlot.ot_id == ot_id).scalar()
    return (current or 0) + 1


def slot_is_referenced(db: Session, slot_id: int) -> bool:
    table = models.patient_ot_allocation_slots
    return db.query(table.c.allocation_id).filter(table.c.ot_slot_id == slot_id).first() is not None


# ==================== ALLOCATION QUERIES ====================

def _allocation_query(db: Session):
    return db.query(models.PatientOTAllocation).options(
        selectinload(models.PatientOTAllocation.slots),
        joinedload(models.PatientOTAllocation.patient),
        joinedload(models.PatientOTAllocation.room),
        joinedload(models.PatientOTAllocation.lead_surgeon),
    )


def get_allocation(db: Session, allocation_id: int) -> Optional[models.PatientOTAllocation]:
    return _allocation_query(db).filter(models.PatientOTAllocation.id == allocation_id).first()


def get_allocations(
    db: Session,
    status: Optional[models.RecordStatus] = None,
    ot_id: Optional[int] = None,
    ot_allocation_date: Optional[date] = None,
    patient_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 500,
) -> List[models.PatientOTAllocation]:
    """Allocations matching the stored-column filters, newest date first."""
    query = _allocation_query(db)
    if status is not None:
        query = query.filter(models.PatientOTAllocation.status == status)
    if ot_id is not None:
        query = query.filter(models.PatientOTAllocation.ot_id == ot_id)
    if ot_allocation_date is not None:
        query = query.filter(models.PatientOTAllocation.ot_allocation_date == ot_allocation_date)
    if patient_id:
        query = query.filter(models.PatientOTAllocation.patient_id == patient_id)
    return query.order_by(
        models.PatientOTAllocation.ot_allocation_date.desc(),
        models.PatientOTAllocation.id.desc(),
    ).offset(skip).limit(limit).all()


def get_active_allocations_for_room_date(
    db: Session, ot_id: int, ot_allocation_date: date, exclude_allocation_id: Optional[int] = None
) -> List[models.PatientOTAllocation]:
    query = db.query(models.PatientOTAllocation).options(
        selectinload(models.PatientOTAllocation.slots)
    ).filter(
        models.PatientOTAllocation.ot_id == ot_id,
        models.PatientOTAllocation.ot_allocation_date == ot_allocation_date,
        models.PatientOTAllocation.status == models.RecordStatus.Active,
    )
    if exclude_allocation_id is not None:
        query = query.filter(models.PatientOTAllocation.id != exclude_allocation_id)
    return query.order_by(models.PatientOTAllocation.id.asc()).all()


def get_active_room_dates(db: Session, since: Optional[date] = None) -> List[tuple]:
    """Distinct (ot_id, date) pairs holding active allocations."""
    query = db.query(
        models.PatientOTAllocation.ot_id,
        models.PatientOTAllocation.ot_allocation_date,
    ).filter(models.PatientOTAllocation.status == models.RecordStatus.Active)
    if since is not None:
        query = query.filter(models.PatientOTAllocation.ot_allocation_date >= since)
    return query.distinct().all()

