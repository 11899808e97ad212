# ot_allocation/services/allocation_service.py
"""Booking protocol for patient OT allocations.

Create and update run "check occupancy, then write" as one critical section:
a per-room process lock plus SELECT ... FOR UPDATE on the room row, held from
the conflict check until the commit.
"""
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..core.clock import Clock
from ..exceptions import (
    DependencyUnavailable, InvalidStatusTransition, MissingRequiredField, NotFound,
    OTEngineError, SlotConflict, ValidationError,
)
from . import occupancy_service, patient_source
from .status_service import derive_status, earliest_window, status_for_allocation

logger = structlog.get_logger(__name__)

SOURCE_FIELDS = ("patient_id", "room_admission_id", "patient_appointment_id", "emergency_bed_slot_id")
REQUIRED_FIELDS = ("ot_id", "lead_surgeon_id", "ot_allocation_date")
DOCTOR_ROLE_KEYWORDS = ("doctor", "surgeon", "anaesthetist", "anesthetist")
NURSE_ROLE_KEYWORDS = ("nurse",)
STAFF_FIELDS = {
    "lead_surgeon_id": DOCTOR_ROLE_KEYWORDS,
    "assistant_doctor_id": DOCTOR_ROLE_KEYWORDS,
    "anaesthetist_id": DOCTOR_ROLE_KEYWORDS,
    "nurse_id": NURSE_ROLE_KEYWORDS,
}
# Plain columns copied straight from a request onto the row
PLAIN_FIELDS = (
    "surgery_id", "assistant_doctor_id", "anaesthetist_id", "nurse_id", "lead_surgeon_id",
    "ot_allocation_date", "duration", "ot_start_time", "ot_end_time", "ot_actual_start_time",
    "ot_actual_end_time", "operation_description", "pre_operation_notes", "post_operation_notes",
    "ot_documents", "bill_id", "status",
)

_room_locks: Dict[int, threading.Lock] = {}
_room_locks_guard = threading.Lock()


@contextmanager
def room_locks(*room_ids: int):
    """Hold the process-level booking lock of every given room (sorted, no deadlock)."""
    with _room_locks_guard:
        locks = [_room_locks.setdefault(room_id, threading.Lock()) for room_id in sorted(set(room_ids))]
    for lock in locks:
        lock.acquire()
    try:
        yield
    finally:
        for lock in reversed(locks):
            lock.release()


def _lock_room_row(db: Session, room_id: int) -> None:
    # No-op on SQLite; serialises concurrent bookers across processes on PostgreSQL
    db.query(models.OTRoom.id).filter(models.OTRoom.id == room_id).with_for_update().first()


# ==================== VALIDATION HELPERS ====================

def _bookable_room(db: Session, room_id: int) -> models.OTRoom:
    room = crud.get_room(db, room_id)
    if room is None:
        raise ValidationError(f"OT room {room_id} does not exist.", field="ot_id")
    if room.status != models.CatalogStatus.active:
        raise ValidationError(f"OT room {room.ot_no} is inactive and cannot be booked.", field="ot_id")
    return room


def _validate_staff(db: Session, field: str, staff_id: int) -> models.Staff:
    staff = crud.get_staff(db, staff_id)
    if staff is None:
        raise ValidationError(f"Staff member {staff_id} not found.", field=field)
    if staff.status != models.RecordStatus.Active:
        raise ValidationError(f"Staff member {staff.name} is inactive.", field=field)
    role = (staff.role_name or "").lower()
    if not any(keyword in role for keyword in STAFF_FIELDS[field]):
        raise ValidationError(f"Staff member {staff.name} ({staff.role_name}) cannot serve as {field}.", field=field)
    return staff


def _validate_references(db: Session, values: dict) -> None:
    for field in STAFF_FIELDS:
        if values.get(field) is not None:
            _validate_staff(db, field, values[field])
    if values.get("bill_id") is not None and crud.get_bill(db, values["bill_id"]) is None:
        raise ValidationError(f"Bill {values['bill_id']} not found.", field="bill_id")


def _validate_planned_window(start, end) -> None:
    if start is not None and end is not None and start >= end:
        raise ValidationError("ot_start_time must be before ot_end_time.", field="ot_start_time")


def _bookable_slots(db: Session, room: models.OTRoom, slot_ids: List[int]) -> List[models.OTSlot]:
    """Resolve requested slot ids, in request order, after checking room and status."""
    ordered_ids = list(dict.fromkeys(slot_ids))
    found = {slot.id: slot for slot in crud.get_slots_by_ids(db, ordered_ids)}

    missing = [slot_id for slot_id in ordered_ids if slot_id not in found]
    if missing:
        raise ValidationError(f"OT slots not found: {missing}.", field="ot_slot_ids", slot_ids=missing)
    foreign = [slot_id for slot_id in ordered_ids if found[slot_id].ot_id != room.id]
    if foreign:
        raise ValidationError(f"OT slots {foreign} do not belong to OT {room.ot_no}.", field="ot_slot_ids", slot_ids=foreign)
    inactive = [slot_id for slot_id in ordered_ids if found[slot_id].status != models.CatalogStatus.active]
    if inactive:
        raise ValidationError(f"OT slots {inactive} are inactive.", field="ot_slot_ids", slot_ids=inactive)
    return [found[slot_id] for slot_id in ordered_ids]


def _override_from_request(requested: Optional[models.OperationStatus]) -> Optional[models.OperationStatus]:
    # Scheduled/InProgress/Completed are derived; only the manual states persist
    if requested is not None and models.OperationStatus(requested).is_override:
        return models.OperationStatus(requested)
    return None


def _raise_on_conflicts(db: Session, room: models.OTRoom, on_date, slots, clock: Clock, exclude_allocation_id=None) -> None:
    conflicts = occupancy_service.find_conflicts(
        db, room.id, on_date, [slot.id for slot in slots], clock.now(),
        exclude_allocation_id=exclude_allocation_id,
    )
    if conflicts:
        logger.info(
            "slot_conflict_rejected", ot_id=room.id, date=str(on_date),
            slot_ids=list(conflicts), held_by=sorted(set(conflicts.values())),
        )
        raise SlotConflict(
            f"OT {room.ot_no} slots {list(conflicts)} are already booked on {on_date}.",
            field="ot_slot_ids",
            slot_ids=list(conflicts),
            occupying_allocation_ids=sorted(set(conflicts.values())),
        )


def to_response(allocation: models.PatientOTAllocation, clock: Clock) -> schemas.PatientOTAllocationResponse:
    return schemas.PatientOTAllocationResponse.from_allocation(allocation, status_for_allocation(allocation, clock.now()))


# ==================== READS ====================

def get_allocation(db: Session, allocation_id: int, clock: Clock) -> schemas.PatientOTAllocationResponse:
    allocation = crud.get_allocation(db, allocation_id)
    if allocation is None:
        raise NotFound(f"Patient OT allocation {allocation_id} not found.", field="id")
    return to_response(allocation, clock)


def list_allocations(
    db: Session,
    clock: Clock,
    status: Optional[models.RecordStatus] = None,
    ot_id: Optional[int] = None,
    ot_allocation_date=None,
    patient_id: Optional[str] = None,
    operation_status: Optional[models.OperationStatus] = None,
) -> List[schemas.PatientOTAllocationResponse]:
    allocations = crud.get_allocations(
        db, status=status, ot_id=ot_id, ot_allocation_date=ot_allocation_date, patient_id=patient_id
    )
    responses = [to_response(allocation, clock) for allocation in allocations]
    if operation_status is not None:
        responses = [r for r in responses if r.operation_status == operation_status]
    return responses


def preview_status(db: Session, request: schemas.StatusPreviewRequest, clock: Clock) -> schemas.StatusPreviewResponse:
    """Status a pending edit would derive, without persisting anything."""
    room = crud.get_room_or_404(db, request.ot_id)
    slots = _bookable_slots(db, room, request.ot_slot_ids)
    start, end, reference_slot_id = earliest_window(slots)
    status = derive_status(
        request.ot_allocation_date, start, end, _override_from_request(request.operation_status), clock.now()
    )
    return schemas.StatusPreviewResponse(
        ot_allocation_date=request.ot_allocation_date,
        reference_slot_id=reference_slot_id,
        operation_status=status,
    )


# ==================== WRITES ====================

def create_allocation(
    db: Session, request: schemas.PatientOTAllocationCreate, clock: Clock, user_id: Optional[int] = None
) -> schemas.PatientOTAllocationResponse:
    # 1. Patient source
    source = patient_source.source_from_fields(**{f: getattr(request, f) for f in SOURCE_FIELDS})
    patient_id = patient_source.resolve_patient(db, source)

    # 2. Required fields and references
    for field in REQUIRED_FIELDS:
        if getattr(request, field) is None:
            raise MissingRequiredField(f"{field} is required.", field=field)
    room = _bookable_room(db, request.ot_id)
    values = request.model_dump()
    _validate_references(db, values)
    _validate_planned_window(request.ot_start_time, request.ot_end_time)
    override = _override_from_request(request.operation_status)

    # 3-5. Conflict check, derive, persist: one critical section per room
    with room_locks(room.id):
        try:
            _lock_room_row(db, room.id)
            slots = _bookable_slots(db, room, request.ot_slot_ids)
            if slots and request.status == models.RecordStatus.Active and override is None:
                _raise_on_conflicts(db, room, request.ot_allocation_date, slots, clock)

            start, end, _ = earliest_window(slots)
            initial_status = derive_status(request.ot_allocation_date, start, end, override, clock.now())

            allocation = models.PatientOTAllocation(
                patient_id=patient_id,
                ot_id=room.id,
                operation_status_override=override,
                created_by=request.created_by if request.created_by is not None else user_id,
                **patient_source.source_columns(source),
                **{field: values[field] for field in PLAIN_FIELDS},
            )
            allocation.slots = slots
            db.add(allocation)
            db.flush()

            compliance_logger.log_event(
                db=db, action="CREATE", category="OT_ALLOCATION", resource_type="PatientOTAllocation",
                resource_id=allocation.id, user_id=allocation.created_by,
                details=(
                    f"Allocated OT {room.ot_no} on {request.ot_allocation_date} to patient {patient_id} "
                    f"(slots {[slot.id for slot in slots]}, status {initial_status.value})"
                ),
            )
            db.commit()
        except OTEngineError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("allocation_create_failed", ot_id=room.id, error=str(e))
            raise DependencyUnavailable("Could not save the OT allocation; the database is unavailable.")

    logger.info(
        "allocation_created", allocation_id=allocation.id, ot_id=room.id,
        date=str(request.ot_allocation_date), slot_ids=[slot.id for slot in slots], status=initial_status.value,
    )
    return get_allocation(db, allocation.id, clock)


def update_allocation(
    db: Session, allocation_id: int, patch: schemas.PatientOTAllocationUpdate, clock: Clock, user_id: Optional[int] = None
) -> schemas.PatientOTAllocationResponse:
    allocation = crud.get_allocation(db, allocation_id)
    if allocation is None:
        raise NotFound(f"Patient OT allocation {allocation_id} not found.", field="id")
    data = patch.model_dump(exclude_unset=True)

    for field in REQUIRED_FIELDS:
        if field in data and data[field] is None:
            raise MissingRequiredField(f"{field} cannot be cleared.", field=field)
    if "status" in data and data["status"] is None:
        del data["status"]
    if data.get("ot_slot_ids") is None:
        data.pop("ot_slot_ids", None)

    # Patient source is replaced as a whole when any source field is sent
    source = None
    patient_id = allocation.patient_id
    if any(field in data for field in SOURCE_FIELDS):
        source = patient_source.source_from_fields(**{f: data.get(f) for f in SOURCE_FIELDS})
        patient_id = patient_source.resolve_patient(db, source)

    new_room_id = data.get("ot_id", allocation.ot_id)
    room = _bookable_room(db, new_room_id) if new_room_id != allocation.ot_id else allocation.room
    _validate_references(db, {k: v for k, v in data.items() if k in STAFF_FIELDS or k == "bill_id"})
    _validate_planned_window(
        data.get("ot_start_time", allocation.ot_start_time), data.get("ot_end_time", allocation.ot_end_time)
    )

    # Manual override transitions
    current_status = status_for_allocation(allocation, clock.now())
    override = allocation.operation_status_override
    override_applied = False
    requested = data.get("operation_status")
    if requested is not None:
        requested = models.OperationStatus(requested)
        if override is not None:
            if requested != override:
                raise InvalidStatusTransition(
                    f"Allocation is {override.value}; that status is final.", field="operation_status"
                )
        elif requested.is_override:
            if not current_status.holds_slot:
                raise InvalidStatusTransition(
                    f"Cannot mark a {current_status.value} allocation as {requested.value}.", field="operation_status"
                )
            override = requested
            override_applied = True

    new_date = data.get("ot_allocation_date", allocation.ot_allocation_date)
    new_record_status = data.get("status", allocation.status)
    slots_changed = "ot_slot_ids" in data and set(data["ot_slot_ids"]) != set(allocation.slot_ids)
    placement_changed = (
        slots_changed
        or new_date != allocation.ot_allocation_date
        or room.id != allocation.ot_id
        or (new_record_status == models.RecordStatus.Active and allocation.status != models.RecordStatus.Active)
    )

    with room_locks(room.id, allocation.ot_id):
        try:
            _lock_room_row(db, room.id)
            slots = allocation.slots
            if placement_changed:
                slots = _bookable_slots(db, room, data.get("ot_slot_ids", allocation.slot_ids))
                if slots and new_record_status == models.RecordStatus.Active and override is None:
                    _raise_on_conflicts(db, room, new_date, slots, clock, exclude_allocation_id=allocation.id)

            old_values = {
                "ot_id": allocation.ot_id,
                "ot_allocation_date": allocation.ot_allocation_date,
                "ot_slot_ids": allocation.slot_ids,
                "operation_status": current_status,
                "status": allocation.status,
            }

            allocation.patient_id = patient_id
            if source is not None:
                for column, value in patient_source.source_columns(source).items():
                    setattr(allocation, column, value)
            allocation.ot_id = room.id
            for field in PLAIN_FIELDS:
                if field in data:
                    setattr(allocation, field, data[field])
            allocation.operation_status_override = override
            if placement_changed:
                allocation.slots = slots

            new_status = status_for_allocation(allocation, clock.now())
            if override_applied:
                logger.info("status_override_applied", allocation_id=allocation.id, status=override.value)

            compliance_logger.log_event(
                db=db, action="UPDATE", category="OT_ALLOCATION", resource_type="PatientOTAllocation",
                resource_id=allocation.id, user_id=user_id,
                details=f"Updated OT allocation {allocation.id}",
                old_values=old_values,
                new_values={
                    "ot_id": room.id,
                    "ot_allocation_date": new_date,
                    "ot_slot_ids": [slot.id for slot in slots],
                    "operation_status": new_status,
                    "status": allocation.status,
                },
            )
            db.commit()
        except OTEngineError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("allocation_update_failed", allocation_id=allocation_id, error=str(e))
            raise DependencyUnavailable("Could not update the OT allocation; the database is unavailable.")

    logger.info("allocation_updated", allocation_id=allocation_id, placement_changed=placement_changed)
    db.expire_all()
    return get_allocation(db, allocation_id, clock)


def delete_allocation(db: Session, allocation_id: int, user_id: Optional[int] = None) -> None:
    """Remove an allocation. Its slots are free on the next projection."""
    allocation = crud.get_allocation(db, allocation_id)
    if allocation is None:
        raise NotFound(f"Patient OT allocation {allocation_id} not found.", field="id")

    with room_locks(allocation.ot_id):
        try:
            freed = allocation.slot_ids
            compliance_logger.log_event(
                db=db, action="DELETE", category="OT_ALLOCATION", resource_type="PatientOTAllocation",
                resource_id=allocation.id, user_id=user_id, severity="WARN",
                details=f"Deleted OT allocation {allocation.id} (freed slots {freed} on {allocation.ot_allocation_date})",
            )
            db.delete(allocation)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("allocation_delete_failed", allocation_id=allocation_id, error=str(e))
            raise DependencyUnavailable("Could not delete the OT allocation; the database is unavailable.")
    logger.info("allocation_deleted", allocation_id=allocation_id, freed_slot_ids=freed)


def duplicate_allocation(
    db: Session, source_id: int, request: schemas.PatientOTAllocationDuplicate, clock: Clock, user_id: Optional[int] = None
) -> schemas.PatientOTAllocationResponse:
    """Re-book a similar procedure: same patient, room, team, plan and notes; fresh slots and status."""
    original = crud.get_allocation(db, source_id)
    if original is None:
        raise NotFound(f"Patient OT allocation {source_id} not found.", field="id")

    source = patient_source.source_of(original)
    booking = schemas.PatientOTAllocationCreate(
        **{source.field: source.source_id},
        ot_id=original.ot_id,
        ot_slot_ids=request.ot_slot_ids,
        surgery_id=original.surgery_id,
        lead_surgeon_id=original.lead_surgeon_id,
        assistant_doctor_id=original.assistant_doctor_id,
        anaesthetist_id=original.anaesthetist_id,
        nurse_id=original.nurse_id,
        ot_allocation_date=request.ot_allocation_date,
        duration=original.duration,
        ot_start_time=original.ot_start_time,
        ot_end_time=original.ot_end_time,
        operation_description=original.operation_description,
        pre_operation_notes=original.pre_operation_notes,
        post_operation_notes=original.post_operation_notes,
        created_by=request.created_by if request.created_by is not None else user_id,
    )
    logger.info("allocation_duplicate_requested", source_id=source_id, date=str(request.ot_allocation_date))
    return create_allocation(db, booking, clock, user_id=user_id)
