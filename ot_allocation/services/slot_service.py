# ot_allocation/services/slot_service.py
# Slot templates are time-of-day only; they recur every day for their room.
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..exceptions import NotFound, ValidationError

logger = structlog.get_logger(__name__)


def _check_inside_window(room: models.OTRoom, start: time, end: time) -> None:
    if start >= end:
        raise ValidationError("slot_start_time must be before slot_end_time.", field="slot_start_time")
    if start < room.start_time_of_day or end > room.end_time_of_day:
        raise ValidationError(
            f"Slot {start.strftime('%H:%M')}-{end.strftime('%H:%M')} falls outside OT {room.ot_no} "
            f"operating window {room.start_time_of_day.strftime('%H:%M')}-{room.end_time_of_day.strftime('%H:%M')}.",
            field="slot_start_time",
        )


def _check_slot_no_free(db: Session, ot_id: int, slot_no: int, exclude_slot_id: Optional[int] = None) -> None:
    query = db.query(models.OTSlot).filter(models.OTSlot.ot_id == ot_id, models.OTSlot.ot_slot_no == slot_no)
    if exclude_slot_id is not None:
        query = query.filter(models.OTSlot.id != exclude_slot_id)
    if query.first() is not None:
        raise ValidationError(f"Slot number {slot_no} already exists in this OT room.", field="ot_slot_no")


def get_slot_or_404(db: Session, slot_id: int) -> models.OTSlot:
    slot = crud.get_slot(db, slot_id)
    if slot is None:
        raise NotFound(f"OT slot {slot_id} not found.", field="ot_slot_id", slot_ids=[slot_id])
    return slot


def create_slot(db: Session, slot: schemas.OTSlotCreate, user_id: Optional[int] = None) -> models.OTSlot:
    room = crud.get_room_or_404(db, slot.ot_id)
    _check_inside_window(room, slot.slot_start_time, slot.slot_end_time)

    slot_no = slot.ot_slot_no
    if slot_no is None:
        slot_no = crud.next_slot_no(db, room.id)
    else:
        _check_slot_no_free(db, room.id, slot_no)

    db_slot = models.OTSlot(
        ot_id=room.id,
        ot_slot_no=slot_no,
        slot_start_time=slot.slot_start_time,
        slot_end_time=slot.slot_end_time,
        status=slot.status,
    )
    try:
        db.add(db_slot)
        db.flush()
        compliance_logger.log_event(
            db=db, action="CREATE", category="OT_SLOT", resource_type="OTSlot", resource_id=db_slot.id,
            user_id=user_id,
            details=f"Created slot #{slot_no} {slot.slot_start_time}-{slot.slot_end_time} in OT {room.ot_no}",
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        logger.error("slot_create_integrity_error", ot_id=room.id, slot_no=slot_no, error=str(e))
        raise ValidationError(f"Slot number {slot_no} already exists in this OT room.", field="ot_slot_no")
    db.refresh(db_slot)
    logger.info("slot_created", ot_id=room.id, slot_id=db_slot.id, slot_no=slot_no)
    return db_slot


def update_slot(db: Session, slot_id: int, slot_update: schemas.OTSlotUpdate, user_id: Optional[int] = None) -> models.OTSlot:
    db_slot = get_slot_or_404(db, slot_id)
    update_data = {k: v for k, v in slot_update.model_dump(exclude_unset=True).items() if v is not None}

    new_start = update_data.get("slot_start_time", db_slot.slot_start_time)
    new_end = update_data.get("slot_end_time", db_slot.slot_end_time)
    retimed = (new_start, new_end) != (db_slot.slot_start_time, db_slot.slot_end_time)
    if retimed and crud.slot_is_referenced(db, slot_id):
        raise ValidationError(
            f"Cannot change the times of slot #{db_slot.ot_slot_no} while allocations reference it.",
            field="slot_start_time" if "slot_start_time" in update_data else "slot_end_time",
            slot_ids=[slot_id],
        )
    if retimed:
        _check_inside_window(db_slot.room, new_start, new_end)
    if "ot_slot_no" in update_data and update_data["ot_slot_no"] != db_slot.ot_slot_no:
        _check_slot_no_free(db, db_slot.ot_id, update_data["ot_slot_no"], exclude_slot_id=slot_id)

    old_values = {key: getattr(db_slot, key) for key in update_data}
    for key, value in update_data.items():
        setattr(db_slot, key, value)

    compliance_logger.log_event(
        db=db, action="UPDATE", category="OT_SLOT", resource_type="OTSlot", resource_id=slot_id,
        user_id=user_id, details=f"Updated slot #{db_slot.ot_slot_no} of OT {db_slot.room.ot_no}",
        old_values=old_values, new_values=update_data,
    )
    db.commit()
    db.refresh(db_slot)
    return db_slot


def delete_slot(db: Session, slot_id: int, user_id: Optional[int] = None) -> Tuple[schemas.OTSlotResponse, bool]:
    """Hard-delete an unreferenced slot; deactivate one that allocations point at.

    Returns a snapshot of the slot and whether it was physically removed.
    """
    db_slot = get_slot_or_404(db, slot_id)
    if crud.slot_is_referenced(db, slot_id):
        db_slot.status = models.CatalogStatus.inactive
        compliance_logger.log_event(
            db=db, action="UPDATE", category="OT_SLOT", resource_type="OTSlot", resource_id=slot_id,
            user_id=user_id, severity="WARN",
            details=f"Deactivated slot #{db_slot.ot_slot_no} instead of deleting; allocations reference it",
        )
        db.commit()
        db.refresh(db_slot)
        return schemas.OTSlotResponse.from_slot(db_slot), False

    snapshot = schemas.OTSlotResponse.from_slot(db_slot)
    compliance_logger.log_event(
        db=db, action="DELETE", category="OT_SLOT", resource_type="OTSlot", resource_id=slot_id,
        user_id=user_id, details=f"Deleted slot #{db_slot.ot_slot_no} of OT {db_slot.room.ot_no}",
    )
    db.delete(db_slot)
    db.commit()
    return snapshot, True


def generate_slots_for_room(
    db: Session,
    room_id: int,
    duration_minutes: int,
    max_slots: Optional[int] = None,
    user_id: Optional[int] = None,
) -> Tuple[List[models.OTSlot], List[time]]:
    """Lay contiguous slot templates across the room's operating window.

    Start times that already exist are skipped, and generation stops when the
    next slot would run past the end of the window.
    """
    room = crud.get_room_or_404(db, room_id)
    if duration_minutes <= 0:
        raise ValidationError("duration_minutes must be positive.", field="duration_minutes")

    logger.info(
        "slot_generation_started", ot_id=room.id, window_start=str(room.start_time_of_day),
        window_end=str(room.end_time_of_day), duration=duration_minutes, max_slots=max_slots,
    )

    # Work on an arbitrary anchor date; only the time-of-day is stored
    anchor = date(2000, 1, 1)
    current_dt = datetime.combine(anchor, room.start_time_of_day)
    end_dt = datetime.combine(anchor, room.end_time_of_day)

    existing_starts = {slot.slot_start_time for slot in crud.get_slots(db, ot_id=room.id)}
    next_no = crud.next_slot_no(db, room.id)

    created, skipped = [], []
    slot_count = 0
    while current_dt < end_dt and (not max_slots or slot_count < max_slots):
        slot_end_dt = current_dt + timedelta(minutes=duration_minutes)
        if slot_end_dt > end_dt or slot_end_dt.date() != anchor:
            break

        start_t, end_t = current_dt.time(), slot_end_dt.time()
        if start_t in existing_starts:
            skipped.append(start_t)
        else:
            new_slot = models.OTSlot(
                ot_id=room.id,
                ot_slot_no=next_no,
                slot_start_time=start_t,
                slot_end_time=end_t,
                status=models.CatalogStatus.active,
            )
            db.add(new_slot)
            created.append(new_slot)
            next_no += 1
            slot_count += 1

        current_dt = slot_end_dt

    if created:
        db.flush()
        compliance_logger.log_event(
            db=db, action="CREATE", category="OT_SLOT", resource_type="OTRoom", resource_id=room.id,
            user_id=user_id,
            details=f"Generated {len(created)} slots of {duration_minutes} min for OT {room.ot_no}",
        )
    db.commit()
    for slot in created:
        db.refresh(slot)

    logger.info("slot_generation_finished", ot_id=room.id, created=len(created), skipped=len(skipped))
    return created, skipped
