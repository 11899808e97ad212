# ot_allocation/services/occupancy_service.py
"""Per-slot occupancy of a room on a date.

A read-only projection recomputed on demand: a slot is occupied when an
Active allocation for the same room and date holds it and that allocation's
derived status is Scheduled or InProgress. Completed, Cancelled and
Postponed allocations release their slots.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..core.clock import IST
from .status_service import status_for_allocation


@dataclass(frozen=True)
class SlotOccupancy:
    slot_id: int
    is_occupied: bool
    occupying_allocation_id: Optional[int] = None
    # Every non-terminal allocation holding the slot; more than one is a consistency fault
    holder_ids: tuple = field(default_factory=tuple)

    @property
    def is_available(self) -> bool:
        return not self.is_occupied


def project_occupancy(
    db: Session,
    ot_id: int,
    on_date: date,
    now: datetime,
    exclude_allocation_id: Optional[int] = None,
    slots: Optional[Iterable[models.OTSlot]] = None,
) -> Dict[int, SlotOccupancy]:
    """Map every slot of the room to its occupancy on ``on_date``."""
    if slots is None:
        slots = crud.get_slots(db, ot_id=ot_id)
    holders: Dict[int, List[int]] = {slot.id: [] for slot in slots}

    allocations = crud.get_active_allocations_for_room_date(
        db, ot_id, on_date, exclude_allocation_id=exclude_allocation_id
    )
    for allocation in allocations:
        if not status_for_allocation(allocation, now).holds_slot:
            continue
        for slot in allocation.slots:
            holders.setdefault(slot.id, []).append(allocation.id)

    return {
        slot_id: SlotOccupancy(
            slot_id=slot_id,
            is_occupied=bool(ids),
            occupying_allocation_id=ids[0] if ids else None,
            holder_ids=tuple(ids),
        )
        for slot_id, ids in holders.items()
    }


def find_conflicts(
    db: Session,
    ot_id: int,
    on_date: date,
    slot_ids: Iterable[int],
    now: datetime,
    exclude_allocation_id: Optional[int] = None,
) -> Dict[int, int]:
    """Requested slot id -> id of the allocation already occupying it."""
    occupancy = project_occupancy(db, ot_id, on_date, now, exclude_allocation_id=exclude_allocation_id)
    conflicts = {}
    for slot_id in slot_ids:
        view = occupancy.get(slot_id)
        if view is not None and view.is_occupied:
            conflicts[slot_id] = view.occupying_allocation_id
    return conflicts


def is_selectable(slot: models.OTSlot, occupancy: SlotOccupancy, on_date: date, now: datetime) -> bool:
    """UI policy: free, not in the past, and not already over today."""
    if occupancy.is_occupied:
        return False
    now_ist = now.astimezone(IST)
    if on_date < now_ist.date():
        return False
    if on_date == now_ist.date() and slot.slot_end_time <= now_ist.time().replace(tzinfo=None):
        return False
    return True


def list_slot_views(db: Session, ot_id: int, on_date: date, now: datetime) -> schemas.RoomOccupancyResponse:
    room = crud.get_room_or_404(db, ot_id)
    slots = crud.get_slots(db, ot_id=room.id, status=models.CatalogStatus.active)
    occupancy = project_occupancy(db, room.id, on_date, now, slots=slots)

    views = []
    for slot in slots:
        view = occupancy[slot.id]
        views.append(schemas.SlotOccupancyView(
            ot_slot_id=slot.id,
            ot_slot_no=slot.ot_slot_no,
            slot_start_time=slot.slot_start_time,
            slot_end_time=slot.slot_end_time,
            is_available=view.is_available,
            is_occupied=view.is_occupied,
            occupying_allocation_id=view.occupying_allocation_id,
            is_selectable=is_selectable(slot, view, on_date, now),
        ))
    return schemas.RoomOccupancyResponse(ot_id=room.id, ot_allocation_date=on_date, slots=views)


def find_double_bookings(db: Session, now: datetime, since: Optional[date] = None) -> List[schemas.SlotInconsistency]:
    """Slots held by more than one non-terminal allocation on the same room/date."""
    issues = []
    for ot_id, on_date in crud.get_active_room_dates(db, since=since):
        for slot_id, view in project_occupancy(db, ot_id, on_date, now).items():
            if len(view.holder_ids) > 1:
                issues.append(schemas.SlotInconsistency(
                    ot_id=ot_id,
                    ot_slot_id=slot_id,
                    ot_allocation_date=on_date,
                    allocation_ids=list(view.holder_ids),
                    issue=f"Slot {slot_id} is held by {len(view.holder_ids)} active allocations.",
                ))
    return issues
