# ot_allocation/routers/ot_rooms.py
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..core.clock import Clock, get_clock
from ..database import get_db
from ..models import CatalogStatus
from ..services import occupancy_service, slot_service

router = APIRouter(
    prefix="/ot-rooms",
    tags=["OT Rooms"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=List[schemas.OTRoomResponse])
def list_rooms(
    status: Optional[CatalogStatus] = Query(None),
    ot_type: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    return crud.get_rooms(db, status=status, ot_type=ot_type)


@router.post("", response_model=schemas.OTRoomResponse, status_code=status.HTTP_201_CREATED)
def create_room(room: schemas.OTRoomCreate, db: Session = Depends(get_db)):
    return crud.create_room(db, room)


@router.get("/{ot_id}", response_model=schemas.OTRoomResponse)
def get_room(ot_id: int, db: Session = Depends(get_db)):
    return crud.get_room_or_404(db, ot_id)


@router.put("/{ot_id}", response_model=schemas.OTRoomResponse)
def update_room(ot_id: int, room_update: schemas.OTRoomUpdate, db: Session = Depends(get_db)):
    """Update a room. ot_no, ot_type and the operating window are frozen once slots exist."""
    return crud.update_room(db, ot_id, room_update)


@router.delete("/{ot_id}", response_model=schemas.OTRoomResponse)
def deactivate_room(ot_id: int, db: Session = Depends(get_db)):
    return crud.deactivate_room(db, ot_id)


@router.get("/{ot_id}/occupancy", response_model=schemas.RoomOccupancyResponse)
def get_room_occupancy(
    ot_id: int,
    target_date: Optional[date] = Query(None, alias="date"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Active slots of the room on a date (default today, IST) with availability flags.
    is_selectable additionally hides past dates and slots already over today (IST).
    """
    return occupancy_service.list_slot_views(db, ot_id, target_date or clock.today(), clock.now())


@router.post("/{ot_id}/slots/generate", response_model=schemas.SlotGenerateResponse, status_code=status.HTTP_201_CREATED)
def generate_slots(ot_id: int, request: schemas.SlotGenerateRequest, db: Session = Depends(get_db)):
    created, skipped = slot_service.generate_slots_for_room(
        db, ot_id, duration_minutes=request.duration_minutes, max_slots=request.max_slots
    )
    return schemas.SlotGenerateResponse(
        ot_id=ot_id,
        created=[schemas.OTSlotResponse.from_slot(slot) for slot in created],
        skipped_start_times=skipped,
    )
