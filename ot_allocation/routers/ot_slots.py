# ot_allocation/routers/ot_slots.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..database import get_db
from ..models import CatalogStatus
from ..services import slot_service

router = APIRouter(
    prefix="/ot-slots",
    tags=["OT Slots"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=List[schemas.OTSlotResponse])
def list_slots(
    ot_id: Optional[int] = Query(None),
    status: Optional[CatalogStatus] = Query(None),
    db: Session = Depends(get_db),
):
    return [schemas.OTSlotResponse.from_slot(slot) for slot in crud.get_slots(db, ot_id=ot_id, status=status)]


@router.post("", response_model=schemas.OTSlotResponse, status_code=status.HTTP_201_CREATED)
def create_slot(slot: schemas.OTSlotCreate, db: Session = Depends(get_db)):
    return schemas.OTSlotResponse.from_slot(slot_service.create_slot(db, slot))


@router.get("/{slot_id}", response_model=schemas.OTSlotResponse)
def get_slot(slot_id: int, db: Session = Depends(get_db)):
    return schemas.OTSlotResponse.from_slot(slot_service.get_slot_or_404(db, slot_id))


@router.put("/{slot_id}", response_model=schemas.OTSlotResponse)
def update_slot(slot_id: int, slot_update: schemas.OTSlotUpdate, db: Session = Depends(get_db)):
    return schemas.OTSlotResponse.from_slot(slot_service.update_slot(db, slot_id, slot_update))


@router.delete("/{slot_id}", response_model=schemas.OTSlotResponse)
def delete_slot(slot_id: int, response: Response, db: Session = Depends(get_db)):
    """Delete a slot, or deactivate it when allocations still reference it (200 + inactive body)."""
    snapshot, deleted = slot_service.delete_slot(db, slot_id)
    response.headers["X-Slot-Deleted"] = "true" if deleted else "false"
    return snapshot
