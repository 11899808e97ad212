# ot_allocation/routers/allocations.py
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from .. import schemas
from ..core.clock import Clock, get_clock
from ..database import get_db
from ..limiter import BOOKING_RATE_LIMIT, limiter
from ..models import OperationStatus, RecordStatus
from ..services import allocation_service

router = APIRouter(
    prefix="/patient-ot-allocations",
    tags=["Patient OT Allocations"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=List[schemas.PatientOTAllocationResponse])
def list_allocations(
    status: Optional[RecordStatus] = Query(None),
    ot_id: Optional[int] = Query(None),
    ot_allocation_date: Optional[date] = Query(None),
    patient_id: Optional[str] = Query(None),
    operation_status: Optional[OperationStatus] = Query(None),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """List allocations; operation_status filters on the status derived right now."""
    return allocation_service.list_allocations(
        db, clock,
        status=status,
        ot_id=ot_id,
        ot_allocation_date=ot_allocation_date,
        patient_id=patient_id,
        operation_status=operation_status,
    )


@router.post("", response_model=schemas.PatientOTAllocationResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(BOOKING_RATE_LIMIT)
def create_allocation(
    request: Request,
    allocation: schemas.PatientOTAllocationCreate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Book a patient into an OT on a date.
    Rejected with 409 when any requested slot is already held by a Scheduled or InProgress allocation.
    """
    return allocation_service.create_allocation(db, allocation, clock)


@router.post("/preview-status", response_model=schemas.StatusPreviewResponse)
def preview_status(
    preview: schemas.StatusPreviewRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return allocation_service.preview_status(db, preview, clock)


@router.get("/{allocation_id}", response_model=schemas.PatientOTAllocationResponse)
def get_allocation(allocation_id: int, db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    return allocation_service.get_allocation(db, allocation_id, clock)


@router.put("/{allocation_id}", response_model=schemas.PatientOTAllocationResponse)
@limiter.limit(BOOKING_RATE_LIMIT)
def update_allocation(
    request: Request,
    allocation_id: int,
    patch: schemas.PatientOTAllocationUpdate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return allocation_service.update_allocation(db, allocation_id, patch, clock)


@router.delete("/{allocation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_allocation(allocation_id: int, db: Session = Depends(get_db)):
    allocation_service.delete_allocation(db, allocation_id)


@router.post("/{allocation_id}/duplicate", response_model=schemas.PatientOTAllocationResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(BOOKING_RATE_LIMIT)
def duplicate_allocation(
    request: Request,
    allocation_id: int,
    duplicate: schemas.PatientOTAllocationDuplicate,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Copy an allocation to a new date with a fresh slot selection."""
    return allocation_service.duplicate_allocation(db, allocation_id, duplicate, clock)
