# ot_allocation/services/status_service.py
"""Operation status derivation.

Status is never stored as truth. Only the manual override (Cancelled or
Postponed) is persisted; Scheduled, InProgress and Completed are recomputed
from the allocation date, the earliest reserved slot and the IST clock on
every read.

The earliest-starting slot governs the whole allocation: it is InProgress
from the moment that slot begins and Completed as soon as that slot's window
has elapsed, even if later slots are still pending.
"""
from datetime import date, datetime, time
from typing import Iterable, Optional, Tuple

from ..core.clock import IST
from ..models import OperationStatus


def derive_status(
    allocation_date: date,
    earliest_slot_start: Optional[time],
    earliest_slot_end: Optional[time],
    current_manual_status: Optional[OperationStatus],
    now: datetime,
) -> OperationStatus:
    """Map (date, reference slot window, override, now) to an operation status."""
    if current_manual_status is not None and OperationStatus(current_manual_status).is_override:
        return OperationStatus(current_manual_status)

    now_ist = now.astimezone(IST) if now.tzinfo else now.replace(tzinfo=IST)
    if allocation_date != now_ist.date():
        return OperationStatus.Scheduled

    # Same-day booking without a reserved slot has no window to evaluate
    if earliest_slot_start is None or earliest_slot_end is None:
        return OperationStatus.Scheduled

    current = now_ist.time().replace(tzinfo=None)
    if current < earliest_slot_start:
        return OperationStatus.Scheduled
    if current < earliest_slot_end:
        return OperationStatus.InProgress
    return OperationStatus.Completed


def earliest_window(slots: Iterable) -> Tuple[Optional[time], Optional[time], Optional[int]]:
    """Return (start, end, slot_id) of the earliest-starting slot, or Nones."""
    earliest = None
    for slot in slots:
        if earliest is None or (slot.slot_start_time, slot.slot_end_time) < (earliest.slot_start_time, earliest.slot_end_time):
            earliest = slot
    if earliest is None:
        return None, None, None
    return earliest.slot_start_time, earliest.slot_end_time, earliest.id


def status_for_allocation(allocation, now: datetime) -> OperationStatus:
    start, end, _ = earliest_window(allocation.slots)
    return derive_status(
        allocation.ot_allocation_date,
        start,
        end,
        allocation.operation_status_override,
        now,
    )
