# ot_allocation/routers/health.py
from datetime import date
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import schemas
from ..core.clock import Clock, get_clock
from ..database import get_db
from ..exceptions import DependencyUnavailable
from ..services import occupancy_service

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=schemas.HealthResponse)
def health(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("health_database_unreachable", error=str(e))
        raise DependencyUnavailable("Database is unreachable.", resource="database")
    return schemas.HealthResponse(status="ok", database="ok", now_ist=clock.now())


@router.get("/consistency-check", response_model=schemas.ConsistencyReport)
def check_slot_consistency(
    since: Optional[date] = Query(None, description="Only check allocation dates on or after this day."),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> schemas.ConsistencyReport:
    """
    Reports slots held by more than one Scheduled/InProgress allocation on the same room and date.
    A healthy system always returns an empty list.
    """
    now = clock.now()
    logger.info("consistency_check_started", since=str(since) if since else None)
    issues = occupancy_service.find_double_bookings(db, now, since=since)
    logger.info("consistency_check_finished", double_booked=len(issues))
    return schemas.ConsistencyReport(checked_at=now, double_booked_slots=issues)
