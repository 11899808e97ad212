# Seeds the demo theatres on startup when SEED_DEMO_DATA is set.
import logging
from datetime import time

from sqlalchemy.orm import Session

from . import crud
from .database import SessionLocal
from .schemas import OTRoomCreate

logger = logging.getLogger(__name__)

DEMO_ROOMS = [
    OTRoomCreate(ot_no="OT001", ot_type="General", ot_name="General Operation Theater 1",
                 ot_description="General purpose operation theater with standard equipment",
                 start_time_of_day=time(8, 0), end_time_of_day=time(20, 0)),
    OTRoomCreate(ot_no="OT002", ot_type="Cardiac", ot_name="Cardiac Operation Theater 1",
                 ot_description="Specialized cardiac surgery theater with advanced monitoring",
                 start_time_of_day=time(8, 0), end_time_of_day=time(20, 0)),
    OTRoomCreate(ot_no="OT003", ot_type="Orthopedic", ot_name="Orthopedic Operation Theater 1",
                 ot_description="Orthopedic surgery theater with specialized equipment",
                 start_time_of_day=time(0, 0), end_time_of_day=time(23, 59)),
    OTRoomCreate(ot_no="OT004", ot_type="General", ot_name="General Operation Theater 2",
                 ot_description="General purpose operation theater",
                 start_time_of_day=time(8, 0), end_time_of_day=time(20, 0)),
    OTRoomCreate(ot_no="OT005", ot_type="Emergency", ot_name="Emergency Operation Theater",
                 ot_description="24/7 emergency operation theater",
                 start_time_of_day=time(0, 0), end_time_of_day=time(23, 59)),
]


def seed_rooms(db: Session) -> int:
    """Insert any demo room whose ot_no is not registered yet. Returns the number created."""
    created = 0
    for room in DEMO_ROOMS:
        if crud.get_room_by_no(db, room.ot_no) is None:
            crud.create_room(db, room)
            created += 1
            logger.info(f"Demo OT room '{room.ot_no}' created.")
    return created


def create_initial_data():
    db = SessionLocal()
    try:
        seed_rooms(db)
    finally:
        db.close()
