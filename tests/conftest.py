# tests/conftest.py
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, time
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ot_allocation import models
from ot_allocation.core.clock import FixedClock, get_clock
from ot_allocation.database import create_tables, drop_tables, get_db
from ot_allocation.main import app

# 2 June 2025, 08:10 IST
NOW = datetime(2025, 6, 2, 8, 10)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    yield engine
    drop_tables(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def client(session_factory, clock):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


def seed_hospital(db):
    """Directory records, staff and two theatres with half-hour slots."""
    asha = models.Patient(id="pat-1", patient_no="P0001", first_name="Asha", last_name="Verma")
    ravi = models.Patient(id="pat-2", patient_no="P0002", first_name="Ravi", last_name="Kumar")
    db.add_all([asha, ravi])
    db.flush()

    admission = models.RoomAdmission(patient_id="pat-1", room_bed_no="W2-14")
    appointment = models.PatientAppointment(patient_id="pat-2", token_no="T-17")
    occupied_bed = models.EmergencyBedSlot(emergency_bed_id=3, patient_id="pat-2")
    empty_bed = models.EmergencyBedSlot(emergency_bed_id=4, patient_id=None)

    surgeon = models.Staff(name="Dr. Mehta", role_name="Surgeon")
    assistant = models.Staff(name="Dr. Iyer", role_name="Assistant Doctor")
    anaesthetist = models.Staff(name="Dr. Rao", role_name="Anaesthetist")
    nurse = models.Staff(name="Sister Mary", role_name="Staff Nurse")
    receptionist = models.Staff(name="Kiran", role_name="Receptionist")
    bill = models.Bill(bill_no="B-1001", patient_id="pat-1")

    ot1 = models.OTRoom(ot_no="OT001", ot_type="General", ot_name="General Operation Theater 1",
                        start_time_of_day=time(8, 0), end_time_of_day=time(20, 0))
    ot2 = models.OTRoom(ot_no="OT002", ot_type="Cardiac", ot_name="Cardiac Operation Theater 1",
                        start_time_of_day=time(8, 0), end_time_of_day=time(20, 0))
    db.add_all([admission, appointment, occupied_bed, empty_bed, surgeon, assistant, anaesthetist,
                nurse, receptionist, bill, ot1, ot2])
    db.flush()

    windows = [(time(8, 0), time(8, 30)), (time(8, 30), time(9, 0)),
               (time(9, 0), time(9, 30)), (time(10, 0), time(10, 30))]
    ot1_slots = [
        models.OTSlot(ot_id=ot1.id, ot_slot_no=i + 1, slot_start_time=start, slot_end_time=end)
        for i, (start, end) in enumerate(windows)
    ]
    ot2_slot = models.OTSlot(ot_id=ot2.id, ot_slot_no=1, slot_start_time=time(8, 0), slot_end_time=time(8, 30))
    db.add_all(ot1_slots + [ot2_slot])
    db.commit()

    return SimpleNamespace(
        asha=asha.id, ravi=ravi.id,
        admission=admission.id, appointment=appointment.id,
        occupied_bed=occupied_bed.id, empty_bed=empty_bed.id,
        surgeon=surgeon.id, assistant=assistant.id, anaesthetist=anaesthetist.id,
        nurse=nurse.id, receptionist=receptionist.id, bill=bill.id,
        ot1=ot1.id, ot2=ot2.id,
        slots=[slot.id for slot in ot1_slots], ot2_slot=ot2_slot.id,
    )


@pytest.fixture
def hospital(db):
    return seed_hospital(db)


@pytest.fixture
def hospital_seeder():
    return seed_hospital


@pytest.fixture
def booking(hospital):
    """Minimal valid booking payload for today in OT001."""
    def make(**overrides):
        payload = {
            "patient_id": hospital.asha,
            "ot_id": hospital.ot1,
            "lead_surgeon_id": hospital.surgeon,
            "ot_allocation_date": NOW.date().isoformat(),
            "ot_slot_ids": [hospital.slots[0]],
        }
        payload.update(overrides)
        return payload
    return make
