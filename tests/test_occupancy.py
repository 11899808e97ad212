# tests/test_occupancy.py
import threading
from datetime import datetime, time, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ot_allocation import schemas
from ot_allocation.database import create_tables
from ot_allocation.exceptions import SlotConflict
from ot_allocation.models import OperationStatus
from ot_allocation.services import allocation_service, occupancy_service


def book(db, clock, hospital, slot_ids, patient="pat-1", on_date=None, **extra):
    request = schemas.PatientOTAllocationCreate(
        patient_id=patient,
        ot_id=hospital.ot1,
        lead_surgeon_id=hospital.surgeon,
        ot_allocation_date=on_date or clock.today(),
        ot_slot_ids=slot_ids,
        **extra,
    )
    return allocation_service.create_allocation(db, request, clock)


def test_empty_room_is_fully_available(db, clock, hospital):
    occupancy = occupancy_service.project_occupancy(db, hospital.ot1, clock.today(), clock.now())
    assert set(occupancy) == set(hospital.slots)
    assert all(view.is_available for view in occupancy.values())


def test_projection_is_idempotent(db, clock, hospital):
    book(db, clock, hospital, [hospital.slots[1]])
    first = occupancy_service.project_occupancy(db, hospital.ot1, clock.today(), clock.now())
    second = occupancy_service.project_occupancy(db, hospital.ot1, clock.today(), clock.now())
    assert first == second
    assert first[hospital.slots[1]].is_occupied


def test_occupancy_is_per_date(db, clock, hospital):
    tomorrow = clock.today() + timedelta(days=1)
    book(db, clock, hospital, [hospital.slots[2]], on_date=tomorrow)
    today = occupancy_service.project_occupancy(db, hospital.ot1, clock.today(), clock.now())
    assert today[hospital.slots[2]].is_available
    later = occupancy_service.project_occupancy(db, hospital.ot1, tomorrow, clock.now())
    assert later[hospital.slots[2]].is_occupied


def test_deleting_allocation_frees_slot(db, clock, hospital):
    allocation = book(db, clock, hospital, [hospital.slots[0]])
    assert occupancy_service.find_conflicts(db, hospital.ot1, clock.today(), [hospital.slots[0]], clock.now()) == {
        hospital.slots[0]: allocation.id
    }

    allocation_service.delete_allocation(db, allocation.id)

    occupancy = occupancy_service.project_occupancy(db, hospital.ot1, clock.today(), clock.now())
    assert occupancy[hospital.slots[0]].is_available


def test_completed_allocation_releases_slot(db, clock, hospital):
    allocation = book(db, clock, hospital, [hospital.slots[0]])
    assert allocation.operation_status == OperationStatus.InProgress

    clock.set(datetime(2025, 6, 2, 8, 45))
    occupancy = occupancy_service.project_occupancy(db, hospital.ot1, clock.today(), clock.now())
    assert occupancy[hospital.slots[0]].is_available


def test_cancelled_allocation_releases_slot(db, clock, hospital):
    allocation = book(db, clock, hospital, [hospital.slots[3]])
    allocation_service.update_allocation(
        db, allocation.id, schemas.PatientOTAllocationUpdate(operation_status=OperationStatus.Cancelled), clock
    )
    occupancy = occupancy_service.project_occupancy(db, hospital.ot1, clock.today(), clock.now())
    assert occupancy[hospital.slots[3]].is_available


def test_slot_views_mark_elapsed_slots_unselectable(db, clock, hospital):
    book(db, clock, hospital, [hospital.slots[1]])
    clock.set(datetime(2025, 6, 2, 8, 40))

    views = occupancy_service.list_slot_views(db, hospital.ot1, clock.today(), clock.now())
    by_start = {view.slot_start_time: view for view in views.slots}

    # 08:00-08:30 is over, 08:30-09:00 is held, the rest are open
    assert by_start[time(8, 0)].is_available and not by_start[time(8, 0)].is_selectable
    assert by_start[time(8, 30)].is_occupied and not by_start[time(8, 30)].is_selectable
    assert by_start[time(9, 0)].is_selectable
    assert [view.slot_start_time for view in views.slots] == sorted(by_start)


def test_past_date_is_never_selectable(db, clock, hospital):
    yesterday = clock.today() - timedelta(days=1)
    views = occupancy_service.list_slot_views(db, hospital.ot1, yesterday, clock.now())
    assert views.slots and not any(view.is_selectable for view in views.slots)


def test_double_booking_report_is_empty_when_consistent(db, clock, hospital):
    book(db, clock, hospital, [hospital.slots[2]])
    book(db, clock, hospital, [hospital.slots[3]], patient="pat-2")
    assert occupancy_service.find_double_bookings(db, clock.now()) == []


@pytest.fixture
def file_sessions(tmp_path, hospital_seeder):
    """Session factory over a file-backed database so threads get real connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ot_race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_tables(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    seed = factory()
    try:
        hospital = hospital_seeder(seed)
    finally:
        seed.close()
    yield factory, hospital
    engine.dispose()


def run_concurrently(factory, calls):
    """Start every call at the same moment, each on its own thread and session."""
    barrier = threading.Barrier(len(calls))
    results = []
    results_lock = threading.Lock()

    def worker(call):
        session = factory()
        try:
            barrier.wait()
            outcome = ("ok", call(session))
        except SlotConflict as exc:
            outcome = ("conflict", exc)
        finally:
            session.close()
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


def test_concurrent_bookings_of_one_slot_admit_exactly_one(file_sessions, clock):
    factory, hospital = file_sessions
    request = schemas.PatientOTAllocationCreate(
        patient_id=hospital.asha,
        ot_id=hospital.ot1,
        lead_surgeon_id=hospital.surgeon,
        ot_allocation_date=clock.today(),
        ot_slot_ids=[hospital.slots[0]],
    )
    calls = [lambda session: allocation_service.create_allocation(session, request, clock)] * 12

    results = run_concurrently(factory, calls)

    accepted = [value for kind, value in results if kind == "ok"]
    assert len(accepted) == 1
    assert accepted[0].operation_status == OperationStatus.InProgress
    assert sum(1 for kind, _ in results if kind == "conflict") == 11

    session = factory()
    try:
        assert occupancy_service.find_double_bookings(session, clock.now()) == []
        held = occupancy_service.project_occupancy(session, hospital.ot1, clock.today(), clock.now())
        assert held[hospital.slots[0]].occupying_allocation_id == accepted[0].id
    finally:
        session.close()


def test_concurrent_moves_onto_one_slot_admit_exactly_one(file_sessions, clock):
    factory, hospital = file_sessions
    session = factory()
    try:
        ids = [
            book(session, clock, hospital, [slot_id], patient=patient).id
            for slot_id, patient in ((hospital.slots[2], hospital.asha), (hospital.slots[3], hospital.ravi))
        ]
    finally:
        session.close()

    move = schemas.PatientOTAllocationUpdate(ot_slot_ids=[hospital.slots[1]])
    calls = [
        lambda session, allocation_id=allocation_id: allocation_service.update_allocation(
            session, allocation_id, move, clock
        )
        for allocation_id in ids
    ]

    results = run_concurrently(factory, calls)

    assert sorted(kind for kind, _ in results) == ["conflict", "ok"]
    session = factory()
    try:
        assert occupancy_service.find_double_bookings(session, clock.now()) == []
    finally:
        session.close()
