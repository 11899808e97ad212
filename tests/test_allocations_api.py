# tests/test_allocations_api.py
from datetime import datetime, timedelta

import pytest

from ot_allocation import models

API = "/api/v1/patient-ot-allocations"


def test_booking_in_running_slot_is_in_progress_and_blocks_second_patient(client, hospital, booking):
    response = client.post(API, json=booking())
    assert response.status_code == 201
    first = response.json()
    assert first["operation_status"] == "InProgress"
    assert first["patient_name"] == "Asha Verma"
    assert first["ot_no"] == "OT001"
    assert first["lead_surgeon_name"] == "Dr. Mehta"
    assert first["patient_source_kind"] == "direct"

    response = client.post(API, json=booking(patient_id=hospital.ravi))
    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "SlotConflict"
    assert body["slot_ids"] == [hospital.slots[0]]
    assert body["context"]["occupying_allocation_ids"] == [first["id"]]


def test_tomorrow_booking_is_scheduled(client, clock, booking):
    tomorrow = (clock.today() + timedelta(days=1)).isoformat()
    response = client.post(API, json=booking(ot_allocation_date=tomorrow))
    assert response.status_code == 201
    assert response.json()["operation_status"] == "Scheduled"


def test_booking_without_slots_is_scheduled(client, booking):
    response = client.post(API, json=booking(ot_slot_ids=[]))
    assert response.status_code == 201
    assert response.json()["operation_status"] == "Scheduled"
    assert response.json()["ot_slot_ids"] == []


def test_status_is_rederived_on_every_read(client, clock, booking):
    allocation_id = client.post(API, json=booking()).json()["id"]
    clock.set(datetime(2025, 6, 2, 8, 31))
    assert client.get(f"{API}/{allocation_id}").json()["operation_status"] == "Completed"


def test_missing_patient_source(client, booking):
    payload = booking()
    del payload["patient_id"]
    response = client.post(API, json=payload)
    assert response.status_code == 422
    assert response.json()["error"] == "PatientSourceMissing"


def test_two_patient_sources_are_ambiguous(client, hospital, booking):
    response = client.post(API, json=booking(room_admission_id=hospital.admission))
    assert response.status_code == 422
    assert response.json()["error"] == "AmbiguousPatientSource"


def test_admission_source_resolves_patient(client, hospital, booking):
    payload = booking(room_admission_id=hospital.admission)
    del payload["patient_id"]
    response = client.post(API, json=payload)
    assert response.status_code == 201
    data = response.json()
    assert data["patient_id"] == hospital.asha
    assert data["room_admission_id"] == hospital.admission
    assert data["patient_source_kind"] == "room_admission"


def test_unresolvable_source(client, hospital, booking):
    payload = booking(emergency_bed_slot_id=hospital.empty_bed)
    del payload["patient_id"]
    response = client.post(API, json=payload)
    assert response.status_code == 422
    assert response.json()["error"] == "PatientSourceUnresolvable"
    assert response.json()["field"] == "emergency_bed_slot_id"


@pytest.mark.parametrize("field", ["ot_id", "lead_surgeon_id", "ot_allocation_date"])
def test_required_fields(client, booking, field):
    payload = booking()
    del payload[field]
    response = client.post(API, json=payload)
    assert response.status_code == 422
    assert response.json()["error"] == "MissingRequiredField"
    assert response.json()["field"] == field


def test_staff_roles_are_checked(client, hospital, booking):
    response = client.post(API, json=booking(lead_surgeon_id=hospital.receptionist))
    assert response.status_code == 422
    assert response.json()["field"] == "lead_surgeon_id"

    response = client.post(API, json=booking(nurse_id=hospital.surgeon))
    assert response.status_code == 422
    assert response.json()["field"] == "nurse_id"

    response = client.post(API, json=booking(
        assistant_doctor_id=hospital.assistant, anaesthetist_id=hospital.anaesthetist,
        nurse_id=hospital.nurse, bill_id=hospital.bill,
    ))
    assert response.status_code == 201


def test_unknown_bill_is_rejected(client, booking):
    response = client.post(API, json=booking(bill_id=9999))
    assert response.status_code == 422
    assert response.json()["field"] == "bill_id"


def test_planned_times_must_be_ordered(client, booking):
    response = client.post(API, json=booking(ot_start_time="11:00", ot_end_time="10:00"))
    assert response.status_code == 422
    assert response.json()["field"] == "ot_start_time"


def test_slot_of_other_room_is_rejected(client, hospital, booking):
    response = client.post(API, json=booking(ot_slot_ids=[hospital.ot2_slot]))
    assert response.status_code == 422
    assert response.json()["slot_ids"] == [hospital.ot2_slot]


def test_same_slot_in_other_room_or_date_does_not_conflict(client, clock, hospital, booking):
    assert client.post(API, json=booking()).status_code == 201
    other_room = booking(patient_id=hospital.ravi, ot_id=hospital.ot2, ot_slot_ids=[hospital.ot2_slot])
    assert client.post(API, json=other_room).status_code == 201
    tomorrow = (clock.today() + timedelta(days=1)).isoformat()
    assert client.post(API, json=booking(patient_id=hospital.ravi, ot_allocation_date=tomorrow)).status_code == 201


def test_requested_derived_status_is_ignored(client, booking):
    response = client.post(API, json=booking(operation_status="Completed"))
    assert response.status_code == 201
    assert response.json()["operation_status"] == "InProgress"


def test_update_keeps_own_reservation(client, hospital, booking):
    allocation = client.post(API, json=booking(ot_slot_ids=[hospital.slots[2]])).json()
    response = client.put(
        f"{API}/{allocation['id']}",
        json={"ot_slot_ids": [hospital.slots[2], hospital.slots[3]], "operation_description": "Appendectomy"},
    )
    assert response.status_code == 200
    assert response.json()["ot_slot_ids"] == [hospital.slots[2], hospital.slots[3]]
    assert response.json()["operation_description"] == "Appendectomy"


def test_update_into_held_slot_conflicts(client, hospital, booking):
    client.post(API, json=booking(ot_slot_ids=[hospital.slots[2]]))
    other = client.post(API, json=booking(patient_id=hospital.ravi, ot_slot_ids=[hospital.slots[3]])).json()
    response = client.put(f"{API}/{other['id']}", json={"ot_slot_ids": [hospital.slots[2]]})
    assert response.status_code == 409
    assert response.json()["slot_ids"] == [hospital.slots[2]]


def test_moving_date_onto_held_slot_conflicts(client, clock, hospital, booking):
    tomorrow = (clock.today() + timedelta(days=1)).isoformat()
    client.post(API, json=booking(ot_slot_ids=[hospital.slots[2]], ot_allocation_date=tomorrow))
    other = client.post(API, json=booking(patient_id=hospital.ravi, ot_slot_ids=[hospital.slots[2]])).json()

    response = client.put(f"{API}/{other['id']}", json={"ot_allocation_date": tomorrow})
    assert response.status_code == 409
    assert response.json()["error"] == "SlotConflict"
    assert response.json()["slot_ids"] == [hospital.slots[2]]
    assert client.get(f"{API}/{other['id']}").json()["ot_allocation_date"] == clock.today().isoformat()


def test_moving_room_requires_slots_of_new_room(client, hospital, booking):
    allocation = client.post(API, json=booking()).json()

    response = client.put(f"{API}/{allocation['id']}", json={"ot_id": hospital.ot2})
    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"
    assert response.json()["field"] == "ot_slot_ids"
    assert response.json()["slot_ids"] == [hospital.slots[0]]

    response = client.put(f"{API}/{allocation['id']}", json={"ot_id": hospital.ot2, "ot_slot_ids": [hospital.ot2_slot]})
    assert response.status_code == 200
    assert response.json()["ot_no"] == "OT002"
    assert response.json()["ot_slot_ids"] == [hospital.ot2_slot]


def test_update_unknown_allocation(client, hospital):
    response = client.put(f"{API}/4242", json={"operation_description": "x"})
    assert response.status_code == 404
    assert response.json()["error"] == "NotFound"


def test_cancel_is_permanent_and_frees_slot(client, hospital, booking):
    allocation = client.post(API, json=booking(ot_slot_ids=[hospital.slots[3]])).json()
    response = client.put(f"{API}/{allocation['id']}", json={"operation_status": "Cancelled"})
    assert response.status_code == 200
    assert response.json()["operation_status"] == "Cancelled"

    response = client.put(f"{API}/{allocation['id']}", json={"operation_status": "Scheduled"})
    assert response.status_code == 422
    assert response.json()["error"] == "InvalidStatusTransition"

    rebook = client.post(API, json=booking(patient_id=hospital.ravi, ot_slot_ids=[hospital.slots[3]]))
    assert rebook.status_code == 201


def test_completed_allocation_cannot_be_postponed(client, clock, booking):
    allocation = client.post(API, json=booking()).json()
    clock.set(datetime(2025, 6, 2, 9, 0))
    response = client.put(f"{API}/{allocation['id']}", json={"operation_status": "Postponed"})
    assert response.status_code == 422
    assert response.json()["error"] == "InvalidStatusTransition"


def test_in_progress_alias_is_accepted(client, booking):
    response = client.post(API, json=booking(operation_status="In Progress"))
    assert response.status_code == 201


def test_reactivation_rechecks_conflicts(client, hospital, booking):
    parked = client.post(API, json=booking(ot_slot_ids=[hospital.slots[2]], status="InActive")).json()
    assert client.post(API, json=booking(patient_id=hospital.ravi, ot_slot_ids=[hospital.slots[2]])).status_code == 201
    response = client.put(f"{API}/{parked['id']}", json={"status": "Active"})
    assert response.status_code == 409


def test_delete_frees_slot(client, hospital, booking):
    allocation = client.post(API, json=booking()).json()
    assert client.delete(f"{API}/{allocation['id']}").status_code == 204
    assert client.get(f"{API}/{allocation['id']}").status_code == 404

    occupancy = client.get(f"/api/v1/ot-rooms/{hospital.ot1}/occupancy").json()
    first = next(view for view in occupancy["slots"] if view["ot_slot_id"] == hospital.slots[0])
    assert first["is_available"] is True
    assert client.post(API, json=booking(patient_id=hospital.ravi)).status_code == 201


def test_duplicate_copies_team_and_notes(client, clock, hospital, booking):
    original = client.post(API, json=booking(
        nurse_id=hospital.nurse, ot_start_time="08:00", ot_end_time="08:30",
        pre_operation_notes="NPO after midnight", operation_description="Hernia repair", bill_id=hospital.bill,
    )).json()
    next_week = (clock.today() + timedelta(days=7)).isoformat()
    response = client.post(
        f"{API}/{original['id']}/duplicate",
        json={"ot_allocation_date": next_week, "ot_slot_ids": [hospital.slots[0]]},
    )
    assert response.status_code == 201
    copy = response.json()
    assert copy["id"] != original["id"]
    assert copy["ot_allocation_date"] == next_week
    assert copy["operation_status"] == "Scheduled"
    assert copy["nurse_id"] == hospital.nurse
    assert copy["pre_operation_notes"] == "NPO after midnight"
    assert copy["operation_description"] == "Hernia repair"
    assert copy["ot_start_time"] == "08:00:00"
    assert copy["bill_id"] is None
    assert copy["ot_actual_start_time"] is None


def test_duplicate_runs_conflict_check(client, hospital, booking):
    original = client.post(API, json=booking(ot_slot_ids=[hospital.slots[2]])).json()
    response = client.post(
        f"{API}/{original['id']}/duplicate",
        json={"ot_allocation_date": original["ot_allocation_date"], "ot_slot_ids": [hospital.slots[2]]},
    )
    assert response.status_code == 409


def test_list_filters(client, clock, hospital, booking):
    client.post(API, json=booking())
    client.post(API, json=booking(patient_id=hospital.ravi, ot_slot_ids=[hospital.slots[3]]))

    assert len(client.get(API).json()) == 2
    assert [a["patient_id"] for a in client.get(API, params={"patient_id": hospital.ravi}).json()] == [hospital.ravi]
    in_progress = client.get(API, params={"operation_status": "InProgress"}).json()
    assert [a["patient_id"] for a in in_progress] == [hospital.asha]
    assert client.get(API, params={"ot_id": hospital.ot2}).json() == []


def test_preview_status(client, hospital):
    response = client.post(f"{API}/preview-status", json={
        "ot_id": hospital.ot1,
        "ot_allocation_date": "2025-06-02",
        "ot_slot_ids": [hospital.slots[3], hospital.slots[0]],
    })
    assert response.status_code == 200
    assert response.json()["operation_status"] == "InProgress"
    assert response.json()["reference_slot_id"] == hospital.slots[0]


def test_mutations_are_audited(client, db, booking):
    allocation = client.post(API, json=booking()).json()
    client.put(f"{API}/{allocation['id']}", json={"post_operation_notes": "Stable"})
    db.expire_all()
    logs = db.query(models.AuditLog).filter(
        models.AuditLog.category == "OT_ALLOCATION", models.AuditLog.resource_id == allocation["id"]
    ).all()
    assert {log.action for log in logs} == {models.AuditAction.CREATE, models.AuditAction.UPDATE}
