import pytest
from sqlalchemy import update

from app.db import Clinician, EncounterStatus
from app.errors import InvalidTransition, NoCapacity, NotFound
from shared.contracts.enums import ClinicianType, NotificationChannel

from tests.factories import create_patient


def _register(platform, index, clinician_type=ClinicianType.GENERALIST, capacity=2):
    return platform.register_clinician(
        f"+2547110000{index:02d}",
        display_name=f"Dr. Clinician {index}",
        license_number=f"KMPDC-{index:04d}",
        clinician_type=clinician_type,
        capacity=capacity,
    )


def _set_load(store, clinician_id, load):
    with store.transaction() as uow:
        uow.session.execute(update(Clinician).where(Clinician.id == clinician_id).values(active_load=load))


def _request(platform, patient, required_type=ClinicianType.GENERALIST):
    return platform.lifecycle.request(patient.id, {"complaint": "headache"}, required_type)


def test_assigns_least_loaded_clinician(platform, store, patient):
    busy = _register(platform, 1)
    idle = _register(platform, 2)
    _set_load(store, busy.id, 1)
    encounter = _request(platform, patient)

    chosen = platform.scheduler.assign(encounter.id)

    assert chosen.id == idle.id
    assert chosen.active_load == 1
    matched = platform.lifecycle.get(encounter.id)
    assert matched.status == EncounterStatus.matched
    assert matched.clinician_id == idle.id
    assert matched.matched_at is not None


def test_ties_go_to_the_clinician_waiting_longest(platform, patient, clock):
    first = _register(platform, 1)
    second = _register(platform, 2)

    assigned = []
    for _ in range(4):
        encounter = _request(platform, patient)
        assigned.append(platform.scheduler.assign(encounter.id).id)
        clock.advance(minutes=1)

    assert sorted(assigned[:2]) == sorted([first.id, second.id])
    assert sorted(assigned[2:]) == sorted([first.id, second.id])
    assert assigned[2] == assigned[0]


def test_capacity_is_never_exceeded(platform, store, patient):
    clinician = _register(platform, 1, capacity=2)
    for _ in range(2):
        platform.scheduler.assign(_request(platform, patient).id)

    overflow = _request(platform, patient)
    with pytest.raises(NoCapacity) as excinfo:
        platform.scheduler.assign(overflow.id)

    assert excinfo.value.encounter_id == overflow.id
    assert excinfo.value.retryable
    assert platform.lifecycle.get(overflow.id).status == EncounterStatus.requested
    assert platform.scheduler.current_load(clinician.id) == 2


def test_only_matching_type_is_considered(platform, patient):
    _register(platform, 1, clinician_type=ClinicianType.GENERALIST)
    specialist = _register(platform, 2, clinician_type=ClinicianType.SPECIALIST, capacity=1)

    encounter = _request(platform, patient, ClinicianType.SPECIALIST)
    assert platform.scheduler.assign(encounter.id).id == specialist.id

    with pytest.raises(NoCapacity):
        platform.scheduler.assign(_request(platform, patient, ClinicianType.SPECIALIST).id)


def test_inactive_clinicians_are_skipped(platform, store, patient):
    clinician = _register(platform, 1)
    with store.transaction() as uow:
        uow.session.execute(update(Clinician).where(Clinician.id == clinician.id).values(is_active=False))

    with pytest.raises(NoCapacity):
        platform.scheduler.assign(_request(platform, patient).id)


def test_assign_requires_requested_status(platform, clinician, patient):
    encounter = _request(platform, patient)
    platform.scheduler.assign(encounter.id)

    with pytest.raises(InvalidTransition):
        platform.scheduler.assign(encounter.id)
    with pytest.raises(NotFound):
        platform.scheduler.assign("missing")


def test_assignment_notifies_clinician_in_app(platform, clinician, patient, notifier):
    encounter = _request(platform, patient)
    platform.scheduler.assign(encounter.id)

    (note,) = [n for n in notifier.sent if n.identity_id == clinician.identity_id]
    assert note.title == "New Patient Assigned"
    assert note.channel == NotificationChannel.IN_APP
    assert note.data == {"encounter_id": encounter.id}


def test_notifier_failure_does_not_undo_assignment(platform, clinician, patient, notifier):
    encounter = _request(platform, patient)
    notifier.fail = True

    chosen = platform.scheduler.assign(encounter.id)

    assert chosen.id == clinician.id
    assert platform.lifecycle.get(encounter.id).status == EncounterStatus.matched


def test_recalculate_load_repairs_drift(platform, store, clinician, patient):
    platform.scheduler.assign(_request(platform, patient).id)
    _set_load(store, clinician.id, 2)

    assert platform.scheduler.recalculate_load(clinician.id) == 1
    with store.transaction() as uow:
        assert uow.session.get(Clinician, clinician.id).active_load == 1


def test_terminal_encounters_release_capacity(platform, clinician, patient):
    other = create_patient(platform.store, "+254700000002")
    first = _request(platform, patient)
    second = _request(platform, other)
    platform.scheduler.assign(first.id)
    platform.scheduler.assign(second.id)

    platform.lifecycle.cancel(first.id, "patient unavailable")
    platform.lifecycle.start(second.id, clinician.id)
    platform.lifecycle.end(second.id)

    assert platform.scheduler.current_load(clinician.id) == 0
    assert platform.scheduler.recalculate_load(clinician.id) == 0
