from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import SCENE, make_ambulance, make_hospital, north_of, report_payload
from emergency_dispatch.errors import IllegalTransition, InvalidInput, NotFound, ReservationConflict
from emergency_dispatch.models import AmbulanceStatus, AmbulanceType, Coordinates, IncidentStatus, Severity
from emergency_dispatch.notifier import (
    AMBULANCE_LOCATION,
    DASHBOARD_UPDATE,
    HOSPITAL_ALERT,
    INCIDENT_UPDATE,
)
from emergency_dispatch.repository import SqliteRepository
from emergency_dispatch.system import DispatchSystem


class RacingRepository(SqliteRepository):
    """Lets another dispatcher grab the proposed ambulance just before we do."""

    def __init__(self, db_path, races: int = 1) -> None:
        super().__init__(db_path)
        self.races = races

    def reserve_ambulance_and_hospital(self, ambulance_id, hospital_id, severity, incident_id) -> None:
        if self.races > 0:
            self.races -= 1
            super().reserve_ambulance_and_hospital(ambulance_id, hospital_id, Severity.LOW, f"rival-{self.races}")
        super().reserve_ambulance_and_hospital(ambulance_id, hospital_id, severity, incident_id)


class ConflictingRepository(SqliteRepository):
    def __init__(self, db_path) -> None:
        super().__init__(db_path)
        self.attempts = 0

    def reserve_ambulance_and_hospital(self, ambulance_id, hospital_id, severity, incident_id) -> None:
        self.attempts += 1
        raise ReservationConflict("lost again")


class CancellingRepository(SqliteRepository):
    """A dispatcher cancels the incident while its reservation is being made."""

    system = None

    def reserve_ambulance_and_hospital(self, ambulance_id, hospital_id, severity, incident_id) -> None:
        super().reserve_ambulance_and_hospital(ambulance_id, hospital_id, severity, incident_id)
        self.system.cancel(incident_id, reason="caller hung up")


class DepartingRepository(SqliteRepository):
    """The crew reports departure while a cancel is being written."""

    system = None
    departed = False

    def save_incident(self, incident, expected_status) -> None:
        if incident.status == IncidentStatus.CANCELLED and not self.departed:
            self.departed = True
            self.system.advance(incident.incident_id, "depart")
        super().save_incident(incident, expected_status)


class ExplodingNotifier:
    def emit(self, room, event, data) -> None:
        raise ConnectionError("socket closed")


class StaticTriageClient:
    def __init__(self, response) -> None:
        self.response = response

    def classify(self, summary):
        return self.response


def seed(repository, ambulances: int = 2, hospitals: int = 1) -> None:
    for i in range(1, ambulances + 1):
        repository.add_ambulance(make_ambulance(f"AMB-{i}", km=i * 2, ambulance_type=AmbulanceType.ADVANCED))
    for i in range(1, hospitals + 1):
        repository.add_hospital(make_hospital(f"HOSP-{i}", km=i * 3, specializations=["Cardiac Care"]))


@pytest.fixture
def system(repository, notifier, settings) -> DispatchSystem:
    return DispatchSystem(repository, settings=settings, notifier=notifier)


def test_report_is_triaged_matched_and_dispatched(system, repository, notifier) -> None:
    seed(repository)

    result = system.report_incident(report_payload())

    assert result.dispatched
    assert result.status == IncidentStatus.DISPATCHED
    assert result.severity == Severity.CRITICAL
    assert result.ambulance_id == "AMB-1"
    assert result.hospital_id == "HOSP-1"
    assert result.eta_to_scene_minutes == 4
    assert result.eta_scene_to_hospital_minutes == 6
    assert result.reason is None

    stored = repository.get_incident(result.incident_id)
    assert stored.status == IncidentStatus.DISPATCHED
    assert stored.triage.source == "fallback"
    assert repository.get_ambulance("AMB-1").current_incident_id == result.incident_id
    capacity = repository.get_hospital("HOSP-1").capacity
    assert (capacity.available_emergency_beds, capacity.available_icu_beds) == (4, 4)

    alerts = notifier.named(HOSPITAL_ALERT)
    assert alerts[0][0] == "hospital:HOSP-1"
    assert alerts[0][2]["eta_minutes"] == 10
    statuses = [data["status"] for _, _, data in notifier.named(INCIDENT_UPDATE)]
    assert statuses == ["triaged", "dispatched"]
    assert notifier.named(DASHBOARD_UPDATE)[-1][2]["type"] == "incident_dispatched"


def test_no_candidate_leaves_incident_triaged(system, repository, notifier) -> None:
    repository.add_ambulance(make_ambulance("AMB-1"))
    repository.add_hospital(make_hospital("HOSP-1", available_emergency=0))

    result = system.report_incident(report_payload())

    assert not result.dispatched
    assert result.status == IncidentStatus.TRIAGED
    assert result.reason == "No available ambulance or hospital found"
    assert result.incident.assigned_ambulance_id is None
    assert repository.get_incident(result.incident_id).status == IncidentStatus.TRIAGED
    assert repository.get_ambulance("AMB-1").status == AmbulanceStatus.AVAILABLE
    assert notifier.named(DASHBOARD_UPDATE)[-1][2]["type"] == "incident_unassigned"
    assert notifier.named(HOSPITAL_ALERT) == []


def test_unassigned_incident_can_be_dispatched_later(system, repository) -> None:
    repository.add_hospital(make_hospital("HOSP-1"))
    first = system.report_incident(report_payload())
    assert not first.dispatched

    repository.add_ambulance(make_ambulance("AMB-1"))
    second = system.dispatch(first.incident_id)

    assert second.dispatched
    assert second.ambulance_id == "AMB-1"


def test_dispatched_ambulance_is_not_offered_again(system, repository) -> None:
    seed(repository, ambulances=1)

    first = system.report_incident(report_payload())
    second = system.report_incident(report_payload())

    assert first.dispatched
    assert not second.dispatched
    assert second.status == IncidentStatus.TRIAGED


def test_dispatching_twice_is_illegal(system, repository) -> None:
    seed(repository)
    result = system.report_incident(report_payload())

    with pytest.raises(IllegalTransition):
        system.dispatch(result.incident_id)


def test_lost_race_rematches_against_fresh_pool(tmp_path, notifier, settings) -> None:
    repository = RacingRepository(tmp_path / "race.db")
    repository.init_db()
    seed(repository, ambulances=2)
    system = DispatchSystem(repository, settings=settings, notifier=notifier)

    result = system.report_incident(report_payload())

    assert result.dispatched
    assert result.ambulance_id == "AMB-2"
    assert repository.get_ambulance("AMB-1").current_incident_id == "rival-0"


def test_gives_up_after_max_attempts(tmp_path, settings) -> None:
    repository = ConflictingRepository(tmp_path / "conflict.db")
    repository.init_db()
    seed(repository)
    system = DispatchSystem(repository, settings=settings)

    result = system.report_incident(report_payload())

    assert repository.attempts == settings.max_reservation_attempts
    assert not result.dispatched
    assert result.status == IncidentStatus.TRIAGED
    assert "3 attempts" in result.reason


def test_hospital_without_icu_bed_is_skipped_for_critical(system, repository) -> None:
    repository.add_ambulance(make_ambulance("AMB-1"))
    repository.add_hospital(make_hospital("HOSP-NEAR", km=1, available_icu=0))
    repository.add_hospital(make_hospital("HOSP-FAR", km=35, available_icu=3))

    result = system.report_incident(report_payload())

    assert result.dispatched
    assert result.hospital_id == "HOSP-FAR"
    assert repository.get_hospital("HOSP-NEAR").capacity.available_emergency_beds == 5
    assert repository.get_ambulance("AMB-1").assigned_hospital_id == "HOSP-FAR"


def test_cancel_restores_ambulance_and_beds(system, repository, notifier) -> None:
    seed(repository)
    result = system.report_incident(report_payload())

    incident = system.cancel(result.incident_id, reason="duplicate call")

    assert incident.status == IncidentStatus.CANCELLED
    assert repository.get_ambulance("AMB-1").status == AmbulanceStatus.AVAILABLE
    capacity = repository.get_hospital("HOSP-1").capacity
    assert (capacity.available_emergency_beds, capacity.available_icu_beds) == (5, 5)
    assert notifier.named(HOSPITAL_ALERT)[-1][2]["type"] == "incident_cancelled"
    with pytest.raises(IllegalTransition):
        system.cancel(result.incident_id)


def test_lifecycle_through_advance(system, repository) -> None:
    seed(repository)
    result = system.report_incident(report_payload())

    for event in ("depart", "arrive_scene", "depart_scene", "arrive_hospital"):
        system.advance(result.incident_id, event)
    incident = system.complete(result.incident_id)

    assert incident.status == IncidentStatus.COMPLETED
    assert repository.get_ambulance("AMB-1").status == AmbulanceStatus.AVAILABLE
    assert [i.incident_id for i in system.list_incidents(IncidentStatus.COMPLETED)] == [result.incident_id]


def test_invalid_report_is_rejected_before_anything_is_stored(system, repository) -> None:
    bad_age = report_payload(patient_info={"age": 200})
    bad_location = report_payload(location={"latitude": 95, "longitude": 0})
    blank = report_payload(description="   ")
    unknown_type = report_payload(type="alien")

    for payload in (bad_age, bad_location, blank, unknown_type):
        with pytest.raises(InvalidInput):
            system.report_incident(payload)

    assert repository.list_incidents() == []


def test_ai_triage_client_is_used(repository, settings) -> None:
    seed(repository)
    client = StaticTriageClient({"severity": "high", "confidence": 0.91, "recommendedActions": ["Go"]})
    system = DispatchSystem(repository, settings=settings, triage_client=client)

    result = system.report_incident(report_payload(type="other"))

    assert result.incident.triage.source == "ai"
    assert result.incident.triage.confidence == 0.91
    assert result.severity == Severity.HIGH


def test_notifier_failures_do_not_block_dispatch(repository, settings) -> None:
    seed(repository)
    system = DispatchSystem(repository, settings=settings, notifier=ExplodingNotifier())

    result = system.report_incident(report_payload())

    assert result.dispatched


def test_ambulance_location_update_is_broadcast(system, repository, notifier) -> None:
    seed(repository)
    result = system.report_incident(report_payload())
    notifier.events.clear()

    ambulance = system.update_ambulance_location("AMB-1", north_of(SCENE, 1))

    assert ambulance.current_location == north_of(SCENE, 1)
    assert notifier.named(AMBULANCE_LOCATION)[0][0] == "ambulance:AMB-1"
    assert notifier.named(INCIDENT_UPDATE)[0][0] == f"incident:{result.incident_id}"

    with pytest.raises(NotFound):
        system.update_ambulance_location("AMB-404", SCENE)


def test_release_beds_after_discharge(system, repository, notifier) -> None:
    seed(repository)
    result = system.report_incident(report_payload())
    for event in ("arrive_scene", "depart_scene", "arrive_hospital", "complete"):
        system.advance(result.incident_id, event)

    hospital = system.release_beds("HOSP-1", result.severity)

    assert hospital.capacity.available_emergency_beds == 5
    assert hospital.capacity.available_icu_beds == 5
    assert notifier.named(DASHBOARD_UPDATE)[-1][2]["type"] == "hospital_capacity"


def test_concurrent_reports_never_overbook(system, repository) -> None:
    beds = 3
    for i in range(6):
        repository.add_ambulance(make_ambulance(f"AMB-{i}", km=1 + i))
    repository.add_hospital(make_hospital("HOSP-1", emergency=beds, available_emergency=beds, icu=6, available_icu=6))

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(lambda _: system.report_incident(report_payload()), range(6)))

    dispatched = [r for r in results if r.dispatched]
    assert len(dispatched) <= beds
    assert len({r.ambulance_id for r in dispatched}) == len(dispatched)
    assert repository.get_hospital("HOSP-1").capacity.available_emergency_beds == beds - len(dispatched)
    assert all(r.status == IncidentStatus.TRIAGED for r in results if not r.dispatched)


def test_cancel_during_dispatch_wins_and_frees_the_reservation(tmp_path, settings) -> None:
    repository = CancellingRepository(tmp_path / "cancel.db")
    repository.init_db()
    seed(repository)
    system = DispatchSystem(repository, settings=settings)
    repository.system = system

    with pytest.raises(IllegalTransition):
        system.report_incident(report_payload())

    [incident] = repository.list_incidents()
    assert incident.status == IncidentStatus.CANCELLED
    assert incident.assigned_ambulance_id is None
    assert incident.notes == ["cancelled: caller hung up"]
    for ambulance_id in ("AMB-1", "AMB-2"):
        ambulance = repository.get_ambulance(ambulance_id)
        assert ambulance.status == AmbulanceStatus.AVAILABLE
        assert ambulance.current_incident_id is None
    capacity = repository.get_hospital("HOSP-1").capacity
    assert (capacity.available_emergency_beds, capacity.available_icu_beds) == (5, 5)


def test_cancel_retries_after_a_concurrent_update(tmp_path, settings) -> None:
    repository = DepartingRepository(tmp_path / "depart.db")
    repository.init_db()
    seed(repository)
    system = DispatchSystem(repository, settings=settings)
    repository.system = system
    result = system.report_incident(report_payload())

    incident = system.cancel(result.incident_id, reason="duplicate call")

    assert incident.status == IncidentStatus.CANCELLED
    assert incident.status_history[-2:] == [IncidentStatus.EN_ROUTE, IncidentStatus.CANCELLED]
    assert repository.get_ambulance("AMB-1").status == AmbulanceStatus.AVAILABLE
    capacity = repository.get_hospital("HOSP-1").capacity
    assert (capacity.available_emergency_beds, capacity.available_icu_beds) == (5, 5)


def test_nearby_ambulances_within_radius_and_limit(system, repository) -> None:
    for i in range(12):
        repository.add_ambulance(make_ambulance(f"AMB-{i:02d}", km=0.5 + i * 0.5))
    repository.add_ambulance(make_ambulance("AMB-FAR", km=15))
    repository.add_ambulance(make_ambulance("AMB-OFF", km=0.1, operational=False))
    system.update_ambulance_status("AMB-00", AmbulanceStatus.OFFLINE)

    found = system.nearby_ambulances(SCENE)

    assert [a.ambulance_id for a, _ in found] == [f"AMB-{i:02d}" for i in range(1, 11)]
    assert all(km <= 10.0 for _, km in found)
    assert [a.ambulance_id for a, _ in system.nearby_ambulances(SCENE, max_distance_km=2.2)] == [
        "AMB-01",
        "AMB-02",
        "AMB-03",
    ]
    assert len(system.nearby_ambulances(SCENE, max_distance_km=50.0, limit=20)) == 12


def test_nearby_hospitals_include_full_ones_but_not_closed(system, repository) -> None:
    repository.add_hospital(make_hospital("HOSP-FULL", km=2, available_emergency=0))
    repository.add_hospital(make_hospital("HOSP-OPEN", km=5))
    repository.add_hospital(make_hospital("HOSP-CLOSED", km=1, accepting_emergencies=False))
    repository.add_hospital(make_hospital("HOSP-FAR", km=25))

    found = system.nearby_hospitals(SCENE)

    assert [h.hospital_id for h, _ in found] == ["HOSP-FULL", "HOSP-OPEN"]
    assert [h.hospital_id for h, _ in system.nearby_hospitals(SCENE, max_distance_km=30.0, limit=1)] == [
        "HOSP-FULL"
    ]
    with pytest.raises(InvalidInput):
        system.nearby_hospitals(Coordinates(120.0, 0.0))


def test_ambulance_status_toggle(system, repository, notifier) -> None:
    seed(repository)

    ambulance = system.update_ambulance_status("AMB-2", AmbulanceStatus.OFFLINE)
    assert ambulance.status == AmbulanceStatus.OFFLINE
    assert [a.ambulance_id for a in repository.list_available_ambulances()] == ["AMB-1"]
    assert notifier.named(DASHBOARD_UPDATE)[-1][2] == {
        "type": "ambulance_status",
        "ambulance_id": "AMB-2",
        "status": "offline",
    }

    result = system.report_incident(report_payload())
    with pytest.raises(ReservationConflict):
        system.update_ambulance_status(result.ambulance_id, AmbulanceStatus.OFFLINE)

    assert system.update_ambulance_status("AMB-2", AmbulanceStatus.AVAILABLE).status == AmbulanceStatus.AVAILABLE


def test_hospital_capacity_update_is_broadcast(system, repository, notifier) -> None:
    seed(repository)

    hospital = system.update_hospital_capacity("HOSP-1", {"available_emergency_beds": 9, "available_icu_beds": 1})

    assert hospital.capacity.available_emergency_beds == 9
    assert hospital.capacity.available_icu_beds == 1
    assert notifier.named(DASHBOARD_UPDATE)[-1][2]["available_emergency_beds"] == 9
    with pytest.raises(InvalidInput):
        system.update_hospital_capacity("HOSP-1", {"available_emergency_beds": 11})
    assert repository.get_hospital("HOSP-1").capacity.available_emergency_beds == 9


def test_dashboard_stats(system, repository) -> None:
    seed(repository, ambulances=3, hospitals=2)
    first = system.report_incident(report_payload())
    system.report_incident(report_payload(type="trauma", patient_info={"age": 30}))
    system.cancel(first.incident_id)

    stats = system.dashboard_stats()

    assert stats["total_incidents"] == 2
    assert stats["active_incidents"] == 1
    assert stats["total_ambulances"] == 3
    assert stats["available_ambulances"] == 2
    assert stats["total_hospitals"] == 2
    assert stats["incidents_by_type"] == {"cardiac": 1, "trauma": 1}
    assert stats["incidents_by_severity"] == {"critical": 1, "high": 1}
