from __future__ import annotations

import pytest

from conftest import make_ambulance, make_hospital, make_incident
from emergency_dispatch.models import AmbulanceStatus, AmbulanceType, IncidentType, Severity
from emergency_dispatch.scoring import (
    ambulance_eligible,
    ambulance_type_score,
    capacity_score,
    distance_score,
    hospital_eligible,
    score_ambulance,
    score_hospital,
    specialization_score,
)


@pytest.mark.parametrize(
    "km, expected",
    [(0, 100), (2, 100), (2.01, 90), (5, 90), (9.9, 70), (20, 50), (30, 30), (30.5, 10), (500, 10)],
)
def test_distance_buckets(km: float, expected: int) -> None:
    assert distance_score(km) == expected


def test_type_score_table() -> None:
    assert ambulance_type_score(AmbulanceType.CRITICAL_CARE, Severity.CRITICAL) == 100
    assert ambulance_type_score(AmbulanceType.BASIC, Severity.CRITICAL) == 60
    assert ambulance_type_score(AmbulanceType.ADVANCED, Severity.HIGH) == 100
    assert ambulance_type_score(AmbulanceType.BASIC, Severity.HIGH) == 80
    assert ambulance_type_score(AmbulanceType.CRITICAL_CARE, Severity.HIGH) == 60
    assert ambulance_type_score(AmbulanceType.AIR, Severity.LOW) == 80


def test_nearby_advanced_unit_wins_for_critical_incident() -> None:
    incident = make_incident(severity=Severity.CRITICAL)
    a = score_ambulance(make_ambulance("A", km=1, ambulance_type=AmbulanceType.ADVANCED), incident)
    b = score_ambulance(make_ambulance("B", km=4, ambulance_type=AmbulanceType.BASIC), incident)
    c = score_ambulance(make_ambulance("C", km=8, ambulance_type=AmbulanceType.ADVANCED), incident)

    assert a.score == 96
    assert c.score == 81
    assert b.score == 79


def test_equipment_only_matters_when_resources_are_required() -> None:
    incident = make_incident(severity=Severity.LOW, required_resources=["ventilator"])
    equipped = score_ambulance(make_ambulance("A", km=1, equipment=["ventilator"]), incident)
    bare = score_ambulance(make_ambulance("B", km=1), incident)

    assert equipped.score == 94
    assert bare.score == 84


def test_ambulance_scoring_is_pure() -> None:
    incident = make_incident(severity=Severity.HIGH)
    ambulance = make_ambulance(km=6)

    first = score_ambulance(ambulance, incident)
    second = score_ambulance(ambulance, incident)

    assert first == second
    assert ambulance.status == AmbulanceStatus.AVAILABLE


def test_critical_incident_with_no_icu_bed_scores_twenty() -> None:
    hospital = make_hospital(available_icu=0)
    assert capacity_score(hospital, Severity.CRITICAL) == 20


@pytest.mark.parametrize(
    "available_icu, expected",
    [(4, 100), (3, 70), (1, 70)],
)
def test_icu_ratio_for_critical(available_icu: int, expected: int) -> None:
    assert capacity_score(make_hospital(icu=10, available_icu=available_icu), Severity.CRITICAL) == expected


@pytest.mark.parametrize(
    "available, expected",
    [(6, 100), (5, 70), (3, 70), (2, 40), (0, 40)],
)
def test_emergency_ratio_for_non_critical(available: int, expected: int) -> None:
    hospital = make_hospital(emergency=10, available_emergency=available)
    assert capacity_score(hospital, Severity.HIGH) == expected


def test_zero_totals_count_as_empty() -> None:
    hospital = make_hospital(emergency=0, available_emergency=0, icu=0, available_icu=0)
    assert capacity_score(hospital, Severity.MEDIUM) == 40
    assert capacity_score(hospital, Severity.CRITICAL) == 20


def test_specialization_matches_case_insensitive_substring() -> None:
    assert specialization_score(["Cardiac Surgery"], "cardiac") == 100
    assert specialization_score(["Neurology"], "cardiac") == 70
    assert specialization_score([], "cardiac") == 70


def test_hospital_score_combines_weights() -> None:
    incident = make_incident(incident_type=IncidentType.CARDIAC, severity=Severity.HIGH)
    hospital = make_hospital(km=1, emergency=10, available_emergency=8, specializations=["Cardiac Care"])

    scored = score_hospital(hospital, incident)

    assert scored.score == 96
    assert scored.distance_km == pytest.approx(1, abs=0.01)


def test_eligibility_filters() -> None:
    assert ambulance_eligible(make_ambulance())
    assert not ambulance_eligible(make_ambulance(operational=False))
    assert not ambulance_eligible(make_ambulance(status=AmbulanceStatus.EN_ROUTE, current_incident_id="X"))

    assert hospital_eligible(make_hospital())
    assert not hospital_eligible(make_hospital(available_emergency=0))
    assert not hospital_eligible(make_hospital(accepting_emergencies=False))
    assert not hospital_eligible(make_hospital(operational=False))
