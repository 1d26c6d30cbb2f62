from __future__ import annotations

from typing import Iterable, List, Sequence

from emergency_dispatch.geo import haversine_km
from emergency_dispatch.models import (
    Ambulance,
    AmbulanceStatus,
    AmbulanceType,
    Hospital,
    Incident,
    Severity,
    ScoredAmbulance,
    ScoredHospital,
)

DISTANCE_BUCKETS = [(2, 100), (5, 90), (10, 70), (20, 50), (30, 30)]
FAR_DISTANCE_SCORE = 10

AMBULANCE_WEIGHTS = {"distance": 0.5, "type": 0.3, "equipment": 0.2}
HOSPITAL_WEIGHTS = {"distance": 0.35, "capacity": 0.25, "resource": 0.20, "specialization": 0.20}


def distance_score(distance_km: float) -> int:
    for limit, score in DISTANCE_BUCKETS:
        if distance_km <= limit:
            return score
    return FAR_DISTANCE_SCORE


def ambulance_type_score(ambulance_type: AmbulanceType, severity: Severity) -> int:
    if severity == Severity.CRITICAL:
        return 100 if ambulance_type in (AmbulanceType.ADVANCED, AmbulanceType.CRITICAL_CARE) else 60
    if severity == Severity.HIGH:
        if ambulance_type == AmbulanceType.ADVANCED:
            return 100
        return 80 if ambulance_type == AmbulanceType.BASIC else 60
    return 80


def equipment_score(equipment: Sequence[str], required_resources: Sequence[str]) -> int:
    if not required_resources:
        return 80
    return 100 if equipment else 50


def _ratio(available: int, total: int) -> float:
    return available / total if total > 0 else 0.0


def capacity_score(hospital: Hospital, severity: Severity) -> int:
    cap = hospital.capacity
    if severity == Severity.CRITICAL:
        if cap.available_icu_beds == 0:
            return 20
        return 100 if _ratio(cap.available_icu_beds, cap.icu_beds) > 0.3 else 70

    ratio = _ratio(cap.available_emergency_beds, cap.emergency_beds)
    if ratio > 0.5:
        return 100
    if ratio > 0.2:
        return 70
    return 40


def hospital_resource_score(resources: Sequence[str], required_resources: Sequence[str]) -> int:
    if not required_resources:
        return 80
    return 100 if resources else 50


def specialization_score(specializations: Sequence[str], incident_type: str) -> int:
    if not specializations:
        return 70
    needle = incident_type.lower()
    return 100 if any(needle in spec.lower() for spec in specializations) else 70


def score_ambulance(ambulance: Ambulance, incident: Incident) -> ScoredAmbulance:
    distance = haversine_km(ambulance.current_location, incident.location)
    total = (
        distance_score(distance) * AMBULANCE_WEIGHTS["distance"]
        + ambulance_type_score(ambulance.ambulance_type, incident.severity) * AMBULANCE_WEIGHTS["type"]
        + equipment_score(ambulance.equipment, incident.required_resources) * AMBULANCE_WEIGHTS["equipment"]
    )
    return ScoredAmbulance(ambulance=ambulance, score=round(total, 4), distance_km=distance)


def score_hospital(hospital: Hospital, incident: Incident) -> ScoredHospital:
    distance = haversine_km(hospital.location, incident.location)
    total = (
        distance_score(distance) * HOSPITAL_WEIGHTS["distance"]
        + capacity_score(hospital, incident.severity) * HOSPITAL_WEIGHTS["capacity"]
        + hospital_resource_score(hospital.resources, incident.required_resources) * HOSPITAL_WEIGHTS["resource"]
        + specialization_score(hospital.specializations, incident.incident_type.value)
        * HOSPITAL_WEIGHTS["specialization"]
    )
    return ScoredHospital(hospital=hospital, score=round(total, 4), distance_km=distance)


def ambulance_eligible(ambulance: Ambulance) -> bool:
    return ambulance.operational and ambulance.status == AmbulanceStatus.AVAILABLE


def hospital_eligible(hospital: Hospital) -> bool:
    return (
        hospital.operational
        and hospital.accepting_emergencies
        and hospital.capacity.available_emergency_beds > 0
    )


def eligible_ambulances(ambulances: Iterable[Ambulance]) -> List[Ambulance]:
    return [a for a in ambulances if ambulance_eligible(a)]


def eligible_hospitals(hospitals: Iterable[Hospital]) -> List[Hospital]:
    return [h for h in hospitals if hospital_eligible(h)]
