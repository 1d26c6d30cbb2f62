"""Shared fixtures for dispatch core tests."""

from __future__ import annotations

import threading
from typing import Any, Dict, List, Tuple

import pytest

from emergency_dispatch.config import DispatchSettings
from emergency_dispatch.models import (
    Ambulance,
    AmbulanceType,
    Coordinates,
    Hospital,
    HospitalCapacity,
    Incident,
    IncidentType,
    PatientInfo,
    Severity,
    Vitals,
)
from emergency_dispatch.repository import SqliteRepository

SCENE = Coordinates(19.07, 72.88)


def north_of(point: Coordinates, km: float) -> Coordinates:
    """A point roughly `km` kilometres due north."""
    return Coordinates(point.latitude + km / 111.195, point.longitude)


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def emit(self, room: str, event: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((room, event, data))

    def named(self, event: str) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [e for e in self.events if e[1] == event]


def make_ambulance(
    ambulance_id: str = "AMB-1",
    km: float = 1.0,
    ambulance_type: AmbulanceType = AmbulanceType.ADVANCED,
    **kwargs: Any,
) -> Ambulance:
    return Ambulance(
        ambulance_id=ambulance_id,
        call_sign=f"Medic {ambulance_id}",
        ambulance_type=ambulance_type,
        current_location=north_of(SCENE, km),
        **kwargs,
    )


def make_hospital(
    hospital_id: str = "HOSP-1",
    km: float = 3.0,
    emergency: int = 10,
    available_emergency: int = 5,
    icu: int = 10,
    available_icu: int = 5,
    **kwargs: Any,
) -> Hospital:
    return Hospital(
        hospital_id=hospital_id,
        name=f"Hospital {hospital_id}",
        location=north_of(SCENE, km),
        capacity=HospitalCapacity(
            total_beds=100,
            available_beds=50,
            icu_beds=icu,
            available_icu_beds=available_icu,
            emergency_beds=emergency,
            available_emergency_beds=available_emergency,
        ),
        **kwargs,
    )


def make_incident(
    incident_id: str = "INC-1",
    incident_type: IncidentType = IncidentType.CARDIAC,
    severity: Severity = Severity.MEDIUM,
    age: int = 45,
    vitals: Vitals | None = None,
    **kwargs: Any,
) -> Incident:
    return Incident(
        incident_id=incident_id,
        incident_type=incident_type,
        description="Patient collapsed",
        location=SCENE,
        patient=PatientInfo(age=age),
        vitals=vitals,
        severity=severity,
        **kwargs,
    )


def report_payload(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "type": "cardiac",
        "description": "Chest pain and shortness of breath",
        "location": {"latitude": SCENE.latitude, "longitude": SCENE.longitude},
        "patient_info": {"age": 58, "gender": "female"},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def repository(tmp_path) -> SqliteRepository:
    repo = SqliteRepository(tmp_path / "dispatch.db")
    repo.init_db()
    return repo


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings() -> DispatchSettings:
    return DispatchSettings(routing_timeout_seconds=0.5, ai_triage_timeout_seconds=0.5)
