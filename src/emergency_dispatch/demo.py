from __future__ import annotations

import tempfile
from pathlib import Path

from emergency_dispatch.config import setup_logging
from emergency_dispatch.models import (
    Ambulance,
    AmbulanceType,
    Coordinates,
    Hospital,
    HospitalCapacity,
)
from emergency_dispatch.repository import SqliteRepository
from emergency_dispatch.system import DispatchSystem


def seed(repository: SqliteRepository) -> None:
    repository.add_ambulance(
        Ambulance(
            ambulance_id="AMB-001",
            call_sign="Medic 1",
            ambulance_type=AmbulanceType.ADVANCED,
            current_location=Coordinates(40.741, -73.989),
            equipment=["defibrillator", "oxygen"],
        )
    )
    repository.add_ambulance(
        Ambulance(
            ambulance_id="AMB-002",
            call_sign="Medic 2",
            ambulance_type=AmbulanceType.BASIC,
            current_location=Coordinates(40.729, -73.997),
        )
    )
    repository.add_hospital(
        Hospital(
            hospital_id="HOSP-001",
            name="Bellevue Hospital",
            location=Coordinates(40.739, -73.975),
            capacity=HospitalCapacity(
                total_beds=400,
                available_beds=120,
                icu_beds=40,
                available_icu_beds=12,
                emergency_beds=30,
                available_emergency_beds=18,
            ),
            specializations=["Cardiac Surgery", "Trauma"],
            resources=["cath lab", "CT scanner"],
        )
    )
    repository.add_hospital(
        Hospital(
            hospital_id="HOSP-002",
            name="Mount Sinai Beth Israel",
            location=Coordinates(40.733, -73.982),
            capacity=HospitalCapacity(
                total_beds=200,
                available_beds=30,
                icu_beds=10,
                available_icu_beds=0,
                emergency_beds=20,
                available_emergency_beds=4,
            ),
            specializations=["Stroke"],
        )
    )


def main() -> None:
    setup_logging()
    with tempfile.TemporaryDirectory() as tmp:
        repository = SqliteRepository(Path(tmp) / "demo.db")
        repository.init_db()
        seed(repository)

        system = DispatchSystem(repository)
        result = system.report_incident(
            {
                "type": "cardiac",
                "description": "Collapsed at the gym, chest pain, barely responsive.",
                "location": {"latitude": 40.735, "longitude": -73.990},
                "patient_info": {"age": 67, "gender": "male", "medical_history": ["hypertension"]},
                "vitals": {"heart_rate": 142, "oxygen_saturation": 88},
                "required_resources": ["defibrillator"],
            }
        )
        incident = result.incident

        print("=== Dispatch Decision ===")
        print(f"Incident: {result.incident_id}")
        print(f"Severity: {result.severity.value} ({incident.triage.source}, confidence {incident.triage.confidence})")
        print(f"Reasoning: {incident.triage.reasoning}")
        if not result.dispatched:
            print(f"Not dispatched: {result.reason}")
            return
        print(f"Ambulance: {result.ambulance_id}, ETA to scene {result.eta_to_scene_minutes} min")
        print(f"Hospital: {result.hospital_id}, transport {result.eta_scene_to_hospital_minutes} min")

        print("\nRecommended actions:")
        for action in incident.triage.recommended_actions:
            print(f" - {action}")

        for event in ("depart", "arrive_scene", "depart_scene", "arrive_hospital", "complete"):
            incident = system.advance(result.incident_id, event)

        print("\nTimeline:")
        for entry in incident.timeline:
            print(f" - {entry.name}: {entry.at.isoformat(timespec='seconds')}")


if __name__ == "__main__":
    main()
