from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class IncidentType(str, Enum):
    CARDIAC = "cardiac"
    TRAUMA = "trauma"
    RESPIRATORY = "respiratory"
    STROKE = "stroke"
    BURN = "burn"
    POISONING = "poisoning"
    ACCIDENT = "accident"
    OTHER = "other"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)

    @classmethod
    def normalize(cls, value: Any) -> "Severity":
        """Map free text to a severity, defaulting to medium."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.MEDIUM


SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class IncidentStatus(str, Enum):
    REPORTED = "reported"
    TRIAGED = "triaged"
    DISPATCHED = "dispatched"
    EN_ROUTE = "en_route"
    ON_SCENE = "on_scene"
    TRANSPORTING = "transporting"
    AT_HOSPITAL = "at_hospital"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (IncidentStatus.COMPLETED, IncidentStatus.CANCELLED)


class AmbulanceType(str, Enum):
    BASIC = "basic"
    ADVANCED = "advanced"
    CRITICAL_CARE = "critical_care"
    AIR = "air"

    @property
    def capability(self) -> int:
        return list(AmbulanceType).index(self)


class AmbulanceStatus(str, Enum):
    AVAILABLE = "available"
    EN_ROUTE = "en_route"
    ON_SCENE = "on_scene"
    TRANSPORTING = "transporting"
    AT_HOSPITAL = "at_hospital"
    OFFLINE = "offline"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class PatientInfo:
    age: int
    gender: str = "unknown"
    phone: Optional[str] = None
    medical_history: Tuple[str, ...] = ()
    allergies: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Vitals:
    heart_rate: Optional[float] = None
    blood_pressure: Optional[str] = None
    respiratory_rate: Optional[float] = None
    temperature: Optional[float] = None
    oxygen_saturation: Optional[float] = None


@dataclass(frozen=True)
class TriageResult:
    severity: Severity
    confidence: float
    reasoning: str
    recommended_actions: List[str]
    estimated_response_minutes: int
    source: str = "fallback"


@dataclass(frozen=True)
class EtaResult:
    distance_km: float
    duration_minutes: int
    estimated_arrival: datetime
    source: str = "local"


@dataclass(frozen=True)
class EtaPair:
    to_scene_minutes: int
    scene_to_hospital_minutes: int

    @property
    def total_minutes(self) -> int:
        return self.to_scene_minutes + self.scene_to_hospital_minutes


@dataclass(frozen=True)
class TimelineEvent:
    name: str
    at: datetime


@dataclass
class HospitalCapacity:
    total_beds: int = 0
    available_beds: int = 0
    icu_beds: int = 0
    available_icu_beds: int = 0
    emergency_beds: int = 0
    available_emergency_beds: int = 0


@dataclass
class Ambulance:
    ambulance_id: str
    call_sign: str
    ambulance_type: AmbulanceType
    current_location: Coordinates
    base_location: Optional[Coordinates] = None
    status: AmbulanceStatus = AmbulanceStatus.AVAILABLE
    crew: Dict[str, str] = field(default_factory=dict)
    equipment: List[str] = field(default_factory=list)
    current_incident_id: Optional[str] = None
    assigned_hospital_id: Optional[str] = None
    operational: bool = True


@dataclass
class Hospital:
    hospital_id: str
    name: str
    location: Coordinates
    capacity: HospitalCapacity = field(default_factory=HospitalCapacity)
    specializations: List[str] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)
    accepting_emergencies: bool = True
    operational: bool = True


@dataclass
class Incident:
    incident_id: str
    incident_type: IncidentType
    description: str
    location: Coordinates
    patient: PatientInfo
    vitals: Optional[Vitals] = None
    required_resources: List[str] = field(default_factory=list)
    severity: Severity = Severity.MEDIUM
    status: IncidentStatus = IncidentStatus.REPORTED
    triage: Optional[TriageResult] = None
    assigned_ambulance_id: Optional[str] = None
    assigned_hospital_id: Optional[str] = None
    reserved_severity: Optional[Severity] = None
    eta: Optional[EtaPair] = None
    timeline: List[TimelineEvent] = field(default_factory=list)
    status_history: List[IncidentStatus] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    def timestamp(self, name: str) -> Optional[datetime]:
        for event in self.timeline:
            if event.name == name:
                return event.at
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "incident_type": self.incident_type.value,
            "description": self.description,
            "location": [self.location.latitude, self.location.longitude],
            "patient": {
                "age": self.patient.age,
                "gender": self.patient.gender,
                "phone": self.patient.phone,
                "medical_history": list(self.patient.medical_history),
                "allergies": list(self.patient.allergies),
            },
            "vitals": None if self.vitals is None else {
                "heart_rate": self.vitals.heart_rate,
                "blood_pressure": self.vitals.blood_pressure,
                "respiratory_rate": self.vitals.respiratory_rate,
                "temperature": self.vitals.temperature,
                "oxygen_saturation": self.vitals.oxygen_saturation,
            },
            "required_resources": list(self.required_resources),
            "severity": self.severity.value,
            "status": self.status.value,
            "triage": None if self.triage is None else {
                "severity": self.triage.severity.value,
                "confidence": self.triage.confidence,
                "reasoning": self.triage.reasoning,
                "recommended_actions": list(self.triage.recommended_actions),
                "estimated_response_minutes": self.triage.estimated_response_minutes,
                "source": self.triage.source,
            },
            "assigned_ambulance_id": self.assigned_ambulance_id,
            "assigned_hospital_id": self.assigned_hospital_id,
            "reserved_severity": None if self.reserved_severity is None else self.reserved_severity.value,
            "eta": None if self.eta is None else [self.eta.to_scene_minutes, self.eta.scene_to_hospital_minutes],
            "timeline": [[e.name, e.at.isoformat()] for e in self.timeline],
            "status_history": [s.value for s in self.status_history],
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Incident":
        patient = data["patient"]
        vitals = data.get("vitals")
        triage = data.get("triage")
        eta = data.get("eta")
        reserved = data.get("reserved_severity")
        return cls(
            incident_id=data["incident_id"],
            incident_type=IncidentType(data["incident_type"]),
            description=data["description"],
            location=Coordinates(*data["location"]),
            patient=PatientInfo(
                age=patient["age"],
                gender=patient.get("gender", "unknown"),
                phone=patient.get("phone"),
                medical_history=tuple(patient.get("medical_history", [])),
                allergies=tuple(patient.get("allergies", [])),
            ),
            vitals=Vitals(**vitals) if vitals else None,
            required_resources=list(data.get("required_resources", [])),
            severity=Severity(data["severity"]),
            status=IncidentStatus(data["status"]),
            triage=None if triage is None else TriageResult(
                severity=Severity(triage["severity"]),
                confidence=float(triage["confidence"]),
                reasoning=triage["reasoning"],
                recommended_actions=list(triage["recommended_actions"]),
                estimated_response_minutes=int(triage["estimated_response_minutes"]),
                source=triage.get("source", "fallback"),
            ),
            assigned_ambulance_id=data.get("assigned_ambulance_id"),
            assigned_hospital_id=data.get("assigned_hospital_id"),
            reserved_severity=Severity(reserved) if reserved else None,
            eta=EtaPair(*eta) if eta else None,
            timeline=[TimelineEvent(name, datetime.fromisoformat(at)) for name, at in data.get("timeline", [])],
            status_history=[IncidentStatus(s) for s in data.get("status_history", [])],
            notes=list(data.get("notes", [])),
        )


@dataclass(frozen=True)
class ScoredAmbulance:
    ambulance: Ambulance
    score: float
    distance_km: float


@dataclass(frozen=True)
class ScoredHospital:
    hospital: Hospital
    score: float
    distance_km: float


@dataclass(frozen=True)
class MatchProposal:
    ambulance: Optional[Ambulance]
    hospital: Optional[Hospital]
    ambulance_distance_km: float = 0.0
    hospital_distance_km: float = 0.0
    combined_score: float = 0.0
    ambulance_score: float = 0.0
    hospital_score: float = 0.0

    @property
    def is_complete(self) -> bool:
        return self.ambulance is not None and self.hospital is not None


@dataclass(frozen=True)
class DispatchResult:
    incident_id: str
    status: IncidentStatus
    severity: Severity
    ambulance_id: Optional[str] = None
    hospital_id: Optional[str] = None
    eta_to_scene_minutes: Optional[int] = None
    eta_scene_to_hospital_minutes: Optional[int] = None
    dispatched: bool = False
    reason: Optional[str] = None
    incident: Optional[Incident] = None

    @classmethod
    def from_incident(cls, incident: Incident, reason: Optional[str] = None) -> "DispatchResult":
        return cls(
            incident_id=incident.incident_id,
            status=incident.status,
            severity=incident.severity,
            ambulance_id=incident.assigned_ambulance_id,
            hospital_id=incident.assigned_hospital_id,
            eta_to_scene_minutes=incident.eta.to_scene_minutes if incident.eta else None,
            eta_scene_to_hospital_minutes=incident.eta.scene_to_hospital_minutes if incident.eta else None,
            dispatched=incident.status == IncidentStatus.DISPATCHED,
            reason=reason,
            incident=incident,
        )
