from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from emergency_dispatch.errors import InvalidInput
from emergency_dispatch.models import Coordinates, Incident, IncidentType, PatientInfo, Vitals


class LocationIn(BaseModel):
    latitude: float = Field(ge=-90.0, le=90.0, allow_inf_nan=False)
    longitude: float = Field(ge=-180.0, le=180.0, allow_inf_nan=False)


class PatientInfoIn(BaseModel):
    age: int = Field(ge=0, le=150)
    gender: str = "unknown"
    phone: Optional[str] = None
    medical_history: List[str] = Field(default_factory=list)
    allergies: List[str] = Field(default_factory=list)


class VitalsIn(BaseModel):
    heart_rate: Optional[float] = Field(default=None, ge=0)
    blood_pressure: Optional[str] = None
    respiratory_rate: Optional[float] = Field(default=None, ge=0)
    temperature: Optional[float] = None
    oxygen_saturation: Optional[float] = Field(default=None, ge=0, le=100)


class IncidentReport(BaseModel):
    type: IncidentType
    description: str = Field(min_length=1)
    location: LocationIn
    patient_info: PatientInfoIn
    vitals: Optional[VitalsIn] = None
    required_resources: List[str] = Field(default_factory=list)

    @field_validator("description")
    @classmethod
    def description_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("description must not be blank")
        return value.strip()

    def to_incident(self, incident_id: str) -> Incident:
        vitals = None
        if self.vitals is not None:
            vitals = Vitals(**self.vitals.model_dump())
        return Incident(
            incident_id=incident_id,
            incident_type=self.type,
            description=self.description,
            location=Coordinates(self.location.latitude, self.location.longitude),
            patient=PatientInfo(
                age=self.patient_info.age,
                gender=self.patient_info.gender,
                phone=self.patient_info.phone,
                medical_history=tuple(self.patient_info.medical_history),
                allergies=tuple(self.patient_info.allergies),
            ),
            vitals=vitals,
            required_resources=list(self.required_resources),
        )


def parse_report(payload: IncidentReport | Dict[str, Any]) -> IncidentReport:
    """Validate a raw report payload, raising InvalidInput on any schema error."""
    if isinstance(payload, IncidentReport):
        return payload
    try:
        return IncidentReport.model_validate(payload)
    except ValidationError as exc:
        raise InvalidInput(f"Invalid incident report: {exc}") from exc
