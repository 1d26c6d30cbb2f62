from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from emergency_dispatch.config import DispatchSettings
from emergency_dispatch.fallback import try_primary
from emergency_dispatch.models import Incident, IncidentType, Severity, TriageResult, Vitals

LOGGER = logging.getLogger(__name__)

LIFE_SUPPORT_ACTION = "Immediate life support required"
CRITICAL_VITALS_NOTE = "Critical vital signs detected."
DEFAULT_AI_CONFIDENCE = 0.7


@dataclass(frozen=True)
class BaseAssessment:
    severity: Severity
    reasoning: str
    actions: Tuple[str, ...]
    response_minutes: int


BASE_ASSESSMENTS: Dict[IncidentType, BaseAssessment] = {
    IncidentType.CARDIAC: BaseAssessment(
        Severity.CRITICAL,
        "Cardiac emergencies require immediate response",
        ("Dispatch ALS ambulance immediately", "Alert cardiac care unit", "Prepare defibrillator"),
        8,
    ),
    IncidentType.STROKE: BaseAssessment(
        Severity.CRITICAL,
        "Stroke patients need urgent neurological care",
        ("Dispatch nearest available ambulance", "Alert stroke center", "Time-critical transport required"),
        10,
    ),
    IncidentType.TRAUMA: BaseAssessment(
        Severity.HIGH,
        "Trauma cases require rapid assessment and stabilization",
        ("Dispatch trauma-equipped ambulance", "Alert trauma center"),
        12,
    ),
    IncidentType.RESPIRATORY: BaseAssessment(
        Severity.HIGH,
        "Respiratory distress requires oxygen support",
        ("Ensure oxygen equipment available", "Dispatch BLS or ALS ambulance"),
        10,
    ),
    IncidentType.BURN: BaseAssessment(
        Severity.HIGH,
        "Burn injuries need specialized care",
        ("Dispatch ambulance with burn treatment supplies", "Alert burn unit if available"),
        15,
    ),
    IncidentType.POISONING: BaseAssessment(
        Severity.MEDIUM, "Standard emergency response protocol", ("Dispatch nearest available ambulance",), 12
    ),
    IncidentType.ACCIDENT: BaseAssessment(
        Severity.MEDIUM, "Standard emergency response protocol", ("Dispatch nearest available ambulance",), 15
    ),
    IncidentType.OTHER: BaseAssessment(
        Severity.MEDIUM, "Standard emergency response protocol", ("Dispatch nearest available ambulance",), 20
    ),
}


def base_response_minutes(incident_type: IncidentType) -> int:
    return BASE_ASSESSMENTS[incident_type].response_minutes


def abnormal_vitals(vitals: Optional[Vitals]) -> List[str]:
    """Names of vitals outside the safe band."""
    if vitals is None:
        return []
    flagged = []
    if vitals.heart_rate is not None and (vitals.heart_rate > 120 or vitals.heart_rate < 50):
        flagged.append("heart_rate")
    if vitals.oxygen_saturation is not None and vitals.oxygen_saturation < 90:
        flagged.append("oxygen_saturation")
    if vitals.respiratory_rate is not None and (vitals.respiratory_rate > 30 or vitals.respiratory_rate < 8):
        flagged.append("respiratory_rate")
    return flagged


def escalate_for_vitals(
    severity: Severity, reasoning: str, actions: List[str], vitals: Optional[Vitals]
) -> Tuple[Severity, str, List[str]]:
    if not abnormal_vitals(vitals):
        return severity, reasoning, actions
    if CRITICAL_VITALS_NOTE not in reasoning:
        reasoning = f"{reasoning}. {CRITICAL_VITALS_NOTE}"
    if LIFE_SUPPORT_ACTION not in actions:
        actions = [LIFE_SUPPORT_ACTION, *actions]
    return Severity.CRITICAL, reasoning, actions


def escalate_for_age(severity: Severity, reasoning: str, age: int) -> Tuple[Severity, str]:
    if age < 5 or age > 70:
        if severity == Severity.MEDIUM:
            severity = Severity.HIGH
        reasoning = f"{reasoning} Age factor ({age}) increases risk."
    return severity, reasoning


def build_triage_prompt(incident: Incident) -> str:
    lines = [
        "Analyze this medical emergency and provide a triage assessment:",
        "",
        f"Emergency Type: {incident.incident_type.value}",
        f"Description: {incident.description}",
        f"Patient Age: {incident.patient.age}",
        f"Patient Gender: {incident.patient.gender}",
    ]
    if incident.patient.medical_history:
        lines.append(f"Medical History: {', '.join(incident.patient.medical_history)}")
    if incident.vitals is not None:
        v = incident.vitals

        def fmt(value: Any) -> str:
            return "N/A" if value is None else str(value)

        lines += [
            "Vitals:",
            f"  - Heart Rate: {fmt(v.heart_rate)} bpm",
            f"  - Blood Pressure: {fmt(v.blood_pressure)}",
            f"  - Respiratory Rate: {fmt(v.respiratory_rate)} breaths/min",
            f"  - Oxygen Saturation: {fmt(v.oxygen_saturation)}%",
        ]
    lines += [
        "",
        'Respond with JSON: {"severity": "low|medium|high|critical", "confidence": 0.0-1.0, '
        '"reasoning": "...", "recommendedActions": [...], "estimatedResponseTime": minutes}',
    ]
    return "\n".join(lines)


def build_triage_summary(incident: Incident) -> Dict[str, Any]:
    """Structured incident summary handed to the AI collaborator; `prompt` carries the rendered text."""
    vitals = incident.vitals
    return {
        "incident_type": incident.incident_type.value,
        "description": incident.description,
        "age": incident.patient.age,
        "gender": incident.patient.gender,
        "medical_history": list(incident.patient.medical_history),
        "vitals": None if vitals is None else {
            "heart_rate": vitals.heart_rate,
            "blood_pressure": vitals.blood_pressure,
            "respiratory_rate": vitals.respiratory_rate,
            "oxygen_saturation": vitals.oxygen_saturation,
        },
        "prompt": build_triage_prompt(incident),
    }


class TriageClient(Protocol):
    def classify(self, summary: Mapping[str, Any]) -> Mapping[str, Any]:
        """Return severity, confidence, reasoning, recommendedActions[, estimatedResponseTime]."""


class FallbackClassifier:
    """Deterministic rule-based triage used whenever the AI collaborator is unavailable."""

    def __init__(self, confidence: float = 0.75) -> None:
        self.confidence = confidence

    def classify(self, incident: Incident) -> TriageResult:
        base = BASE_ASSESSMENTS[incident.incident_type]
        severity, reasoning, actions = escalate_for_vitals(
            base.severity, base.reasoning, list(base.actions), incident.vitals
        )
        severity, reasoning = escalate_for_age(severity, reasoning, incident.patient.age)
        return TriageResult(
            severity=severity,
            confidence=self.confidence,
            reasoning=reasoning,
            recommended_actions=actions,
            estimated_response_minutes=base.response_minutes,
            source="fallback",
        )


class PrimaryClassifier:
    """Adapts an external AI triage client and validates what it returns."""

    def __init__(self, client: TriageClient) -> None:
        self.client = client

    def classify(self, incident: Incident) -> TriageResult:
        raw = self.client.classify(build_triage_summary(incident))
        if not isinstance(raw, Mapping):
            raise ValueError(f"AI triage returned {type(raw).__name__}, expected a mapping")

        raw_confidence = raw.get("confidence")
        confidence = DEFAULT_AI_CONFIDENCE if raw_confidence is None else float(raw_confidence)
        if math.isnan(confidence):
            raise ValueError("AI triage confidence is NaN")
        confidence = min(max(confidence, 0.0), 1.0)

        actions = raw.get("recommendedActions") or raw.get("recommended_actions") or []
        if isinstance(actions, str) or not isinstance(actions, (list, tuple)):
            raise ValueError("recommendedActions must be a list")

        response = raw.get("estimatedResponseTime") or raw.get("estimated_response_minutes")
        response_minutes = int(response) if response else base_response_minutes(incident.incident_type)

        severity, reasoning, actions = escalate_for_vitals(
            Severity.normalize(raw.get("severity")),
            str(raw.get("reasoning") or "AI-generated triage assessment"),
            [str(a) for a in actions],
            incident.vitals,
        )
        return TriageResult(
            severity=severity,
            confidence=confidence,
            reasoning=reasoning,
            recommended_actions=actions,
            estimated_response_minutes=response_minutes,
            source="ai",
        )


class TriageEstimator:
    def __init__(
        self,
        fallback: Optional[FallbackClassifier] = None,
        primary: Optional[PrimaryClassifier] = None,
        settings: Optional[DispatchSettings] = None,
    ) -> None:
        self.settings = settings or DispatchSettings()
        self.fallback = fallback or FallbackClassifier(self.settings.fallback_confidence)
        self.primary = primary

    def triage(self, incident: Incident) -> TriageResult:
        LOGGER.info(
            "Triaging %s emergency for patient age %s", incident.incident_type.value, incident.patient.age
        )
        primary = None
        if self.primary is not None:
            primary = lambda: self.primary.classify(incident)  # noqa: E731
        result = try_primary(
            primary,
            lambda: self.fallback.classify(incident),
            timeout=self.settings.ai_triage_timeout_seconds,
            label="ai-triage",
        )
        LOGGER.info(
            "Triage completed: severity=%s confidence=%.2f source=%s",
            result.severity.value,
            result.confidence,
            result.source,
        )
        return result
