from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, TypeVar

from emergency_dispatch.config import DispatchSettings
from emergency_dispatch.errors import (
    CapacityInvariantViolation,
    IllegalTransition,
    NoEligibleCandidate,
    ReservationConflict,
    StaleIncident,
)
from emergency_dispatch.eta import EtaEstimator, RoutingClient, utcnow
from emergency_dispatch.geo import nearest, validate_coordinates
from emergency_dispatch.matching import MatchingEngine
from emergency_dispatch.models import (
    Ambulance,
    AmbulanceStatus,
    Coordinates,
    DispatchResult,
    Hospital,
    Incident,
    IncidentStatus,
    MatchProposal,
    Severity,
)
from emergency_dispatch.notifier import NotificationService, Notifier
from emergency_dispatch.repository import Repository
from emergency_dispatch.schemas import IncidentReport, parse_report
from emergency_dispatch.state_machine import (
    CANCEL,
    COMPLETE,
    DISPATCH,
    TRANSITIONS,
    TRIAGE,
    DispatchStateMachine,
)
from emergency_dispatch.triage import PrimaryClassifier, TriageClient, TriageEstimator

LOGGER = logging.getLogger(__name__)

R = TypeVar("R")


class DispatchSystem:
    """Report, triage, match, reserve and notify for one incident at a time.

    All collaborators are injected. Calls for different incidents may run
    concurrently from separate threads; reservations are serialized by the
    repository.
    """

    def __init__(
        self,
        repository: Repository,
        settings: Optional[DispatchSettings] = None,
        routing: Optional[RoutingClient] = None,
        triage_client: Optional[TriageClient] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.settings = settings or DispatchSettings()
        self.eta = EtaEstimator(self.settings, routing, clock)
        primary = PrimaryClassifier(triage_client) if triage_client is not None else None
        self.triage = TriageEstimator(primary=primary, settings=self.settings)
        self.matching = MatchingEngine(repository)
        self.state_machine = DispatchStateMachine(repository, self.eta, clock)
        self.notifications = NotificationService(notifier)

    def report_incident(self, report: IncidentReport | Dict[str, Any]) -> DispatchResult:
        incident = self.create_incident(report)
        return self.dispatch(incident.incident_id)

    def create_incident(self, report: IncidentReport | Dict[str, Any]) -> Incident:
        """Validate, record and triage a new report, leaving it ready for dispatch."""
        parsed = parse_report(report)
        incident = parsed.to_incident(uuid.uuid4().hex)
        self.state_machine.start(incident)
        LOGGER.info("Incident %s reported: %s", incident.incident_id, incident.incident_type.value)
        return self._triage(incident)

    def dispatch(self, incident_id: str) -> DispatchResult:
        return self._fresh(incident_id, self._dispatch)

    def advance(self, incident_id: str, event: str, **payload: Any) -> Incident:
        return self._fresh(incident_id, lambda incident: self._advance(incident, event, payload))

    def _fresh(self, incident_id: str, action: Callable[[Incident], R]) -> R:
        """Run ``action`` on the stored incident, reloading it when another caller moved it first."""
        stale: Optional[StaleIncident] = None
        for attempt in range(1, self.settings.max_reservation_attempts + 1):
            incident = self.repository.get_incident(incident_id)
            try:
                return action(incident)
            except StaleIncident as exc:
                LOGGER.warning("Attempt %d on incident %s raced another update: %s", attempt, incident_id, exc)
                stale = exc
        raise stale

    def _advance(self, incident: Incident, event: str, payload: Dict[str, Any]) -> Incident:
        if event == TRIAGE:
            return self._triage(incident)
        if event == DISPATCH:
            return self._dispatch(incident).incident
        self.state_machine.fire(incident, event, **payload)
        self.notifications.incident_status_changed(incident.incident_id, _incident_payload(incident))
        self.notifications.dashboard_update({"type": "incident_updated", **_incident_payload(incident)})
        return incident

    def complete(self, incident_id: str) -> Incident:
        return self.advance(incident_id, COMPLETE)

    def cancel(self, incident_id: str, reason: str = "") -> Incident:
        incident = self.advance(incident_id, CANCEL, reason=reason)
        if incident.assigned_hospital_id is not None:
            self.notifications.hospital_alert(
                incident.assigned_hospital_id,
                {"type": "incident_cancelled", "incident_id": incident.incident_id, "reason": reason},
            )
        return incident

    def get_incident(self, incident_id: str) -> Incident:
        return self.repository.get_incident(incident_id)

    def list_incidents(self, status: Optional[IncidentStatus] = None) -> List[Incident]:
        return self.repository.list_incidents(status.value if status is not None else None)

    def nearby_ambulances(
        self, location: Coordinates, max_distance_km: Optional[float] = None, limit: Optional[int] = None
    ) -> List[Tuple[Ambulance, float]]:
        """Available operational ambulances around ``location`` with their distance in km."""
        return nearest(
            location,
            self.repository.list_available_ambulances(),
            lambda a: a.current_location,
            self.settings.nearby_ambulance_radius_km if max_distance_km is None else max_distance_km,
            self.settings.nearby_limit if limit is None else limit,
        )

    def nearby_hospitals(
        self, location: Coordinates, max_distance_km: Optional[float] = None, limit: Optional[int] = None
    ) -> List[Tuple[Hospital, float]]:
        """Operational hospitals accepting emergencies around ``location``, full ones included."""
        return nearest(
            location,
            self.repository.list_receiving_hospitals(),
            lambda h: h.location,
            self.settings.nearby_hospital_radius_km if max_distance_km is None else max_distance_km,
            self.settings.nearby_limit if limit is None else limit,
        )

    def update_ambulance_status(self, ambulance_id: str, status: AmbulanceStatus) -> Ambulance:
        ambulance = self.repository.set_ambulance_availability(ambulance_id, status)
        self.notifications.dashboard_update(
            {"type": "ambulance_status", "ambulance_id": ambulance.ambulance_id, "status": ambulance.status.value}
        )
        return ambulance

    def update_hospital_capacity(self, hospital_id: str, changes: Mapping[str, int]) -> Hospital:
        hospital = self.repository.update_hospital_capacity(hospital_id, changes)
        LOGGER.info("Capacity of hospital %s updated: %s", hospital_id, dict(changes))
        self.notifications.dashboard_update(
            {
                "type": "hospital_capacity",
                "hospital_id": hospital.hospital_id,
                "available_emergency_beds": hospital.capacity.available_emergency_beds,
                "available_icu_beds": hospital.capacity.available_icu_beds,
            }
        )
        return hospital

    def dashboard_stats(self) -> Dict[str, Any]:
        return self.repository.dashboard_stats()

    def update_ambulance_location(self, ambulance_id: str, location: Coordinates) -> Ambulance:
        validate_coordinates(location)
        ambulance = self.repository.update_ambulance_location(ambulance_id, location)
        data = {
            "ambulance_id": ambulance.ambulance_id,
            "location": [location.latitude, location.longitude],
            "status": ambulance.status.value,
        }
        self.notifications.ambulance_location_changed(ambulance.ambulance_id, data)
        if ambulance.current_incident_id is not None:
            self.notifications.incident_status_changed(
                ambulance.current_incident_id, {"type": "ambulance_location", **data}
            )
        return ambulance

    def release_beds(self, hospital_id: str, severity: Severity) -> Hospital:
        hospital = self.repository.release_beds(hospital_id, severity)
        LOGGER.info("Released %s beds at hospital %s", severity.value, hospital_id)
        self.notifications.dashboard_update(
            {
                "type": "hospital_capacity",
                "hospital_id": hospital.hospital_id,
                "available_emergency_beds": hospital.capacity.available_emergency_beds,
                "available_icu_beds": hospital.capacity.available_icu_beds,
            }
        )
        return hospital

    def _triage(self, incident: Incident) -> Incident:
        if (incident.status, TRIAGE) not in TRANSITIONS:
            raise IllegalTransition(incident.status, TRIAGE)
        result = self.triage.triage(incident)
        self.state_machine.fire(incident, TRIAGE, result=result)
        self.notifications.incident_status_changed(incident.incident_id, _incident_payload(incident))
        return incident

    def _dispatch(self, incident: Incident) -> DispatchResult:
        """Match and reserve, re-matching against fresh pools after a lost race.

        A hospital whose ICU beds cannot cover a critical patient is
        excluded for the remaining attempts.
        """
        if (incident.status, DISPATCH) not in TRANSITIONS:
            raise IllegalTransition(incident.status, DISPATCH)

        excluded: Set[str] = set()
        for attempt in range(1, self.settings.max_reservation_attempts + 1):
            proposal = self.matching.find_best_match(incident, exclude_hospitals=excluded)
            try:
                self.state_machine.fire(incident, DISPATCH, proposal=proposal)
            except NoEligibleCandidate as exc:
                return self._unassigned(incident, str(exc))
            except ReservationConflict as exc:
                LOGGER.warning("Attempt %d for incident %s lost a race: %s", attempt, incident.incident_id, exc)
                continue
            except CapacityInvariantViolation as exc:
                LOGGER.error("Attempt %d for incident %s rejected: %s", attempt, incident.incident_id, exc)
                excluded.add(proposal.hospital.hospital_id)
                continue
            self._announce_dispatch(incident, proposal)
            return DispatchResult.from_incident(incident)

        return self._unassigned(
            incident,
            f"No reservation succeeded after {self.settings.max_reservation_attempts} attempts",
        )

    def _unassigned(self, incident: Incident, reason: str) -> DispatchResult:
        LOGGER.warning("Incident %s left unassigned: %s", incident.incident_id, reason)
        self.notifications.dashboard_update(
            {"type": "incident_unassigned", "reason": reason, **_incident_payload(incident)}
        )
        return DispatchResult.from_incident(incident, reason=reason)

    def _announce_dispatch(self, incident: Incident, proposal: MatchProposal) -> None:
        payload = _incident_payload(incident)
        self.notifications.incident_status_changed(incident.incident_id, payload)
        self.notifications.hospital_alert(
            incident.assigned_hospital_id,
            {
                "type": "incoming_patient",
                "incident_id": incident.incident_id,
                "incident_type": incident.incident_type.value,
                "severity": incident.severity.value,
                "patient_age": incident.patient.age,
                "eta_minutes": incident.eta.total_minutes if incident.eta else None,
            },
        )
        self.notifications.dashboard_update(
            {"type": "incident_dispatched", "combined_score": proposal.combined_score, **payload}
        )


def _incident_payload(incident: Incident) -> Dict[str, Any]:
    return {
        "incident_id": incident.incident_id,
        "status": incident.status.value,
        "severity": incident.severity.value,
        "ambulance_id": incident.assigned_ambulance_id,
        "hospital_id": incident.assigned_hospital_id,
        "eta_to_scene_minutes": incident.eta.to_scene_minutes if incident.eta else None,
        "eta_scene_to_hospital_minutes": incident.eta.scene_to_hospital_minutes if incident.eta else None,
    }
