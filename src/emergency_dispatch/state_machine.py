from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from emergency_dispatch.errors import IllegalTransition, InvalidInput, NoEligibleCandidate
from emergency_dispatch.eta import EtaEstimator, utcnow
from emergency_dispatch.models import (
    AmbulanceStatus,
    EtaPair,
    Incident,
    IncidentStatus,
    MatchProposal,
    TimelineEvent,
    TriageResult,
)
from emergency_dispatch.repository import Repository

LOGGER = logging.getLogger(__name__)

TRIAGE = "triage"
DISPATCH = "dispatch"
DEPART = "depart"
ARRIVE_SCENE = "arrive_scene"
DEPART_SCENE = "depart_scene"
ARRIVE_HOSPITAL = "arrive_hospital"
COMPLETE = "complete"
CANCEL = "cancel"


@dataclass(frozen=True)
class Transition:
    """Target status plus the named hooks run around the incident write.

    ``effect`` runs before the write, ``undo`` reverses it when the write
    fails and ``release`` frees resources once the write has landed.
    """

    target: IncidentStatus
    timeline: str
    effect: Optional[str] = None
    undo: Optional[str] = None
    release: Optional[str] = None


S = IncidentStatus


def _follow(target: IncidentStatus, timeline: str) -> Transition:
    return Transition(target, timeline, "_follow_ambulance", "_restore_ambulance")


TRANSITIONS: Dict[Tuple[IncidentStatus, str], Transition] = {
    (S.REPORTED, TRIAGE): Transition(S.TRIAGED, "triaged", "_apply_triage"),
    (S.TRIAGED, DISPATCH): Transition(S.DISPATCHED, "dispatched", "_reserve_and_assign", "_undo_reservation"),
    (S.DISPATCHED, DEPART): _follow(S.EN_ROUTE, "en_route"),
    (S.DISPATCHED, ARRIVE_SCENE): _follow(S.ON_SCENE, "arrived_on_scene"),
    (S.EN_ROUTE, ARRIVE_SCENE): _follow(S.ON_SCENE, "arrived_on_scene"),
    (S.ON_SCENE, DEPART_SCENE): _follow(S.TRANSPORTING, "departed_to_hospital"),
    (S.TRANSPORTING, ARRIVE_HOSPITAL): _follow(S.AT_HOSPITAL, "arrived_at_hospital"),
    (S.AT_HOSPITAL, COMPLETE): Transition(S.COMPLETED, "completed", release="_release_ambulance"),
}
for _status in IncidentStatus:
    if not _status.terminal:
        TRANSITIONS[(_status, CANCEL)] = Transition(
            S.CANCELLED, "cancelled", "_note_cancellation", release="_release_reservation"
        )

AMBULANCE_STATUS_FOR = {
    S.DISPATCHED: AmbulanceStatus.EN_ROUTE,
    S.EN_ROUTE: AmbulanceStatus.EN_ROUTE,
    S.ON_SCENE: AmbulanceStatus.ON_SCENE,
    S.TRANSPORTING: AmbulanceStatus.TRANSPORTING,
    S.AT_HOSPITAL: AmbulanceStatus.AT_HOSPITAL,
}


def allowed_events(status: IncidentStatus) -> list[str]:
    return [event for (state, event) in TRANSITIONS if state == status]


class DispatchStateMachine:
    """Applies lifecycle events to incidents through the explicit transition table.

    Every accepted event records exactly one timeline entry and persists the
    incident with a write that only lands if nobody else moved the stored
    incident first. If the side effect or the write fails, the side effect
    is reversed and the in-memory incident is put back as it was. Resources
    given up by a transition (complete, cancel) are released only after the
    write has landed.
    """

    def __init__(
        self,
        repository: Repository,
        eta: EtaEstimator,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.eta = eta
        self.clock = clock

    def start(self, incident: Incident) -> Incident:
        if incident.status != IncidentStatus.REPORTED or incident.timeline:
            raise InvalidInput(f"Incident {incident.incident_id} was already started")
        incident.status_history.append(IncidentStatus.REPORTED)
        self._record(incident, "reported")
        self.repository.add_incident(incident)
        return incident

    def fire(self, incident: Incident, event: str, **payload: Any) -> Incident:
        transition = TRANSITIONS.get((incident.status, event))
        if transition is None:
            raise IllegalTransition(incident.status, event)

        previous = incident.status
        snapshot = copy.deepcopy(incident)
        if transition.effect is not None:
            getattr(self, transition.effect)(incident, transition.target, **payload)

        incident.status = transition.target
        incident.status_history.append(transition.target)
        self._record(incident, transition.timeline)
        try:
            self.repository.save_incident(incident, expected_status=previous)
        except Exception:
            self._undo(transition, incident, previous)
            vars(incident).update(vars(snapshot))
            raise

        if transition.release is not None:
            getattr(self, transition.release)(incident)
        LOGGER.info(
            "Incident %s: %s -> %s", incident.incident_id, previous.value, transition.target.value
        )
        return incident

    def _undo(self, transition: Transition, incident: Incident, previous: IncidentStatus) -> None:
        if transition.undo is None:
            return
        try:
            getattr(self, transition.undo)(incident, previous)
        except Exception:
            LOGGER.exception(
                "Could not reverse '%s' side effect for incident %s", transition.timeline, incident.incident_id
            )

    def _record(self, incident: Incident, name: str) -> None:
        at = self.clock()
        if incident.timeline and at < incident.timeline[-1].at:
            at = incident.timeline[-1].at
        incident.timeline.append(TimelineEvent(name, at))

    # -- side effects -----------------------------------------------------

    def _apply_triage(self, incident: Incident, target: IncidentStatus, result: TriageResult) -> None:
        incident.triage = result
        if result.severity.rank > incident.severity.rank:
            incident.severity = result.severity

    def _reserve_and_assign(self, incident: Incident, target: IncidentStatus, proposal: MatchProposal) -> None:
        if not proposal.is_complete:
            raise NoEligibleCandidate(incident=incident)

        ambulance, hospital = proposal.ambulance, proposal.hospital
        self.repository.reserve_ambulance_and_hospital(
            ambulance.ambulance_id, hospital.hospital_id, incident.severity, incident.incident_id
        )
        try:
            to_scene = self.eta.estimate(ambulance.current_location, incident.location)
            to_hospital = self.eta.estimate(incident.location, hospital.location)
        except Exception:
            self.repository.release_reservation(
                ambulance.ambulance_id, hospital.hospital_id, incident.severity, incident.incident_id
            )
            raise

        incident.assigned_ambulance_id = ambulance.ambulance_id
        incident.assigned_hospital_id = hospital.hospital_id
        incident.reserved_severity = incident.severity
        incident.eta = EtaPair(to_scene.duration_minutes, to_hospital.duration_minutes)

    def _undo_reservation(self, incident: Incident, previous: IncidentStatus) -> None:
        self.repository.release_reservation(
            incident.assigned_ambulance_id,
            incident.assigned_hospital_id,
            incident.reserved_severity or incident.severity,
            incident.incident_id,
        )

    def _follow_ambulance(self, incident: Incident, target: IncidentStatus) -> None:
        status = AMBULANCE_STATUS_FOR.get(target)
        if status is not None and incident.assigned_ambulance_id is not None:
            self.repository.set_ambulance_status(incident.assigned_ambulance_id, status, incident.incident_id)

    def _restore_ambulance(self, incident: Incident, previous: IncidentStatus) -> None:
        status = AMBULANCE_STATUS_FOR.get(previous)
        if status is not None and incident.assigned_ambulance_id is not None:
            self.repository.set_ambulance_status(incident.assigned_ambulance_id, status, incident.incident_id)

    def _note_cancellation(self, incident: Incident, target: IncidentStatus, reason: str = "") -> None:
        if reason:
            incident.notes.append(f"cancelled: {reason}")

    # -- releases ---------------------------------------------------------

    def _release_ambulance(self, incident: Incident) -> None:
        if incident.assigned_ambulance_id is not None:
            self.repository.release_ambulance(incident.assigned_ambulance_id, incident.incident_id)

    def _release_reservation(self, incident: Incident) -> None:
        if incident.assigned_ambulance_id is not None and incident.assigned_hospital_id is not None:
            self.repository.release_reservation(
                incident.assigned_ambulance_id,
                incident.assigned_hospital_id,
                incident.reserved_severity or incident.severity,
                incident.incident_id,
            )
