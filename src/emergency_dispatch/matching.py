from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Collection, Iterable, List, Optional

from emergency_dispatch.models import Ambulance, Hospital, Incident, MatchProposal, ScoredAmbulance, ScoredHospital
from emergency_dispatch.repository import Repository
from emergency_dispatch.scoring import eligible_ambulances, eligible_hospitals, score_ambulance, score_hospital

LOGGER = logging.getLogger(__name__)


def rank_ambulances(incident: Incident, ambulances: Iterable[Ambulance]) -> List[ScoredAmbulance]:
    """Eligible ambulances by descending score; equal scores fall back to ascending id."""
    scored = [score_ambulance(a, incident) for a in eligible_ambulances(ambulances)]
    scored.sort(key=lambda s: (-s.score, s.ambulance.ambulance_id))
    return scored


def rank_hospitals(incident: Incident, hospitals: Iterable[Hospital]) -> List[ScoredHospital]:
    scored = [score_hospital(h, incident) for h in eligible_hospitals(hospitals)]
    scored.sort(key=lambda s: (-s.score, s.hospital.hospital_id))
    return scored


class MatchingEngine:
    """Independent best-ambulance / best-hospital selection for one incident."""

    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    def _ranked_ambulances(self, incident: Incident) -> List[ScoredAmbulance]:
        return rank_ambulances(incident, self.repository.list_available_ambulances())

    def _ranked_hospitals(self, incident: Incident, exclude: Collection[str]) -> List[ScoredHospital]:
        hospitals = [h for h in self.repository.list_accepting_hospitals() if h.hospital_id not in exclude]
        return rank_hospitals(incident, hospitals)

    def find_best_match(self, incident: Incident, exclude_hospitals: Collection[str] = ()) -> MatchProposal:
        LOGGER.info("Matching incident %s (severity=%s)", incident.incident_id, incident.severity.value)

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="matching") as pool:
            ambulances_future = pool.submit(self._ranked_ambulances, incident)
            hospitals_future = pool.submit(self._ranked_hospitals, incident, exclude_hospitals)
            ambulances = ambulances_future.result()
            hospitals = hospitals_future.result()

        best_ambulance: Optional[ScoredAmbulance] = ambulances[0] if ambulances else None
        best_hospital: Optional[ScoredHospital] = hospitals[0] if hospitals else None

        if best_ambulance is None or best_hospital is None:
            if best_ambulance is None:
                LOGGER.warning("No available ambulances for incident %s", incident.incident_id)
            if best_hospital is None:
                LOGGER.warning("No available hospitals for incident %s", incident.incident_id)
            return MatchProposal(
                ambulance=best_ambulance.ambulance if best_ambulance else None,
                hospital=best_hospital.hospital if best_hospital else None,
                ambulance_distance_km=best_ambulance.distance_km if best_ambulance else 0.0,
                hospital_distance_km=best_hospital.distance_km if best_hospital else 0.0,
                combined_score=0.0,
                ambulance_score=best_ambulance.score if best_ambulance else 0.0,
                hospital_score=best_hospital.score if best_hospital else 0.0,
            )

        combined = (best_ambulance.score + best_hospital.score) / 2
        LOGGER.info(
            "Match found: ambulance %s, hospital %s, score %.2f",
            best_ambulance.ambulance.call_sign,
            best_hospital.hospital.name,
            combined,
        )
        return MatchProposal(
            ambulance=best_ambulance.ambulance,
            hospital=best_hospital.hospital,
            ambulance_distance_km=best_ambulance.distance_km,
            hospital_distance_km=best_hospital.distance_km,
            combined_score=combined,
            ambulance_score=best_ambulance.score,
            hospital_score=best_hospital.score,
        )
