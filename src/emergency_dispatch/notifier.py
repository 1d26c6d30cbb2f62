from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

LOGGER = logging.getLogger(__name__)

INCIDENT_UPDATE = "incident:update"
AMBULANCE_LOCATION = "ambulance:location"
HOSPITAL_ALERT = "hospital:alert"
DASHBOARD_UPDATE = "dashboard:update"


class Notifier(Protocol):
    def emit(self, room: str, event: str, data: Dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Writes events to the log; used when no push transport is wired in."""

    def emit(self, room: str, event: str, data: Dict[str, Any]) -> None:
        LOGGER.info("Emitted %s to room %s: %s", event, room, data)


class NotificationService:
    """Fire-and-forget egress: transport errors are logged, never raised."""

    def __init__(self, notifier: Notifier | None = None) -> None:
        self.notifier = notifier or LoggingNotifier()

    def _emit(self, room: str, event: str, data: Dict[str, Any]) -> None:
        try:
            self.notifier.emit(room, event, data)
        except Exception:
            LOGGER.exception("Failed to emit %s to room %s", event, room)

    def incident_status_changed(self, incident_id: str, data: Dict[str, Any]) -> None:
        self._emit(f"incident:{incident_id}", INCIDENT_UPDATE, data)

    def ambulance_location_changed(self, ambulance_id: str, data: Dict[str, Any]) -> None:
        self._emit(f"ambulance:{ambulance_id}", AMBULANCE_LOCATION, data)

    def hospital_alert(self, hospital_id: str, data: Dict[str, Any]) -> None:
        self._emit(f"hospital:{hospital_id}", HOSPITAL_ALERT, data)

    def dashboard_update(self, data: Dict[str, Any]) -> None:
        self._emit("dispatcher:dashboard", DASHBOARD_UPDATE, data)
