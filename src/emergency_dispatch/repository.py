from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol

from emergency_dispatch.errors import (
    CapacityInvariantViolation,
    InvalidInput,
    NotFound,
    ReservationConflict,
    StaleIncident,
)
from emergency_dispatch.models import (
    Ambulance,
    AmbulanceStatus,
    AmbulanceType,
    Coordinates,
    Hospital,
    HospitalCapacity,
    Incident,
    IncidentStatus,
    Severity,
)

LOGGER = logging.getLogger(__name__)

CAPACITY_FIELDS = {f.name for f in fields(HospitalCapacity)}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS ambulances (
        id TEXT PRIMARY KEY,
        call_sign TEXT NOT NULL,
        ambulance_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'available',
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        base_latitude REAL,
        base_longitude REAL,
        crew TEXT NOT NULL DEFAULT '{}',
        equipment TEXT NOT NULL DEFAULT '[]',
        current_incident_id TEXT,
        assigned_hospital_id TEXT,
        operational INTEGER NOT NULL DEFAULT 1,
        version INTEGER NOT NULL DEFAULT 0,
        CHECK (status = 'available' OR status = 'offline' OR current_incident_id IS NOT NULL)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hospitals (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        total_beds INTEGER NOT NULL DEFAULT 0,
        available_beds INTEGER NOT NULL DEFAULT 0,
        icu_beds INTEGER NOT NULL DEFAULT 0,
        available_icu_beds INTEGER NOT NULL DEFAULT 0,
        emergency_beds INTEGER NOT NULL DEFAULT 0,
        available_emergency_beds INTEGER NOT NULL DEFAULT 0,
        specializations TEXT NOT NULL DEFAULT '[]',
        resources TEXT NOT NULL DEFAULT '[]',
        accepting_emergencies INTEGER NOT NULL DEFAULT 1,
        operational INTEGER NOT NULL DEFAULT 1,
        version INTEGER NOT NULL DEFAULT 0,
        CHECK (available_beds BETWEEN 0 AND total_beds),
        CHECK (available_icu_beds BETWEEN 0 AND icu_beds),
        CHECK (available_emergency_beds BETWEEN 0 AND emergency_beds)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS incidents (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        incident_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def icu_units(severity: Severity) -> int:
    return 1 if severity == Severity.CRITICAL else 0


class Repository(Protocol):
    def list_available_ambulances(self) -> List[Ambulance]: ...

    def list_accepting_hospitals(self) -> List[Hospital]: ...

    def reserve_ambulance_and_hospital(
        self, ambulance_id: str, hospital_id: str, severity: Severity, incident_id: str
    ) -> None: ...

    def release_reservation(
        self, ambulance_id: str, hospital_id: str, severity: Severity, incident_id: str
    ) -> None: ...

    def release_ambulance(self, ambulance_id: str, incident_id: str) -> None: ...

    def set_ambulance_status(self, ambulance_id: str, status: AmbulanceStatus, incident_id: str) -> None: ...

    def add_incident(self, incident: Incident) -> None: ...

    def save_incident(self, incident: Incident, expected_status: IncidentStatus) -> None: ...

    def get_incident(self, incident_id: str) -> Incident: ...

    def list_incidents(self, status: Optional[str] = None) -> List[Incident]: ...

    def update_ambulance_location(self, ambulance_id: str, location: Coordinates) -> Ambulance: ...

    def release_beds(self, hospital_id: str, severity: Severity) -> Hospital: ...

    def list_receiving_hospitals(self) -> List[Hospital]: ...

    def set_ambulance_availability(self, ambulance_id: str, status: AmbulanceStatus) -> Ambulance: ...

    def update_hospital_capacity(self, hospital_id: str, changes: Mapping[str, int]) -> Hospital: ...

    def dashboard_stats(self) -> Dict[str, Any]: ...


def _row_to_ambulance(row: sqlite3.Row) -> Ambulance:
    base = None
    if row["base_latitude"] is not None and row["base_longitude"] is not None:
        base = Coordinates(row["base_latitude"], row["base_longitude"])
    return Ambulance(
        ambulance_id=row["id"],
        call_sign=row["call_sign"],
        ambulance_type=AmbulanceType(row["ambulance_type"]),
        status=AmbulanceStatus(row["status"]),
        current_location=Coordinates(row["latitude"], row["longitude"]),
        base_location=base,
        crew=json.loads(row["crew"]),
        equipment=json.loads(row["equipment"]),
        current_incident_id=row["current_incident_id"],
        assigned_hospital_id=row["assigned_hospital_id"],
        operational=bool(row["operational"]),
    )


def _row_to_hospital(row: sqlite3.Row) -> Hospital:
    return Hospital(
        hospital_id=row["id"],
        name=row["name"],
        location=Coordinates(row["latitude"], row["longitude"]),
        capacity=HospitalCapacity(
            total_beds=row["total_beds"],
            available_beds=row["available_beds"],
            icu_beds=row["icu_beds"],
            available_icu_beds=row["available_icu_beds"],
            emergency_beds=row["emergency_beds"],
            available_emergency_beds=row["available_emergency_beds"],
        ),
        specializations=json.loads(row["specializations"]),
        resources=json.loads(row["resources"]),
        accepting_emergencies=bool(row["accepting_emergencies"]),
        operational=bool(row["operational"]),
    )


class SqliteRepository:
    """Ambulance, hospital and incident store backed by a sqlite file.

    Capacity and assignment fields only change through conditional UPDATEs
    issued inside `BEGIN IMMEDIATE` transactions, so concurrent dispatchers
    in separate threads or processes cannot double-book an ambulance or
    overdraw a hospital's beds. The database must be a file; `:memory:`
    would give every connection its own empty database.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 30.0) -> None:
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout

    def init_db(self) -> None:
        with self.get_conn() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    @contextmanager
    def get_conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write-locked transaction; rolled back on any exception."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # -- fleet and hospital registry -------------------------------------

    def add_ambulance(self, ambulance: Ambulance) -> None:
        base = ambulance.base_location
        try:
            with self.get_conn() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO ambulances
                    (id,call_sign,ambulance_type,status,latitude,longitude,base_latitude,base_longitude,
                     crew,equipment,current_incident_id,assigned_hospital_id,operational)
                    VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        ambulance.ambulance_id,
                        ambulance.call_sign,
                        ambulance.ambulance_type.value,
                        ambulance.status.value,
                        ambulance.current_location.latitude,
                        ambulance.current_location.longitude,
                        base.latitude if base else None,
                        base.longitude if base else None,
                        json.dumps(ambulance.crew),
                        json.dumps(ambulance.equipment),
                        ambulance.current_incident_id,
                        ambulance.assigned_hospital_id,
                        int(ambulance.operational),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise InvalidInput(f"Ambulance {ambulance.ambulance_id} is busy without an incident") from exc

    def add_hospital(self, hospital: Hospital) -> None:
        cap = hospital.capacity
        try:
            with self.get_conn() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO hospitals
                    (id,name,latitude,longitude,total_beds,available_beds,icu_beds,available_icu_beds,
                     emergency_beds,available_emergency_beds,specializations,resources,
                     accepting_emergencies,operational)
                    VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        hospital.hospital_id,
                        hospital.name,
                        hospital.location.latitude,
                        hospital.location.longitude,
                        cap.total_beds,
                        cap.available_beds,
                        cap.icu_beds,
                        cap.available_icu_beds,
                        cap.emergency_beds,
                        cap.available_emergency_beds,
                        json.dumps(hospital.specializations),
                        json.dumps(hospital.resources),
                        int(hospital.accepting_emergencies),
                        int(hospital.operational),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise InvalidInput(f"Hospital {hospital.hospital_id} capacity out of bounds: {cap}") from exc

    def get_ambulance(self, ambulance_id: str) -> Ambulance:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM ambulances WHERE id=?", (ambulance_id,)).fetchone()
        if row is None:
            raise NotFound(f"Ambulance {ambulance_id} not found")
        return _row_to_ambulance(row)

    def get_hospital(self, hospital_id: str) -> Hospital:
        with self.get_conn() as conn:
            row = conn.execute("SELECT * FROM hospitals WHERE id=?", (hospital_id,)).fetchone()
        if row is None:
            raise NotFound(f"Hospital {hospital_id} not found")
        return _row_to_hospital(row)

    def list_available_ambulances(self) -> List[Ambulance]:
        with self.get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM ambulances WHERE status='available' AND operational=1 ORDER BY id"
            ).fetchall()
        return [_row_to_ambulance(r) for r in rows]

    def list_accepting_hospitals(self) -> List[Hospital]:
        with self.get_conn() as conn:
            rows = conn.execute(
                """
                SELECT * FROM hospitals
                WHERE operational=1 AND accepting_emergencies=1 AND available_emergency_beds > 0
                ORDER BY id
                """
            ).fetchall()
        return [_row_to_hospital(r) for r in rows]

    def update_ambulance_location(self, ambulance_id: str, location: Coordinates) -> Ambulance:
        with self.get_conn() as conn:
            cur = conn.execute(
                "UPDATE ambulances SET latitude=?, longitude=?, version=version+1 WHERE id=?",
                (location.latitude, location.longitude, ambulance_id),
            )
            if cur.rowcount == 0:
                raise NotFound(f"Ambulance {ambulance_id} not found")
        return self.get_ambulance(ambulance_id)

    def list_receiving_hospitals(self) -> List[Hospital]:
        """Operational hospitals accepting emergencies, full or not."""
        with self.get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM hospitals WHERE operational=1 AND accepting_emergencies=1 ORDER BY id"
            ).fetchall()
        return [_row_to_hospital(r) for r in rows]

    def set_ambulance_availability(self, ambulance_id: str, status: AmbulanceStatus) -> Ambulance:
        """Take an idle ambulance off duty or put it back in service.

        Ambulances committed to an incident move with that incident instead.
        """
        if status not in (AmbulanceStatus.AVAILABLE, AmbulanceStatus.OFFLINE):
            raise InvalidInput(f"Ambulance status can only be set to available or offline, not {status.value}")
        with self.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE ambulances
                SET status=?, current_incident_id=NULL, assigned_hospital_id=NULL, version=version+1
                WHERE id=? AND current_incident_id IS NULL
                """,
                (status.value, ambulance_id),
            )
            if cur.rowcount != 1:
                row = conn.execute(
                    "SELECT current_incident_id FROM ambulances WHERE id=?", (ambulance_id,)
                ).fetchone()
                if row is None:
                    raise NotFound(f"Ambulance {ambulance_id} not found")
                raise ReservationConflict(
                    f"Ambulance {ambulance_id} is assigned to incident {row['current_incident_id']}"
                )
        LOGGER.info("Ambulance %s set to %s", ambulance_id, status.value)
        return self.get_ambulance(ambulance_id)

    def update_hospital_capacity(self, hospital_id: str, changes: Mapping[str, int]) -> Hospital:
        """Overwrite some capacity counters; the result must stay within bounds."""
        unknown = set(changes) - CAPACITY_FIELDS
        if unknown:
            raise InvalidInput(f"Unknown capacity fields: {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidInput(f"Capacity field {name} must be a non-negative integer, got {value!r}")
        if not changes:
            return self.get_hospital(hospital_id)

        assignments = ", ".join(f"{name}=?" for name in sorted(changes))
        params = [changes[name] for name in sorted(changes)] + [hospital_id]
        try:
            with self.transaction() as conn:
                cur = conn.execute(
                    f"UPDATE hospitals SET {assignments}, version=version+1 WHERE id=?", params
                )
                if cur.rowcount == 0:
                    raise NotFound(f"Hospital {hospital_id} not found")
        except sqlite3.IntegrityError as exc:
            raise InvalidInput(f"Hospital {hospital_id} capacity out of bounds: {dict(changes)}") from exc
        return self.get_hospital(hospital_id)

    # -- reservations -----------------------------------------------------

    def reserve_ambulance_and_hospital(
        self, ambulance_id: str, hospital_id: str, severity: Severity, incident_id: str
    ) -> None:
        """Claim the ambulance and one emergency bed (plus one ICU bed when critical).

        Both conditional updates run in one write transaction; if either
        fails nothing is changed. Raises ReservationConflict when another
        incident got there first, CapacityInvariantViolation when the
        hospital is still available but an ICU bed would go negative.
        """
        icu = icu_units(severity)
        with self.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE ambulances
                SET status='en_route', current_incident_id=?, assigned_hospital_id=?, version=version+1
                WHERE id=? AND status='available' AND operational=1
                """,
                (incident_id, hospital_id, ambulance_id),
            )
            if cur.rowcount != 1:
                if conn.execute("SELECT 1 FROM ambulances WHERE id=?", (ambulance_id,)).fetchone() is None:
                    raise NotFound(f"Ambulance {ambulance_id} not found")
                raise ReservationConflict(f"Ambulance {ambulance_id} is no longer available")

            cur = conn.execute(
                """
                UPDATE hospitals
                SET available_emergency_beds = available_emergency_beds - 1,
                    available_icu_beds = available_icu_beds - ?,
                    version = version + 1
                WHERE id=? AND operational=1 AND accepting_emergencies=1
                  AND available_emergency_beds >= 1 AND available_icu_beds >= ?
                """,
                (icu, hospital_id, icu),
            )
            if cur.rowcount != 1:
                self._diagnose_hospital_rejection(conn, hospital_id, icu)
        LOGGER.info(
            "Reserved ambulance %s and hospital %s for incident %s (icu=%d)",
            ambulance_id,
            hospital_id,
            incident_id,
            icu,
        )

    @staticmethod
    def _diagnose_hospital_rejection(conn: sqlite3.Connection, hospital_id: str, icu: int) -> None:
        row = conn.execute(
            "SELECT operational, accepting_emergencies, available_emergency_beds, available_icu_beds "
            "FROM hospitals WHERE id=?",
            (hospital_id,),
        ).fetchone()
        if row is None:
            raise NotFound(f"Hospital {hospital_id} not found")
        if not row["operational"] or not row["accepting_emergencies"] or row["available_emergency_beds"] < 1:
            raise ReservationConflict(f"Hospital {hospital_id} has no emergency bed left")
        raise CapacityInvariantViolation(
            f"Hospital {hospital_id} ICU beds would drop below zero "
            f"({row['available_icu_beds']} available, {icu} requested)"
        )

    def release_reservation(
        self, ambulance_id: str, hospital_id: str, severity: Severity, incident_id: str
    ) -> None:
        """Undo a reservation exactly: free the ambulance and return the reserved beds."""
        icu = icu_units(severity)
        try:
            with self.transaction() as conn:
                self._free_ambulance(conn, ambulance_id, incident_id)
                conn.execute(
                    """
                    UPDATE hospitals
                    SET available_emergency_beds = available_emergency_beds + 1,
                        available_icu_beds = available_icu_beds + ?,
                        version = version + 1
                    WHERE id=?
                    """,
                    (icu, hospital_id),
                )
        except sqlite3.IntegrityError as exc:
            raise CapacityInvariantViolation(
                f"Releasing beds at hospital {hospital_id} would exceed its totals"
            ) from exc
        LOGGER.info("Released reservation of incident %s (ambulance %s, hospital %s)", incident_id, ambulance_id, hospital_id)

    def release_ambulance(self, ambulance_id: str, incident_id: str) -> None:
        with self.transaction() as conn:
            self._free_ambulance(conn, ambulance_id, incident_id)

    @staticmethod
    def _free_ambulance(conn: sqlite3.Connection, ambulance_id: str, incident_id: str) -> None:
        cur = conn.execute(
            """
            UPDATE ambulances
            SET status='available', current_incident_id=NULL, assigned_hospital_id=NULL, version=version+1
            WHERE id=? AND current_incident_id=?
            """,
            (ambulance_id, incident_id),
        )
        if cur.rowcount != 1:
            raise ReservationConflict(f"Ambulance {ambulance_id} is not assigned to incident {incident_id}")

    def set_ambulance_status(self, ambulance_id: str, status: AmbulanceStatus, incident_id: str) -> None:
        """Move an assigned ambulance along with its incident."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE ambulances SET status=?, version=version+1 WHERE id=? AND current_incident_id=?",
                (status.value, ambulance_id, incident_id),
            )
            if cur.rowcount != 1:
                raise ReservationConflict(f"Ambulance {ambulance_id} is not assigned to incident {incident_id}")

    def release_beds(self, hospital_id: str, severity: Severity) -> Hospital:
        """Return beds freed by a clinical discharge."""
        icu = icu_units(severity)
        try:
            with self.transaction() as conn:
                cur = conn.execute(
                    """
                    UPDATE hospitals
                    SET available_emergency_beds = available_emergency_beds + 1,
                        available_icu_beds = available_icu_beds + ?,
                        version = version + 1
                    WHERE id=?
                    """,
                    (icu, hospital_id),
                )
                if cur.rowcount == 0:
                    raise NotFound(f"Hospital {hospital_id} not found")
        except sqlite3.IntegrityError as exc:
            raise CapacityInvariantViolation(
                f"Hospital {hospital_id} has no occupied beds of that kind to release"
            ) from exc
        return self.get_hospital(hospital_id)

    # -- incidents --------------------------------------------------------

    def add_incident(self, incident: Incident) -> None:
        try:
            with self.get_conn() as conn:
                conn.execute(
                    """
                    INSERT INTO incidents (id,status,incident_type,severity,payload,updated_at)
                    VALUES (?,?,?,?,?,?)
                    """,
                    (
                        incident.incident_id,
                        incident.status.value,
                        incident.incident_type.value,
                        incident.severity.value,
                        json.dumps(incident.to_dict()),
                        now_iso(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise InvalidInput(f"Incident {incident.incident_id} already exists") from exc

    def save_incident(self, incident: Incident, expected_status: IncidentStatus) -> None:
        """Write the incident only if the stored copy is still in ``expected_status``.

        Every transition changes status, so a concurrent transition on the
        same incident makes this write fail with StaleIncident instead of
        overwriting it.
        """
        with self.get_conn() as conn:
            cur = conn.execute(
                """
                UPDATE incidents
                SET status=?, severity=?, payload=?, updated_at=?, version=version+1
                WHERE id=? AND status=?
                """,
                (
                    incident.status.value,
                    incident.severity.value,
                    json.dumps(incident.to_dict()),
                    now_iso(),
                    incident.incident_id,
                    expected_status.value,
                ),
            )
            if cur.rowcount != 1:
                row = conn.execute("SELECT status FROM incidents WHERE id=?", (incident.incident_id,)).fetchone()
                if row is None:
                    raise NotFound(f"Incident {incident.incident_id} not found")
                raise StaleIncident(incident.incident_id, IncidentStatus(row["status"]))

    def get_incident(self, incident_id: str) -> Incident:
        with self.get_conn() as conn:
            row = conn.execute("SELECT payload FROM incidents WHERE id=?", (incident_id,)).fetchone()
        if row is None:
            raise NotFound(f"Incident {incident_id} not found")
        return Incident.from_dict(json.loads(row["payload"]))

    def list_incidents(self, status: Optional[str] = None) -> List[Incident]:
        query = "SELECT payload FROM incidents"
        params: tuple = ()
        if status is not None:
            query += " WHERE status=?"
            params = (status,)
        with self.get_conn() as conn:
            rows = conn.execute(query + " ORDER BY updated_at DESC", params).fetchall()
        return [Incident.from_dict(json.loads(r["payload"])) for r in rows]

    # -- dashboard --------------------------------------------------------

    def dashboard_stats(self) -> Dict[str, Any]:
        terminal = [s.value for s in IncidentStatus if s.terminal]
        placeholders = ",".join("?" * len(terminal))
        with self.get_conn() as conn:
            total_incidents = conn.execute("SELECT COUNT(*) FROM incidents").fetchone()[0]
            active_incidents = conn.execute(
                f"SELECT COUNT(*) FROM incidents WHERE status NOT IN ({placeholders})", terminal
            ).fetchone()[0]
            total_ambulances = conn.execute("SELECT COUNT(*) FROM ambulances WHERE operational=1").fetchone()[0]
            available_ambulances = conn.execute(
                "SELECT COUNT(*) FROM ambulances WHERE operational=1 AND status='available'"
            ).fetchone()[0]
            total_hospitals = conn.execute("SELECT COUNT(*) FROM hospitals WHERE operational=1").fetchone()[0]
            by_type = conn.execute(
                "SELECT incident_type, COUNT(*) AS n FROM incidents GROUP BY incident_type ORDER BY incident_type"
            ).fetchall()
            by_severity = conn.execute(
                "SELECT severity, COUNT(*) AS n FROM incidents GROUP BY severity ORDER BY severity"
            ).fetchall()
        return {
            "total_incidents": total_incidents,
            "active_incidents": active_incidents,
            "total_ambulances": total_ambulances,
            "available_ambulances": available_ambulances,
            "total_hospitals": total_hospitals,
            "incidents_by_type": {r["incident_type"]: r["n"] for r in by_type},
            "incidents_by_severity": {r["severity"]: r["n"] for r in by_severity},
        }
