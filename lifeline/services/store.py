"""Record store for emergencies, ambulances, hospitals and contacts.

Every write that touches ``ambulances.status`` or
``ambulances.current_emergency_id`` is a conditional UPDATE whose row count
decides the outcome, and every emergency update is checked against the
version that was read. Callers wrap multi-statement units in
``db.transaction()``.
"""

from __future__ import annotations

import logging
from datetime import datetime

from lifeline.database import DatabaseAdapter
from lifeline.errors import ConcurrentConflict
from lifeline.models.emergency import (
    Emergency,
    EmergencyLocation,
    MedicalInfo,
    TimelineEntry,
)
from lifeline.models.fleet import (
    Ambulance,
    AmbulanceStatus,
    EmergencyContact,
    Hospital,
    VehicleLocation,
)

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def row_to_hospital(row) -> Hospital:
    return Hospital(
        id=row["id"],
        name=row["name"],
        coordinates=(row["longitude"], row["latitude"]),
        is_active=bool(row["is_active"]),
    )


def row_to_ambulance(row) -> Ambulance:
    return Ambulance(
        id=row["id"],
        vehicle_number=row["vehicle_number"],
        driver_id=row["driver_id"],
        hospital_id=row["hospital_id"],
        status=row["status"],
        is_active=bool(row["is_active"]),
        current_emergency_id=row["current_emergency_id"],
        current_location=VehicleLocation(
            coordinates=(row["longitude"], row["latitude"]),
            address=row["location_address"],
            last_updated=row["location_updated_at"],
        ),
    )


def row_to_timeline_entry(row) -> TimelineEntry:
    coordinates = None
    if row["longitude"] is not None and row["latitude"] is not None:
        coordinates = (row["longitude"], row["latitude"])
    return TimelineEntry(
        status=row["status"],
        timestamp=row["timestamp"],
        coordinates=coordinates,
        notes=row["notes"] or "",
    )


def row_to_emergency(row, timeline: list[TimelineEntry]) -> Emergency:
    medical_info = MedicalInfo()
    try:
        medical_info = MedicalInfo.model_validate_json(row["medical_info"] or "{}")
    except ValueError:
        logger.debug("Failed to parse medical info for emergency %s", row["id"])

    return Emergency(
        id=row["id"],
        patient_id=row["patient_id"],
        location=EmergencyLocation(
            coordinates=(row["longitude"], row["latitude"]),
            address=row["address"],
            additional_info=row["additional_info"],
        ),
        hospital_id=row["hospital_id"],
        assigned_ambulance_id=row["assigned_ambulance_id"],
        status=row["status"],
        priority=row["priority"],
        medical_info=medical_info,
        timeline=timeline,
        estimated_arrival_time=row["estimated_arrival_time"],
        actual_arrival_time=row["actual_arrival_time"],
        completed_at=row["completed_at"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class DispatchStore:
    def __init__(self, db: DatabaseAdapter) -> None:
        self.db = db

    # --- Hospitals -------------------------------------------------------

    async def insert_hospital(self, hospital: Hospital) -> None:
        lon, lat = hospital.coordinates
        await self.db.execute(
            "INSERT INTO hospitals (id, name, longitude, latitude, is_active) VALUES (?, ?, ?, ?, ?)",
            (hospital.id, hospital.name, lon, lat, int(hospital.is_active)),
        )

    async def get_hospital(self, hospital_id: str) -> Hospital | None:
        row = await self.db.fetch_one("SELECT * FROM hospitals WHERE id = ?", (hospital_id,))
        return row_to_hospital(row) if row else None

    # --- Ambulances ------------------------------------------------------

    async def insert_ambulance(self, ambulance: Ambulance) -> None:
        """Register a vehicle. New vehicles enter the pool unassigned."""
        lon, lat = ambulance.current_location.coordinates
        await self.db.execute(
            """INSERT INTO ambulances (
                id, vehicle_number, driver_id, hospital_id, status, is_active,
                longitude, latitude, location_address, location_updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                ambulance.id,
                ambulance.vehicle_number,
                ambulance.driver_id,
                ambulance.hospital_id,
                ambulance.status.value,
                int(ambulance.is_active),
                lon,
                lat,
                ambulance.current_location.address,
                _iso(ambulance.current_location.last_updated),
            ),
        )

    async def get_ambulance(self, ambulance_id: str) -> Ambulance | None:
        row = await self.db.fetch_one("SELECT * FROM ambulances WHERE id = ?", (ambulance_id,))
        return row_to_ambulance(row) if row else None

    async def list_hospital_ambulances(
        self, hospital_id: str, status: AmbulanceStatus | None = None
    ) -> list[Ambulance]:
        if status is None:
            rows = await self.db.fetch_all(
                "SELECT * FROM ambulances WHERE hospital_id = ? ORDER BY vehicle_number",
                (hospital_id,),
            )
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM ambulances WHERE hospital_id = ? AND status = ? ORDER BY vehicle_number",
                (hospital_id, status.value),
            )
        return [row_to_ambulance(r) for r in rows]

    async def claim_available_ambulance(
        self, hospital_id: str, emergency_id: str, near: tuple[float, float]
    ) -> Ambulance | None:
        """Claim the Available ambulance of the hospital closest to ``near``.

        The status condition is repeated in the outer WHERE so the write is a
        compare-and-set: of any number of concurrent claimers, exactly one
        sees a changed row per ambulance. Returns None when nothing could be
        claimed.
        """
        lon, lat = near
        changed = await self.db.execute(
            """UPDATE ambulances
               SET status = ?, current_emergency_id = ?
               WHERE id = (
                   SELECT id FROM ambulances
                   WHERE hospital_id = ? AND status = ? AND is_active = 1
                   ORDER BY (longitude - ?) * (longitude - ?) + (latitude - ?) * (latitude - ?), id
                   LIMIT 1
               )
               AND status = ? AND is_active = 1""",
            (
                AmbulanceStatus.ON_DUTY.value,
                emergency_id,
                hospital_id,
                AmbulanceStatus.AVAILABLE.value,
                lon,
                lon,
                lat,
                lat,
                AmbulanceStatus.AVAILABLE.value,
            ),
        )
        if changed != 1:
            return None
        row = await self.db.fetch_one(
            "SELECT * FROM ambulances WHERE current_emergency_id = ?", (emergency_id,)
        )
        return row_to_ambulance(row) if row else None

    async def claim_ambulance(self, ambulance_id: str, emergency_id: str) -> bool:
        """Claim a specific ambulance. Succeeds if it is Available or already holds this emergency."""
        changed = await self.db.execute(
            """UPDATE ambulances
               SET status = ?, current_emergency_id = ?
               WHERE id = ? AND is_active = 1
               AND (status = ? OR (status = ? AND current_emergency_id = ?))""",
            (
                AmbulanceStatus.ON_DUTY.value,
                emergency_id,
                ambulance_id,
                AmbulanceStatus.AVAILABLE.value,
                AmbulanceStatus.ON_DUTY.value,
                emergency_id,
            ),
        )
        return changed == 1

    async def release_ambulance(self, ambulance_id: str, emergency_id: str) -> bool:
        """Return the ambulance to the pool if it still holds this emergency."""
        changed = await self.db.execute(
            """UPDATE ambulances
               SET status = ?, current_emergency_id = NULL
               WHERE id = ? AND current_emergency_id = ?""",
            (AmbulanceStatus.AVAILABLE.value, ambulance_id, emergency_id),
        )
        return changed == 1

    async def update_ambulance_location(
        self,
        ambulance_id: str,
        coordinates: tuple[float, float],
        address: str | None,
        reported_at: datetime,
    ) -> bool:
        lon, lat = coordinates
        changed = await self.db.execute(
            """UPDATE ambulances
               SET longitude = ?, latitude = ?, location_address = ?, location_updated_at = ?
               WHERE id = ?""",
            (lon, lat, address, reported_at.isoformat(), ambulance_id),
        )
        return changed == 1

    # --- Emergencies -----------------------------------------------------

    async def create_emergency(self, emergency: Emergency) -> None:
        lon, lat = emergency.location.coordinates
        await self.db.execute(
            """INSERT INTO emergencies (
                id, patient_id, longitude, latitude, address, additional_info,
                hospital_id, assigned_ambulance_id, status, priority, medical_info,
                estimated_arrival_time, actual_arrival_time, completed_at,
                version, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                emergency.id,
                emergency.patient_id,
                lon,
                lat,
                emergency.location.address,
                emergency.location.additional_info,
                emergency.hospital_id,
                emergency.assigned_ambulance_id,
                emergency.status.value,
                emergency.priority.value,
                emergency.medical_info.model_dump_json(),
                _iso(emergency.estimated_arrival_time),
                _iso(emergency.actual_arrival_time),
                _iso(emergency.completed_at),
                emergency.version,
                emergency.created_at.isoformat(),
                emergency.updated_at.isoformat(),
            ),
        )
        for entry in emergency.timeline:
            await self.append_timeline(emergency.id, entry)

    async def append_timeline(self, emergency_id: str, entry: TimelineEntry) -> None:
        lon, lat = entry.coordinates if entry.coordinates else (None, None)
        await self.db.execute(
            """INSERT INTO timeline_entries (emergency_id, status, timestamp, longitude, latitude, notes)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (emergency_id, entry.status.value, entry.timestamp.isoformat(), lon, lat, entry.notes),
        )

    async def save_emergency(self, emergency: Emergency, expected_version: int) -> Emergency:
        """Write the mutable fields if nobody else has written since ``expected_version``.

        Returns the emergency carrying its new version. Raises
        ConcurrentConflict when the stored version moved on.
        """
        new_version = expected_version + 1
        changed = await self.db.execute(
            """UPDATE emergencies
               SET assigned_ambulance_id = ?, status = ?, estimated_arrival_time = ?,
                   actual_arrival_time = ?, completed_at = ?, updated_at = ?, version = ?
               WHERE id = ? AND version = ?""",
            (
                emergency.assigned_ambulance_id,
                emergency.status.value,
                _iso(emergency.estimated_arrival_time),
                _iso(emergency.actual_arrival_time),
                _iso(emergency.completed_at),
                emergency.updated_at.isoformat(),
                new_version,
                emergency.id,
                expected_version,
            ),
        )
        if changed != 1:
            raise ConcurrentConflict(
                f"Emergency {emergency.id} was modified concurrently (expected version {expected_version})"
            )
        return emergency.model_copy(update={"version": new_version})

    async def get_timeline(self, emergency_id: str) -> list[TimelineEntry]:
        rows = await self.db.fetch_all(
            "SELECT * FROM timeline_entries WHERE emergency_id = ? ORDER BY id ASC",
            (emergency_id,),
        )
        return [row_to_timeline_entry(r) for r in rows]

    async def get_emergency(self, emergency_id: str) -> Emergency | None:
        row = await self.db.fetch_one("SELECT * FROM emergencies WHERE id = ?", (emergency_id,))
        if not row:
            return None
        return row_to_emergency(row, await self.get_timeline(emergency_id))

    async def list_hospital_emergencies(self, hospital_id: str, status: str | None = None) -> list[Emergency]:
        if status:
            rows = await self.db.fetch_all(
                "SELECT * FROM emergencies WHERE hospital_id = ? AND status = ? ORDER BY created_at DESC",
                (hospital_id, status),
            )
        else:
            rows = await self.db.fetch_all(
                "SELECT * FROM emergencies WHERE hospital_id = ? ORDER BY created_at DESC",
                (hospital_id,),
            )
        return [row_to_emergency(r, await self.get_timeline(r["id"])) for r in rows]

    async def list_patient_emergencies(self, patient_id: str) -> list[Emergency]:
        rows = await self.db.fetch_all(
            "SELECT * FROM emergencies WHERE patient_id = ? ORDER BY created_at DESC",
            (patient_id,),
        )
        return [row_to_emergency(r, await self.get_timeline(r["id"])) for r in rows]

    # --- Contacts --------------------------------------------------------

    async def add_emergency_contact(self, contact: EmergencyContact) -> None:
        await self.db.execute(
            "INSERT INTO emergency_contacts (patient_id, name, phone, relationship) VALUES (?, ?, ?, ?)",
            (contact.patient_id, contact.name, contact.phone, contact.relationship),
        )

    async def get_emergency_contacts(self, patient_id: str) -> list[EmergencyContact]:
        rows = await self.db.fetch_all(
            "SELECT * FROM emergency_contacts WHERE patient_id = ? ORDER BY id",
            (patient_id,),
        )
        return [
            EmergencyContact(
                patient_id=r["patient_id"],
                name=r["name"],
                phone=r["phone"],
                relationship=r["relationship"],
            )
            for r in rows
        ]
