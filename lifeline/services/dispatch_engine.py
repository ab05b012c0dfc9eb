"""Hospital selection and ambulance assignment for new emergencies.

Flow for ``create_emergency``:
1. Nearest active hospital within the search radius (greedy, no capacity check)
2. Persist the emergency as Pending with its first timeline entry
3. Claim the closest Available ambulance of that hospital with a conditional
   update, and mark the emergency Dispatched in the same transaction
4. Estimate the ETA outside the transaction under a hard time budget
5. Enqueue the new-emergency notification once everything is committed
"""

import logging
import uuid
from datetime import UTC, datetime, timedelta

from lifeline.config import HOSPITAL_SEARCH_RADIUS_METERS, ROUTE_ESTIMATE_TIMEOUT_SECONDS
from lifeline.database import DatabaseAdapter
from lifeline.errors import (
    ConcurrentConflict,
    EmergencyNotFound,
    GeoIndexUnavailable,
    InvalidTransition,
    NoHospitalAvailable,
)
from lifeline.models.emergency import (
    DispatchOutcome,
    DispatchResult,
    Emergency,
    EmergencyLocation,
    EmergencyStatus,
    MedicalInfo,
    Priority,
    TimelineEntry,
)
from lifeline.models.fleet import Ambulance
from lifeline.models.notification import TransitionEvent
from lifeline.services.geo_index import GeoIndex
from lifeline.services.notifications import NEW_EMERGENCY, STATUS_CHANGE, NotificationDispatcher
from lifeline.services.route_estimator import RouteEstimator, estimate_with_budget
from lifeline.services.store import DispatchStore

logger = logging.getLogger(__name__)

AWAITING_AMBULANCE = (EmergencyStatus.PENDING, EmergencyStatus.DISPATCHED)


class DispatchEngine:
    def __init__(
        self,
        db: DatabaseAdapter,
        store: DispatchStore,
        geo_index: GeoIndex,
        route_estimator: RouteEstimator,
        notifier: NotificationDispatcher,
        search_radius_m: float = HOSPITAL_SEARCH_RADIUS_METERS,
        eta_timeout: float = ROUTE_ESTIMATE_TIMEOUT_SECONDS,
    ) -> None:
        self.db = db
        self.store = store
        self.geo_index = geo_index
        self.route_estimator = route_estimator
        self.notifier = notifier
        self.search_radius_m = search_radius_m
        self.eta_timeout = eta_timeout

    async def create_emergency(
        self,
        patient_id: str,
        location: EmergencyLocation,
        medical_info: MedicalInfo | None = None,
        priority: Priority = Priority.MEDIUM,
    ) -> DispatchResult:
        """Register an emergency and try to dispatch an ambulance to it.

        Raises NoHospitalAvailable (nothing persisted) when no active hospital
        is within range. Having no free ambulance is not an error: the result
        carries outcome PendingNoAmbulance.
        """
        try:
            hospitals = await self.geo_index.nearest_hospitals(
                location.coordinates, self.search_radius_m, limit=1
            )
        except GeoIndexUnavailable:
            logger.warning("Hospital index unavailable, treating as no candidates")
            hospitals = []
        if not hospitals:
            logger.warning(
                "No active hospital within %.0fm of %s", self.search_radius_m, location.coordinates
            )
            raise NoHospitalAvailable("No hospitals available at the moment")

        nearest = hospitals[0]
        now = datetime.now(UTC)
        emergency = Emergency(
            id=str(uuid.uuid4()),
            patient_id=patient_id,
            location=location,
            hospital_id=nearest.hospital.id,
            status=EmergencyStatus.PENDING,
            priority=priority,
            medical_info=medical_info or MedicalInfo(),
            timeline=[
                TimelineEntry(
                    status=EmergencyStatus.PENDING,
                    timestamp=now,
                    coordinates=location.coordinates,
                    notes="Emergency request created",
                )
            ],
            created_at=now,
            updated_at=now,
        )

        async with self.db.transaction():
            await self.store.create_emergency(emergency)
        logger.info(
            "Emergency %s created for patient %s, hospital %s (%.0fm away, priority %s)",
            emergency.id, patient_id, nearest.hospital.id, nearest.distance_meters, priority.value,
        )

        result = await self.reserve_ambulance(emergency.id, emergency.hospital_id)
        self.notifier.enqueue(TransitionEvent(
            kind=NEW_EMERGENCY,
            emergency_id=emergency.id,
            status=result.emergency.status,
            acting_user_id=patient_id,
        ))
        return result

    async def reserve_ambulance(self, emergency_id: str, hospital_id: str) -> DispatchResult:
        """Claim an ambulance of ``hospital_id`` for an emergency that has none.

        Accepts Pending emergencies and ones marked Dispatched by hand before
        any ambulance was free.

        The claim and the emergency's move to Dispatched commit together. If
        the emergency changed underneath us the whole unit rolls back with
        ConcurrentConflict, so the ambulance is never left On Duty for an
        emergency that does not reference it.
        """
        async with self.db.transaction():
            emergency = await self.store.get_emergency(emergency_id)
            if emergency is None:
                raise EmergencyNotFound(emergency_id)
            if emergency.status not in AWAITING_AMBULANCE or emergency.assigned_ambulance_id:
                raise InvalidTransition(emergency.status.value, EmergencyStatus.DISPATCHED.value)

            ambulance = await self.store.claim_available_ambulance(
                hospital_id, emergency.id, near=emergency.location.coordinates
            )
            if ambulance is None:
                logger.warning("No available ambulance at hospital %s for emergency %s", hospital_id, emergency.id)
                return DispatchResult(emergency=emergency, outcome=DispatchOutcome.PENDING_NO_AMBULANCE)

            now = datetime.now(UTC)
            entry = TimelineEntry(
                status=EmergencyStatus.DISPATCHED,
                timestamp=now,
                coordinates=ambulance.current_location.coordinates,
                notes=f"Ambulance {ambulance.vehicle_number} dispatched",
            )
            await self.store.append_timeline(emergency.id, entry)
            dispatched = emergency.model_copy(update={
                "status": EmergencyStatus.DISPATCHED,
                "assigned_ambulance_id": ambulance.id,
                "timeline": [*emergency.timeline, entry],
                "updated_at": now,
            })
            dispatched = await self.store.save_emergency(dispatched, expected_version=emergency.version)

        logger.info("Ambulance %s claimed for emergency %s", ambulance.id, emergency.id)
        dispatched = await self._apply_eta(dispatched, ambulance)
        return DispatchResult(emergency=dispatched, outcome=DispatchOutcome.DISPATCHED)

    async def retry_pending(self, emergency_id: str) -> DispatchResult:
        """Re-attempt the ambulance claim for an emergency still without one."""
        emergency = await self.store.get_emergency(emergency_id)
        if emergency is None:
            raise EmergencyNotFound(emergency_id)
        result = await self.reserve_ambulance(emergency.id, emergency.hospital_id)
        if result.outcome == DispatchOutcome.DISPATCHED:
            self.notifier.enqueue(TransitionEvent(
                kind=STATUS_CHANGE,
                emergency_id=emergency.id,
                status=EmergencyStatus.DISPATCHED,
            ))
        return result

    async def _apply_eta(self, emergency: Emergency, ambulance: Ambulance) -> Emergency:
        seconds = await estimate_with_budget(
            self.route_estimator,
            ambulance.current_location.coordinates,
            emergency.location.coordinates,
            timeout=self.eta_timeout,
        )
        if seconds is None:
            logger.warning("ETA unknown for emergency %s", emergency.id)
            return emergency

        eta = datetime.now(UTC) + timedelta(seconds=seconds)
        try:
            async with self.db.transaction():
                current = await self.store.get_emergency(emergency.id)
                if (
                    current is None
                    or current.status != EmergencyStatus.DISPATCHED
                    or current.estimated_arrival_time is not None
                ):
                    return current or emergency
                updated = current.model_copy(update={"estimated_arrival_time": eta, "updated_at": datetime.now(UTC)})
                return await self.store.save_emergency(updated, expected_version=current.version)
        except ConcurrentConflict:
            logger.warning("Emergency %s changed while storing ETA; ETA skipped", emergency.id)
            return await self.store.get_emergency(emergency.id) or emergency
