import logging
from datetime import UTC, datetime

from lifeline.database import DatabaseAdapter
from lifeline.errors import ConcurrentConflict, EmergencyNotFound, InvalidTransition
from lifeline.models.emergency import Emergency, EmergencyStatus, TimelineEntry
from lifeline.models.notification import TransitionEvent
from lifeline.services.notifications import STATUS_CHANGE, NotificationDispatcher
from lifeline.services.store import DispatchStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[EmergencyStatus, frozenset[EmergencyStatus]] = {
    EmergencyStatus.PENDING: frozenset({EmergencyStatus.DISPATCHED, EmergencyStatus.CANCELLED}),
    # Dispatched -> Dispatched is the manual re-dispatch path
    EmergencyStatus.DISPATCHED: frozenset({
        EmergencyStatus.DISPATCHED,
        EmergencyStatus.IN_TRANSIT,
        EmergencyStatus.CANCELLED,
    }),
    EmergencyStatus.IN_TRANSIT: frozenset({EmergencyStatus.COMPLETED, EmergencyStatus.CANCELLED}),
    EmergencyStatus.COMPLETED: frozenset(),
    EmergencyStatus.CANCELLED: frozenset(),
}


def can_transition(current: EmergencyStatus, new: EmergencyStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


class EmergencyStateMachine:
    """Applies status changes to an emergency and its ambulance as one unit."""

    def __init__(self, db: DatabaseAdapter, store: DispatchStore, notifier: NotificationDispatcher) -> None:
        self.db = db
        self.store = store
        self.notifier = notifier

    async def transition(
        self,
        emergency_id: str,
        new_status: EmergencyStatus,
        notes: str = "",
        acting_user_id: str | None = None,
    ) -> Emergency:
        """Move an emergency to ``new_status``.

        The acting user is expected to be authorized already. Raises
        EmergencyNotFound, InvalidTransition (nothing written) or
        ConcurrentConflict (rolled back, retry against fresh state).
        """
        async with self.db.transaction():
            emergency = await self.store.get_emergency(emergency_id)
            if emergency is None:
                raise EmergencyNotFound(emergency_id)
            if not can_transition(emergency.status, new_status):
                raise InvalidTransition(emergency.status.value, new_status.value)

            now = datetime.now(UTC)
            updates: dict = {"status": new_status, "updated_at": now}
            coordinates = emergency.location.coordinates
            ambulance_id = emergency.assigned_ambulance_id

            if ambulance_id:
                ambulance = await self.store.get_ambulance(ambulance_id)
                if ambulance is not None:
                    coordinates = ambulance.current_location.coordinates

            if new_status == EmergencyStatus.IN_TRANSIT and emergency.actual_arrival_time is None:
                updates["actual_arrival_time"] = now
            elif new_status == EmergencyStatus.COMPLETED and emergency.completed_at is None:
                updates["completed_at"] = now

            if ambulance_id and new_status in (EmergencyStatus.COMPLETED, EmergencyStatus.CANCELLED):
                released = await self.store.release_ambulance(ambulance_id, emergency.id)
                if not released:
                    logger.warning(
                        "Ambulance %s no longer held emergency %s at %s",
                        ambulance_id, emergency.id, new_status.value,
                    )
            elif ambulance_id and new_status == EmergencyStatus.DISPATCHED:
                if not await self.store.claim_ambulance(ambulance_id, emergency.id):
                    raise ConcurrentConflict(
                        f"Ambulance {ambulance_id} is not available for emergency {emergency.id}"
                    )

            entry = TimelineEntry(status=new_status, timestamp=now, coordinates=coordinates, notes=notes)
            await self.store.append_timeline(emergency.id, entry)
            updates["timeline"] = [*emergency.timeline, entry]
            updated = await self.store.save_emergency(
                emergency.model_copy(update=updates), expected_version=emergency.version
            )

        logger.info(
            "Emergency %s: %s -> %s (by %s)",
            emergency.id, emergency.status.value, new_status.value, acting_user_id or "system",
        )
        self.notifier.enqueue(TransitionEvent(
            kind=STATUS_CHANGE,
            emergency_id=emergency.id,
            status=new_status,
            acting_user_id=acting_user_id,
        ))
        return updated
