import asyncio
import logging
from datetime import UTC, datetime

from lifeline.database import DatabaseAdapter
from lifeline.errors import AmbulanceAccessDenied, AmbulanceNotFound
from lifeline.models.emergency import TimelineEntry
from lifeline.models.fleet import Ambulance, LocationReport
from lifeline.services.event_bus import TopicEventBus, emergency_topic
from lifeline.services.store import DispatchStore

logger = logging.getLogger(__name__)


class LocationTracker:
    """Applies position reports sent by an ambulance's driver."""

    def __init__(self, db: DatabaseAdapter, store: DispatchStore, bus: TopicEventBus) -> None:
        self.db = db
        self.store = store
        self.bus = bus
        self._background: set[asyncio.Task] = set()

    async def report_location(
        self, ambulance_id: str, report: LocationReport, reporting_user_id: str | None
    ) -> Ambulance:
        """Store the ambulance position and log it on its active emergency, if any."""
        now = datetime.now(UTC)
        emergency_id = None
        async with self.db.transaction():
            ambulance = await self.store.get_ambulance(ambulance_id)
            if ambulance is None:
                raise AmbulanceNotFound(ambulance_id)
            if ambulance.driver_id != reporting_user_id:
                raise AmbulanceAccessDenied(
                    f"User {reporting_user_id} is not the driver of ambulance {ambulance_id}"
                )

            await self.store.update_ambulance_location(ambulance_id, report.coordinates, report.address, now)

            if ambulance.current_emergency_id:
                emergency = await self.store.get_emergency(ambulance.current_emergency_id)
                if emergency is not None and not emergency.status.is_terminal:
                    entry = TimelineEntry(
                        status=emergency.status,
                        timestamp=now,
                        coordinates=report.coordinates,
                        notes="Ambulance location updated",
                    )
                    await self.store.append_timeline(emergency.id, entry)
                    await self.store.save_emergency(
                        emergency.model_copy(update={"updated_at": now}),
                        expected_version=emergency.version,
                    )
                    emergency_id = emergency.id

            updated = await self.store.get_ambulance(ambulance_id)

        if emergency_id:
            self._publish(emergency_id, {
                "emergencyId": emergency_id,
                "location": list(report.coordinates),
                "address": report.address,
                "timestamp": now.isoformat(),
            })
        return updated

    def _publish(self, emergency_id: str, payload: dict) -> None:
        # Fire-and-forget so the driver's request does not wait on subscribers
        task = asyncio.create_task(
            self.bus.publish(emergency_topic(emergency_id), "ambulance_location_update", payload)
        )
        self._background.add(task)
        task.add_done_callback(self._on_published)

    def _on_published(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Location push failed: %s", task.exception())

    async def wait_published(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
