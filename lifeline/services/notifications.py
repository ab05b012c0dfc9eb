"""Fan-out of committed emergency changes to interested recipients.

The engine and state machine only ``enqueue`` events after their transaction
commits. A single worker task resolves recipients and hands each
notification to the matching deliverers. Delivery is best effort and at most
once: failures are logged and never reach the operation that caused them.
"""

import asyncio
import logging
from datetime import UTC, datetime

from lifeline.config import NOTIFICATION_QUEUE_SIZE
from lifeline.errors import NotificationDeliveryFailure
from lifeline.models.emergency import Emergency, EmergencyStatus
from lifeline.models.notification import Notification, TransitionEvent
from lifeline.services.delivery import Deliverer, contact_recipient
from lifeline.services.event_bus import emergency_topic, hospital_topic, user_topic
from lifeline.services.store import DispatchStore

logger = logging.getLogger(__name__)

# Statuses the patient and their emergency contacts are told about
PERSONAL_NOTIFY_STATUSES = frozenset({
    EmergencyStatus.DISPATCHED,
    EmergencyStatus.IN_TRANSIT,
    EmergencyStatus.COMPLETED,
})

NEW_EMERGENCY = "new_emergency"
STATUS_CHANGE = "status_change"


class NotificationDispatcher:
    def __init__(
        self,
        store: DispatchStore,
        deliverers: list[Deliverer],
        queue_size: int = NOTIFICATION_QUEUE_SIZE,
    ) -> None:
        self.store = store
        self.deliverers = deliverers
        self._queue: asyncio.Queue[TransitionEvent] = asyncio.Queue(maxsize=queue_size)
        self._worker: asyncio.Task | None = None

    # --- Queue ----------------------------------------------------------

    def enqueue(self, event: TransitionEvent) -> None:
        """Hand an already-committed event to the worker. Never blocks or raises."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Notification queue full, dropping %s for emergency %s",
                event.kind, event.emergency_id,
            )

    async def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="notification-worker")
            logger.info("Notification worker started")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        if self._worker is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("Notification queue not drained within %.1fs", drain_timeout)
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Notification worker stopped")

    async def join(self) -> None:
        """Wait until every enqueued event has been processed."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            except Exception:
                logger.exception("Notification processing failed for emergency %s", event.emergency_id)
            finally:
                self._queue.task_done()

    # --- Resolution -----------------------------------------------------

    async def process(self, event: TransitionEvent) -> int:
        """Resolve and deliver one event. Returns the number of successful deliveries."""
        notifications = await self.resolve(event)
        delivered = 0
        for notification in notifications:
            for deliverer in self.deliverers:
                if not deliverer.accepts(notification.recipient):
                    continue
                try:
                    await deliverer.deliver(
                        notification.recipient, notification.event_type, notification.payload
                    )
                    delivered += 1
                except NotificationDeliveryFailure as e:
                    logger.error("Delivery via %s failed: %s", deliverer.name, e)
                except Exception as e:
                    logger.error(
                        "Deliverer %s raised for %s: %s", deliverer.name, notification.recipient, e
                    )
        return delivered

    async def resolve(self, event: TransitionEvent) -> list[Notification]:
        emergency = await self.store.get_emergency(event.emergency_id)
        if emergency is None:
            logger.error("Emergency %s not found for notification", event.emergency_id)
            return []
        if event.kind == NEW_EMERGENCY:
            return await self._new_emergency_notifications(emergency)
        return await self._status_notifications(emergency, event)

    async def _new_emergency_notifications(self, emergency: Emergency) -> list[Notification]:
        now = datetime.now(UTC).isoformat()
        notifications = [
            Notification(
                recipient=hospital_topic(emergency.hospital_id),
                event_type="new_emergency",
                payload=emergency.model_dump(mode="json"),
            )
        ]
        if not emergency.assigned_ambulance_id:
            return notifications

        ambulance = await self.store.get_ambulance(emergency.assigned_ambulance_id)
        eta = emergency.estimated_arrival_time.isoformat() if emergency.estimated_arrival_time else None
        if ambulance is not None:
            notifications.append(Notification(
                recipient=user_topic(ambulance.driver_id),
                event_type="new_assignment",
                payload={
                    "emergencyId": emergency.id,
                    "ambulanceId": ambulance.id,
                    "location": emergency.location.model_dump(mode="json"),
                    "priority": emergency.priority.value,
                    "assignedAt": now,
                },
            ))
        notifications.append(Notification(
            recipient=user_topic(emergency.patient_id),
            event_type="emergency_assigned",
            payload={
                "emergencyId": emergency.id,
                "ambulanceId": emergency.assigned_ambulance_id,
                "ambulanceNumber": ambulance.vehicle_number if ambulance else None,
                "estimatedArrival": eta,
            },
        ))
        return notifications

    async def _status_notifications(self, emergency: Emergency, event: TransitionEvent) -> list[Notification]:
        now = datetime.now(UTC).isoformat()
        notifications = [
            Notification(
                recipient=emergency_topic(emergency.id),
                event_type="status_update",
                payload={
                    "emergencyId": emergency.id,
                    "status": event.status.value,
                    "updatedAt": now,
                    "updatedBy": event.acting_user_id,
                },
            ),
            Notification(
                recipient=hospital_topic(emergency.hospital_id),
                event_type="emergency_updated",
                payload={
                    "emergencyId": emergency.id,
                    "status": event.status.value,
                    "patientId": emergency.patient_id,
                    "updatedAt": now,
                },
            ),
        ]
        if event.status not in PERSONAL_NOTIFY_STATUSES:
            return notifications

        status_data = await self._status_data(emergency, event.status)
        notifications.append(Notification(
            recipient=user_topic(emergency.patient_id),
            event_type="status_notification",
            payload=status_data,
        ))
        for contact in await self.store.get_emergency_contacts(emergency.patient_id):
            if not contact.phone:
                continue
            notifications.append(Notification(
                recipient=contact_recipient(contact.phone),
                event_type="status_notification",
                payload={**status_data, "contactName": contact.name},
            ))
        return notifications

    async def _status_data(self, emergency: Emergency, status: EmergencyStatus) -> dict:
        ambulance_number = None
        if emergency.assigned_ambulance_id:
            ambulance = await self.store.get_ambulance(emergency.assigned_ambulance_id)
            ambulance_number = ambulance.vehicle_number if ambulance else None
        return {
            "emergencyId": emergency.id,
            "patientId": emergency.patient_id,
            "status": status.value,
            "ambulanceNumber": ambulance_number,
            "eta": emergency.estimated_arrival_time.isoformat() if emergency.estimated_arrival_time else None,
        }
