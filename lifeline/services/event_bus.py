import asyncio
import logging

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100
TOPIC_PREFIXES = ("hospital_", "emergency_", "user_")


def hospital_topic(hospital_id: str) -> str:
    return f"hospital_{hospital_id}"


def emergency_topic(emergency_id: str) -> str:
    return f"emergency_{emergency_id}"


def user_topic(user_id: str) -> str:
    return f"user_{user_id}"


class TopicEventBus:
    """Simple in-memory pub/sub for real-time pushes to topic rooms."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
    def subscribe(self, topic: str) -> asyncio.Queue:
        """Subscribe to events for one topic, e.g. ``hospital_<id>``."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(topic, set()).add(queue)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        if topic in self._subscribers:
            self._subscribers[topic].discard(queue)
            if not self._subscribers[topic]:
                del self._subscribers[topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, event_type: str, payload: dict) -> None:
        """Publish to all subscribers of ``topic``. Full subscriber queues drop the event."""
        event = {"type": event_type, "topic": topic, "data": payload}

        for queue in self._subscribers.get(topic, set()):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full for topic %s subscriber", topic)
