import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from lifeline.services.event_bus import TOPIC_PREFIXES

logger = logging.getLogger(__name__)
router = APIRouter()

PING_INTERVAL_SECONDS = 10.0


@router.websocket("/ws/topics/{topic}")
async def topic_ws(websocket: WebSocket, topic: str):
    """Live pushes for one room: ``hospital_<id>``, ``emergency_<id>`` or ``user_<id>``.

    Hospital dashboards follow new emergencies and status changes, patients and
    family follow their emergency's status and the ambulance position.
    """
    await websocket.accept()
    if not topic.startswith(TOPIC_PREFIXES):
        await websocket.send_json({"type": "error", "message": f"Unknown topic {topic}"})
        await websocket.close()
        return

    bus = websocket.app.state.services.bus
    queue = bus.subscribe(topic)
    logger.info("Client subscribed to %s", topic)

    try:
        await websocket.send_json({"type": "subscribed", "topic": topic})
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=PING_INTERVAL_SECONDS)
            except asyncio.TimeoutError:
                event = {"type": "ping"}

            try:
                await websocket.send_json(event)
            except Exception:
                logger.debug("Failed to send event to %s client", topic)
                break
    except WebSocketDisconnect:
        logger.info("Client disconnected from %s", topic)
    except asyncio.CancelledError:
        pass
    finally:
        bus.unsubscribe(topic, queue)
