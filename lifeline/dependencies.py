from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Header, Request

from lifeline.config import NOTIFY_WEBHOOK_URL
from lifeline.database import DatabaseAdapter
from lifeline.services.delivery import Deliverer, EventBusDeliverer, WebhookDeliverer
from lifeline.services.dispatch_engine import DispatchEngine
from lifeline.services.event_bus import TopicEventBus
from lifeline.services.geo_index import GeoIndex
from lifeline.services.location_tracker import LocationTracker
from lifeline.services.notifications import NotificationDispatcher
from lifeline.services.route_estimator import RouteEstimator, build_route_estimator
from lifeline.services.state_machine import EmergencyStateMachine
from lifeline.services.store import DispatchStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    db: DatabaseAdapter
    store: DispatchStore
    geo_index: GeoIndex
    bus: TopicEventBus
    notifier: NotificationDispatcher
    dispatch_engine: DispatchEngine
    state_machine: EmergencyStateMachine
    location_tracker: LocationTracker


def build_services(
    db: DatabaseAdapter,
    route_estimator: RouteEstimator | None = None,
    deliverers: list[Deliverer] | None = None,
    bus: TopicEventBus | None = None,
) -> Services:
    """Wire the dispatch core around one database handle."""
    store = DispatchStore(db)
    geo_index = GeoIndex(db)
    bus = bus or TopicEventBus()
    if deliverers is None:
        deliverers = [EventBusDeliverer(bus)]
        if NOTIFY_WEBHOOK_URL:
            logger.info("Person notifications forwarded to webhook gateway")
            deliverers.append(WebhookDeliverer(NOTIFY_WEBHOOK_URL))
    notifier = NotificationDispatcher(store, deliverers)
    return Services(
        db=db,
        store=store,
        geo_index=geo_index,
        bus=bus,
        notifier=notifier,
        dispatch_engine=DispatchEngine(
            db, store, geo_index, route_estimator or build_route_estimator(), notifier
        ),
        state_machine=EmergencyStateMachine(db, store, notifier),
        location_tracker=LocationTracker(db, store, bus),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_acting_user(x_user_id: str | None = Header(default=None)) -> str | None:
    """Caller identity, already authenticated upstream."""
    return x_user_id
