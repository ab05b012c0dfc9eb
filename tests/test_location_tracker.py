"""Tests for driver position reports."""

import pytest

from lifeline.errors import AmbulanceAccessDenied, AmbulanceNotFound
from lifeline.models.emergency import EmergencyLocation, EmergencyStatus
from lifeline.models.fleet import LocationReport
from lifeline.services.event_bus import hospital_topic, user_topic
from tests.fakes import AMB_1, AMB_2, CENTRAL, NEAR_CENTRAL, PATIENT_ID


async def test_driver_updates_position(fleet):
    report = LocationReport(coordinates=(77.6000, 12.9750), address="Residency Road")
    ambulance = await fleet.location_tracker.report_location(AMB_1.id, report, AMB_1.driver_id)

    assert ambulance.current_location.coordinates == (77.6000, 12.9750)
    assert ambulance.current_location.address == "Residency Road"
    assert ambulance.current_location.last_updated is not None


async def test_other_user_is_denied(fleet):
    report = LocationReport(coordinates=(77.6000, 12.9750))
    with pytest.raises(AmbulanceAccessDenied):
        await fleet.location_tracker.report_location(AMB_1.id, report, AMB_2.driver_id)

    ambulance = await fleet.store.get_ambulance(AMB_1.id)
    assert ambulance.current_location.coordinates == AMB_1.current_location.coordinates


async def test_unknown_ambulance(fleet):
    with pytest.raises(AmbulanceNotFound):
        await fleet.location_tracker.report_location("missing", LocationReport(coordinates=(0.0, 0.0)), "drv-1")


async def test_position_logged_and_pushed_for_active_emergency(fleet, bus):
    result = await fleet.dispatch_engine.create_emergency(
        PATIENT_ID, EmergencyLocation(coordinates=NEAR_CENTRAL, address="12 MG Road")
    )
    emergency = result.emergency
    queue = bus.subscribe(f"emergency_{emergency.id}")

    report = LocationReport(coordinates=(77.5895, 12.9692), address="Near MG Road")
    await fleet.location_tracker.report_location(AMB_2.id, report, AMB_2.driver_id)
    await fleet.location_tracker.wait_published()

    stored = await fleet.store.get_emergency(emergency.id)
    assert stored.status == EmergencyStatus.DISPATCHED
    assert stored.timeline[-1].status == EmergencyStatus.DISPATCHED
    assert stored.timeline[-1].notes == "Ambulance location updated"
    assert stored.timeline[-1].coordinates == (77.5895, 12.9692)
    assert stored.version == emergency.version + 1

    event = queue.get_nowait()
    assert event["type"] == "ambulance_location_update"
    assert event["data"]["emergencyId"] == emergency.id
    assert event["data"]["location"] == [77.5895, 12.9692]


async def test_idle_ambulance_pushes_nothing(fleet, bus):
    queues = [bus.subscribe(hospital_topic(CENTRAL.id)), bus.subscribe(user_topic(AMB_1.driver_id))]
    await fleet.location_tracker.report_location(
        AMB_1.id, LocationReport(coordinates=(77.6000, 12.9750)), AMB_1.driver_id
    )
    await fleet.location_tracker.wait_published()
    assert all(queue.empty() for queue in queues)
